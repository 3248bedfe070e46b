"""
Integration tests for the livemigrate library.

These tests migrate objects on the real garbage-collected heap through
GcHeapWalker instead of an explicitly tracked object set.

Run integration tests:
    pytest tests/integration/ -v

Skip walks of the whole heap:
    pytest tests/integration/ -v -m "not slow"

Skip integration tests:
    pytest tests/ -v -m "not integration"
"""

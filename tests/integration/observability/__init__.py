"""
Integration tests for observability (tracing) functionality.

Tests in this package verify:
- Engine spans exported through a real TracerProvider
- Span hierarchy of phases under the migration span
- Error status and attributes of failed migrations
- Graceful degradation when tracing is disabled
"""

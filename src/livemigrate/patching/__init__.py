"""Reference graph patching: rewriting references to forwarded objects."""

from livemigrate.patching.mutations import MutationRecorder, MutationWriter
from livemigrate.patching.patcher import ReferenceGraphPatcher, is_runtime_owned

__all__ = [
    "MutationRecorder",
    "MutationWriter",
    "ReferenceGraphPatcher",
    "is_runtime_owned",
]

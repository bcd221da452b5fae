"""Operation execution against the staged repository store."""

from .executor import OperationError, OperationExecutor, summarize_result, summarize_results
from .line_edits import LineEdit, apply_line_edit, canonicalize_structured
from .registry import RegistryEntry, SessionFileRegistry

__all__ = [
    "LineEdit",
    "OperationError",
    "OperationExecutor",
    "RegistryEntry",
    "SessionFileRegistry",
    "apply_line_edit",
    "canonicalize_structured",
    "summarize_result",
    "summarize_results",
]

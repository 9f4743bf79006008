from .output_resolver import (
    OutputReference,
    OutputResolutionError,
    OutputResolutionResult,
    ResolvedReference,
    create_output_reference,
    format_output_references,
    get_referenced_step_indices,
    has_output_references,
    resolve_step_outputs,
    validate_output_references,
)

__all__ = [
    "OutputReference", "OutputResolutionError", "OutputResolutionResult", "ResolvedReference",
    "create_output_reference", "format_output_references", "get_referenced_step_indices",
    "has_output_references", "resolve_step_outputs", "validate_output_references",
]

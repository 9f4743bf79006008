"""Step output references.

A step's parameters may embed ``{{step.N.output}}`` or
``{{step.N.output.some.path}}`` to consume the result of an earlier step.
A string made of exactly one reference is replaced by the referenced value
itself (dict, number, bool...); references embedded in longer text are
replaced by their text form. Failures are collected, never raised.
"""
from __future__ import annotations

import copy
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Literal, Optional

from ..core.types import Plan, Step

logger = logging.getLogger(__name__)

ResolutionErrorType = Literal["step_not_found", "step_not_completed", "path_not_found", "invalid_reference"]

# step index, then an optional run of ".segment" groups (no empty segments)
REFERENCE_PATTERN = re.compile(r"\{\{step\.(\d+)\.output((?:\.\w+)+)?\}\}", re.ASCII)

_MISSING = object()


@dataclass(frozen=True)
class OutputReference:
    text: str
    step_index: int
    path: Optional[str] = None


@dataclass
class OutputResolutionError:
    type: ResolutionErrorType
    reference: str
    message: str
    step_index: Optional[int] = None
    path: Optional[str] = None


@dataclass
class ResolvedReference:
    reference: str
    step_index: int
    path: Optional[str]
    value: Any


@dataclass
class OutputResolutionResult:
    success: bool
    resolved_params: dict
    errors: List[OutputResolutionError] = field(default_factory=list)
    resolved_references: List[ResolvedReference] = field(default_factory=list)


# ---------------- Parsing ----------------

def _from_match(m: re.Match) -> OutputReference:
    path = m.group(2)[1:] if m.group(2) else None
    return OutputReference(text=m.group(0), step_index=int(m.group(1)), path=path)


def parse_whole_reference(text: str) -> Optional[OutputReference]:
    """Return the reference if ``text`` is exactly one reference, else None."""
    m = REFERENCE_PATTERN.fullmatch(text)
    return _from_match(m) if m else None


def parse_references(text: str) -> List[OutputReference]:
    return [_from_match(m) for m in REFERENCE_PATTERN.finditer(text)]


def iter_references(value: Any) -> Iterator[OutputReference]:
    """Walk a parameter tree and yield every reference found in its strings."""
    if isinstance(value, str):
        yield from parse_references(value)
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_references(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from iter_references(v)


def has_output_references(params: Any) -> bool:
    return next(iter_references(params), None) is not None


def get_referenced_step_indices(params: Any) -> List[int]:
    return sorted({ref.step_index for ref in iter_references(params)})


# ---------------- Resolution ----------------

def resolve_step_outputs(step: Step, plan: Plan) -> OutputResolutionResult:
    """Resolve every output reference in ``step.parameters`` against ``plan``.

    The returned parameters are a new tree; neither the step nor the plan is
    modified. ``success`` is False as soon as one reference could not be
    resolved, in which case that reference is left as its literal text.
    """
    logger.debug("Resolving step outputs (plan=%s, step=%s)", plan.id, step.index)
    errors: List[OutputResolutionError] = []
    resolved: List[ResolvedReference] = []

    params = _resolve_value(step.parameters or {}, plan, errors, resolved)

    success = not errors
    if not success:
        logger.warning(
            "Output resolution failed (plan=%s, step=%s, errors=%d)", plan.id, step.index, len(errors)
        )
    elif resolved:
        logger.debug("Resolved %d reference(s) for step %s", len(resolved), step.index)

    return OutputResolutionResult(
        success=success, resolved_params=params, errors=errors, resolved_references=resolved
    )


def _resolve_value(value: Any, plan: Plan, errors: list, resolved: list) -> Any:
    if isinstance(value, str):
        return _resolve_string(value, plan, errors, resolved)
    if isinstance(value, dict):
        return {k: _resolve_value(v, plan, errors, resolved) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_resolve_value(v, plan, errors, resolved) for v in value]
    # numbers, booleans, None
    return value


def _resolve_string(value: str, plan: Plan, errors: list, resolved: list) -> Any:
    whole = parse_whole_reference(value)
    if whole is not None:
        out = _resolve_reference(whole, plan, errors, resolved)
        return value if out is _MISSING else out

    if not REFERENCE_PATTERN.search(value):
        return value

    def _sub(m: re.Match) -> str:
        out = _resolve_reference(_from_match(m), plan, errors, resolved)
        return m.group(0) if out is _MISSING else _to_text(out)

    return REFERENCE_PATTERN.sub(_sub, value)


def _resolve_reference(ref: OutputReference, plan: Plan, errors: list, resolved: list) -> Any:
    if ref.step_index >= len(plan.steps):
        errors.append(OutputResolutionError(
            type="step_not_found",
            reference=ref.text,
            message=f"Referenced step {ref.step_index} does not exist",
            step_index=ref.step_index,
        ))
        return _MISSING

    target = plan.steps[ref.step_index]
    if target.status != "completed":
        errors.append(OutputResolutionError(
            type="step_not_completed",
            reference=ref.text,
            message=f"Referenced step {ref.step_index} has not completed (status: {target.status})",
            step_index=ref.step_index,
        ))
        return _MISSING

    value = target.result
    if ref.path:
        value = navigate_path(value, ref.path)
        if value is _MISSING:
            errors.append(OutputResolutionError(
                type="path_not_found",
                reference=ref.text,
                message=f'Path "{ref.path}" not found in step {ref.step_index} output',
                step_index=ref.step_index,
                path=ref.path,
            ))
            return _MISSING

    value = copy.deepcopy(value)
    resolved.append(ResolvedReference(reference=ref.text, step_index=ref.step_index, path=ref.path, value=value))
    return value


def navigate_path(value: Any, path: str) -> Any:
    """Follow a dotted path; lists take integer segments. Returns ``_MISSING`` on failure."""
    current = value
    for part in path.split("."):
        if isinstance(current, (list, tuple)):
            if not part.isdigit():
                return _MISSING
            idx = int(part)
            if idx >= len(current):
                return _MISSING
            current = current[idx]
        elif isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        else:
            return _MISSING
    return current


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None or isinstance(value, (bool, dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


# ---------------- Structural checks ----------------

def validate_output_references(step: Step, plan: Plan) -> List[OutputResolutionError]:
    """Check that every referenced step exists and comes before ``step``.

    Completion state is not looked at: this is the build-time check, the
    runtime one is :func:`resolve_step_outputs`.
    """
    errors: List[OutputResolutionError] = []
    for ref_index in get_referenced_step_indices(step.parameters or {}):
        reference = create_output_reference(ref_index)
        if ref_index >= len(plan.steps):
            errors.append(OutputResolutionError(
                type="step_not_found",
                reference=reference,
                message=f"Step {ref_index} does not exist (plan has {len(plan.steps)} steps)",
                step_index=ref_index,
            ))
            continue
        if ref_index >= step.index:
            errors.append(OutputResolutionError(
                type="invalid_reference",
                reference=reference,
                message=f"Step {step.index} cannot reference step {ref_index} (must reference earlier steps)",
                step_index=ref_index,
            ))
    return errors


# ---------------- Helpers ----------------

def format_output_references(params: Any) -> List[str]:
    """Human-readable list of the data a step pulls from earlier steps."""
    return [
        f"Step {ref.step_index + 1}: {ref.path or 'full output'}"
        for ref in iter_references(params)
    ]


def create_output_reference(step_index: int, path: Optional[str] = None) -> str:
    if path:
        return f"{{{{step.{step_index}.output.{path}}}}}"
    return f"{{{{step.{step_index}.output}}}}"

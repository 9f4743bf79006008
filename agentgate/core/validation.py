from __future__ import annotations
from dataclasses import dataclass
from typing import List, Literal

from ..errors import PlanValidationError
from .types import ASSUMPTION_CATEGORIES, Plan

IssueCode = Literal[
    "empty_plan",
    "missing_goal",
    "invalid_confidence",
    "duplicate_step_order",
    "invalid_step_order",
    "invalid_dependency",
    "dependency_out_of_order",
    "invalid_current_step",
    "invalid_assumption",
    "step_not_found",
    "invalid_reference",
]

@dataclass
class PlanIssue:
    code: IssueCode
    message: str
    step_index: int = -1  # -1 for plan-level issues


def validate_plan(plan: Plan) -> List[PlanIssue]:
    """Structural checks run when a plan is built, before anything executes."""
    # Imported here: the resolver depends on core.types, not the other way round
    from ..planning.output_resolver import validate_output_references

    issues: List[PlanIssue] = []
    if not plan.goal or not plan.goal.strip():
        issues.append(PlanIssue("missing_goal", "Plan has no goal"))
    if not plan.steps:
        issues.append(PlanIssue("empty_plan", "Plan has no steps"))
    if not 0.0 <= plan.confidence <= 1.0:
        issues.append(PlanIssue("invalid_confidence", f"Plan confidence {plan.confidence} is outside 0..1"))
    if not 0 <= plan.current_step_index <= len(plan.steps):
        issues.append(PlanIssue(
            "invalid_current_step",
            f"current_step_index {plan.current_step_index} is outside 0..{len(plan.steps)}",
        ))
    for a in plan.assumptions:
        if a.category not in ASSUMPTION_CATEGORIES or not 0.0 <= a.confidence <= 1.0:
            issues.append(PlanIssue("invalid_assumption", f"Assumption {a.statement!r} has an invalid category or confidence"))

    seen: set[int] = set()
    for pos, step in enumerate(plan.steps):
        if step.index in seen:
            issues.append(PlanIssue("duplicate_step_order", f"Step index {step.index} appears more than once", step.index))
        seen.add(step.index)
        if step.index != pos:
            issues.append(PlanIssue(
                "invalid_step_order", f"Step at position {pos} has index {step.index}", step.index,
            ))

    ids = {s.id: s.index for s in plan.steps}
    for step in plan.steps:
        dep_indices = list(step.depends_on_indices)
        for dep_id in step.depends_on:
            if dep_id not in ids:
                issues.append(PlanIssue("invalid_dependency", f"Step {step.index} depends on unknown step {dep_id}", step.index))
            else:
                dep_indices.append(ids[dep_id])
        for dep in sorted(set(dep_indices)):
            if dep < 0 or dep >= len(plan.steps):
                issues.append(PlanIssue("invalid_dependency", f"Step {step.index} depends on missing step {dep}", step.index))
            elif dep >= step.index:
                issues.append(PlanIssue(
                    "dependency_out_of_order",
                    f"Step {step.index} cannot depend on step {dep} (must depend on earlier steps)",
                    step.index,
                ))
        for err in validate_output_references(step, plan):
            issues.append(PlanIssue(err.type, err.message, step.index))

    return issues


def ensure_valid_plan(plan: Plan) -> Plan:
    issues = validate_plan(plan)
    if issues:
        raise PlanValidationError(issues)
    return plan


def link_output_dependencies(plan: Plan) -> Plan:
    """Add every step referenced through ``{{step.N.output}}`` to the step's dependencies."""
    from ..planning.output_resolver import get_referenced_step_indices, has_output_references

    for step in plan.steps:
        if not has_output_references(step.parameters):
            continue
        merged = set(step.depends_on_indices) | set(get_referenced_step_indices(step.parameters))
        step.depends_on_indices = sorted(merged)
    return plan

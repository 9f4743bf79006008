from __future__ import annotations
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from ..core.types import Assumption, Plan, utcnow
from .types import Approval, ApprovalDisplay, AssumptionDisplay, PlanContext

SENSITIVE_KEYS = ("password", "token", "secret", "key", "apikey")
REDACTED = "***"


def sanitize_parameters(params: Any, sensitive_keys: Iterable[str] = SENSITIVE_KEYS) -> Any:
    """Replace values whose key contains a sensitive word, at any depth."""
    words = [w.lower() for w in sensitive_keys]
    return _sanitize(params, words)


def _sanitize(value: Any, words: list) -> Any:
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if any(w in str(k).lower() for w in words):
                out[k] = REDACTED
            else:
                out[k] = _sanitize(v, words)
        return out
    if isinstance(value, list):
        return [_sanitize(v, words) for v in value]
    return value


def format_assumption(a: Assumption) -> AssumptionDisplay:
    return AssumptionDisplay(
        statement=a.statement,
        category=a.category,
        confidence_percent=round(a.confidence * 100),
        evidence_summary="; ".join(a.evidence[:2]) if a.evidence else "No specific evidence",
    )


def expires_in_text(
    expires_at: Optional[datetime], now: Optional[datetime] = None, urgent_minutes: int = 30
) -> tuple[Optional[str], bool]:
    """Coarse remaining time and whether it is urgent: ("3 hours", False), ("12 minutes", True), ("soon", True)."""
    if expires_at is None:
        return None, False
    remaining = expires_at - (now or utcnow())
    hours = int(remaining // timedelta(hours=1)) if remaining > timedelta(0) else 0
    minutes = int(remaining // timedelta(minutes=1)) if remaining > timedelta(0) else 0
    urgent = remaining < timedelta(minutes=urgent_minutes)
    if hours > 0:
        return f"{hours} hours", urgent
    if minutes > 0:
        return f"{minutes} minutes", urgent
    return "soon", True


def format_for_display(
    approval: Approval,
    plan: Optional[Plan] = None,
    *,
    now: Optional[datetime] = None,
    sensitive_keys: Iterable[str] = SENSITIVE_KEYS,
    urgent_minutes: int = 30,
) -> ApprovalDisplay:
    expires_in, is_urgent = expires_in_text(approval.expires_at, now, urgent_minutes)

    plan_context = None
    if plan is not None and approval.step_index is not None:
        plan_context = PlanContext(
            plan_id=plan.id,
            goal_summary=plan.goal,
            step_number=approval.step_index + 1,
            total_steps=len(plan.steps),
        )

    return ApprovalDisplay(
        id=approval.id,
        tool_name=approval.tool_name,
        summary=approval.summary,
        reasoning=approval.reasoning,
        confidence_percent=round(approval.confidence * 100),
        risk_level=approval.risk_level,
        assumptions=[format_assumption(a) for a in approval.assumptions],
        parameters=sanitize_parameters(approval.parameters or {}, sensitive_keys),
        expires_in=expires_in,
        is_urgent=is_urgent,
        plan_context=plan_context,
    )

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional, Sequence, Union

from ..core.types import Assumption, RiskLevel, to_iso, utcnow

ApprovalStatus = Literal["pending", "approved", "rejected", "expired", "executed", "failed"]
ApprovalResolver = Literal["user", "timeout", "system", "superseded"]
ApprovalDecision = Literal["approve", "reject"]

APPROVAL_STATUSES = ("pending", "approved", "rejected", "expired", "executed", "failed")
DECISIONS = ("approve", "reject")

DEFAULT_EXPIRATION: Dict[str, timedelta] = {
    "low": timedelta(hours=24),
    "medium": timedelta(hours=12),
    "high": timedelta(hours=4),
    "critical": timedelta(hours=1),
}


@dataclass
class Approval:
    """One request for a human to authorise a single tool invocation."""
    id: str
    user_id: str
    tool_name: str
    action_type: str
    risk_level: RiskLevel
    parameters: Dict[str, Any] = field(default_factory=dict)
    reasoning: str = ""
    confidence: float = 0.5
    assumptions: List[Assumption] = field(default_factory=list)
    summary: str = ""
    status: ApprovalStatus = "pending"
    plan_id: Optional[str] = None
    step_index: Optional[int] = None
    conversation_id: Optional[str] = None
    requested_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    resolved_by: Optional[ApprovalResolver] = None
    user_feedback: Optional[str] = None
    modified_parameters: Optional[Dict[str, Any]] = None
    result: Any = None
    error_message: Optional[str] = None
    audit_log_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > self.expires_at

    def is_actionable(self, now: Optional[datetime] = None) -> bool:
        return self.is_pending and not self.is_expired(now)

    @property
    def has_user_modifications(self) -> bool:
        return bool(self.modified_parameters)

    @property
    def effective_parameters(self) -> Dict[str, Any]:
        return effective_parameters(self.parameters, self.modified_parameters)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "step_index": self.step_index,
            "conversation_id": self.conversation_id,
            "tool_name": self.tool_name,
            "action_type": self.action_type,
            "risk_level": self.risk_level,
            "parameters": self.parameters,
            "reasoning": self.reasoning,
            "confidence": self.confidence,
            "assumptions": [a.to_dict() for a in self.assumptions],
            "summary": self.summary,
            "status": self.status,
            "requested_at": to_iso(self.requested_at),
            "expires_at": to_iso(self.expires_at),
            "decided_at": to_iso(self.decided_at),
            "resolved_by": self.resolved_by,
            "user_feedback": self.user_feedback,
            "modified_parameters": self.modified_parameters,
            "result": self.result,
            "error_message": self.error_message,
            "audit_log_id": self.audit_log_id,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }


def effective_parameters(original: Dict[str, Any], overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Original parameters with user overrides applied key by key (one level)."""
    return {**(original or {}), **(overrides or {})}


@dataclass
class ApprovalCreateInput:
    user_id: str
    tool_name: str
    parameters: Dict[str, Any]
    action_type: str
    risk_level: RiskLevel
    reasoning: str
    confidence: float
    assumptions: List[Assumption] = field(default_factory=list)
    summary: Optional[str] = None
    conversation_id: Optional[str] = None
    plan_id: Optional[str] = None
    step_index: Optional[int] = None
    expires_in: Optional[timedelta] = None  # overrides the risk-based default


# Marks an ApprovalUpdate field as "leave unchanged" where None is a real value
UNSET: Any = object()


@dataclass
class ApprovalUpdate:
    """Partial update; None means "leave unchanged", except ``result`` which uses UNSET so null can be stored."""
    status: Optional[ApprovalStatus] = None
    decided_at: Optional[datetime] = None
    resolved_by: Optional[ApprovalResolver] = None
    user_feedback: Optional[str] = None
    modified_parameters: Optional[Dict[str, Any]] = None
    result: Any = UNSET
    error_message: Optional[str] = None


@dataclass
class ApprovalQueryOptions:
    status: Union[ApprovalStatus, Sequence[ApprovalStatus], None] = None
    conversation_id: Optional[str] = None
    plan_id: Optional[str] = None
    include_expired: bool = False
    limit: int = 20
    offset: int = 0
    order: Literal["asc", "desc"] = "desc"


@dataclass
class ApprovalQueryResult:
    approvals: List[Approval]
    total_count: int
    has_more: bool


@dataclass
class CreatedApproval:
    approval: Approval
    audit_log_id: str


@dataclass
class PlanResumption:
    plan_id: str
    step_index: int


@dataclass
class DecisionResult:
    approval: Approval
    should_execute: bool
    effective_parameters: Optional[Dict[str, Any]] = None
    plan_resumption: Optional[PlanResumption] = None


@dataclass
class AssumptionDisplay:
    statement: str
    category: str
    confidence_percent: int
    evidence_summary: str


@dataclass
class PlanContext:
    plan_id: str
    goal_summary: str
    step_number: int
    total_steps: int


@dataclass
class ApprovalDisplay:
    id: str
    tool_name: str
    summary: str
    reasoning: str
    confidence_percent: int
    risk_level: str
    assumptions: List[AssumptionDisplay]
    parameters: Dict[str, Any]
    expires_in: Optional[str]
    is_urgent: bool
    plan_context: Optional[PlanContext] = None


@dataclass
class StaleExpiration:
    """What one conditional bulk expiry actually changed."""
    count: int
    ids: List[str] = field(default_factory=list)
    plan_ids: List[str] = field(default_factory=list)


@dataclass
class ExpirationOptions:
    cancel_affected_plans: bool = False
    batch_size: int = 100


@dataclass
class ExpirationResult:
    expired_count: int
    expired_ids: List[str] = field(default_factory=list)
    affected_plan_ids: List[str] = field(default_factory=list)


@dataclass
class TimeRemaining:
    hours: int
    minutes: int
    is_expired: bool

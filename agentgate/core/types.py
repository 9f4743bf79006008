from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
import uuid

RiskLevel = Literal["low", "medium", "high", "critical"]
PlanStatus = Literal["planned", "executing", "paused", "completed", "failed", "cancelled"]
StepStatus = Literal["pending", "executing", "completed", "failed", "skipped", "awaiting_approval", "rolled_back"]
AssumptionCategory = Literal["intent", "context", "preference", "inference"]

RISK_LEVELS = ("low", "medium", "high", "critical")
PLAN_STATUSES = ("planned", "executing", "paused", "completed", "failed", "cancelled")
STEP_STATUSES = ("pending", "executing", "completed", "failed", "skipped", "awaiting_approval", "rolled_back")
ASSUMPTION_CATEGORIES = ("intent", "context", "preference", "inference")

# Fixed-width UTC timestamps so that stored values sort lexicographically
_ISO_FMT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_ISO_FMT)


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Assumption:
    statement: str
    category: AssumptionCategory = "inference"
    evidence: List[str] = field(default_factory=list)
    confidence: float = 0.5
    id: str = field(default_factory=new_id)
    verified: Optional[bool] = None
    verified_at: Optional[datetime] = None
    correction: Optional[str] = None

    def verify(self, at: Optional[datetime] = None) -> None:
        self.verified = True
        self.verified_at = at or utcnow()
        self.correction = None

    def correct(self, correction: str, at: Optional[datetime] = None) -> None:
        """The user said this assumption was wrong; keep what they said instead."""
        self.verified = False
        self.verified_at = at or utcnow()
        self.correction = correction

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "statement": self.statement,
            "category": self.category,
            "evidence": list(self.evidence),
            "confidence": self.confidence,
            "verified": self.verified,
            "verified_at": to_iso(self.verified_at),
            "correction": self.correction,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Assumption":
        return cls(
            statement=str(data.get("statement") or ""),
            category=data.get("category") or "inference",
            evidence=[str(e) for e in (data.get("evidence") or [])],
            confidence=float(data.get("confidence", 0.5)),
            id=str(data.get("id") or new_id()),
            verified=data.get("verified"),
            verified_at=from_iso(data.get("verified_at")),
            correction=data.get("correction"),
        )


@dataclass
class RollbackAction:
    tool_name: str
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Step:
    index: int
    tool_name: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    description: str = ""
    status: StepStatus = "pending"
    depends_on: List[str] = field(default_factory=list)
    depends_on_indices: List[int] = field(default_factory=list)
    requires_approval: bool = False
    approval_id: Optional[str] = None
    result: Any = None
    error_message: Optional[str] = None
    rollback_action: Optional[RollbackAction] = None
    id: str = field(default_factory=new_id)
    plan_id: str = ""
    created_at: datetime = field(default_factory=utcnow)
    executed_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"


@dataclass
class Plan:
    user_id: str
    goal: str
    steps: List[Step] = field(default_factory=list)
    goal_type: str = "general"
    status: PlanStatus = "planned"
    current_step_index: int = 0
    requires_approval: bool = False
    reasoning: str = ""
    confidence: float = 0.5
    assumptions: List[Assumption] = field(default_factory=list)
    conversation_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        for step in self.steps:
            if not step.plan_id:
                step.plan_id = self.id
        if self.steps and not self.requires_approval:
            self.requires_approval = any(s.requires_approval for s in self.steps)

    @property
    def is_complete(self) -> bool:
        return self.current_step_index >= len(self.steps)

    @property
    def current_step(self) -> Optional[Step]:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    def step_by_id(self, step_id: str) -> Optional[Step]:
        return next((s for s in self.steps if s.id == step_id), None)

"""Approval lifecycle: creation, decisions, execution tracking and display.

Outcomes that are not errors (unknown id, already decided, expired) come
back as ``None`` and are logged at warning level. Storage and audit
failures propagate unchanged.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..audit.chainlog import AuditEntryInput, AuditSink
from ..core.types import RISK_LEVELS, Plan, new_id, to_iso, utcnow
from ..errors import ApprovalInputError
from .display import SENSITIVE_KEYS, format_for_display
from .store import ApprovalStore
from .types import (
    DECISIONS,
    DEFAULT_EXPIRATION,
    Approval,
    ApprovalCreateInput,
    ApprovalDisplay,
    ApprovalQueryOptions,
    ApprovalQueryResult,
    ApprovalUpdate,
    CreatedApproval,
    DecisionResult,
    PlanResumption,
    effective_parameters,
)

logger = logging.getLogger(__name__)


def _summary_json(data: dict) -> str:
    return json.dumps({k: v for k, v in data.items() if v is not None}, ensure_ascii=False, default=str)


class ApprovalService:
    def __init__(
        self,
        store: ApprovalStore,
        audit: AuditSink,
        *,
        expirations: Optional[Dict[str, timedelta]] = None,
        clock: Callable[[], datetime] = utcnow,
        sensitive_keys: Iterable[str] = SENSITIVE_KEYS,
        urgent_minutes: int = 30,
    ) -> None:
        self.store = store
        self.audit = audit
        self.expirations = dict(expirations or DEFAULT_EXPIRATION)
        self.clock = clock
        self.sensitive_keys = tuple(sensitive_keys)
        self.urgent_minutes = urgent_minutes

    # ---------------- Creation ----------------
    def create(self, data: ApprovalCreateInput) -> CreatedApproval:
        if data.risk_level not in RISK_LEVELS:
            raise ApprovalInputError(f"Unknown risk level: {data.risk_level!r}")
        logger.info(
            "Creating approval (user=%s, tool=%s, risk=%s, confidence=%.2f)",
            data.user_id, data.tool_name, data.risk_level, data.confidence,
        )
        now = self.clock()
        lifetime = data.expires_in if data.expires_in is not None else self.expirations[data.risk_level]
        approval = Approval(
            id=new_id(),
            user_id=data.user_id,
            tool_name=data.tool_name,
            action_type=data.action_type,
            risk_level=data.risk_level,
            parameters=dict(data.parameters or {}),
            reasoning=data.reasoning,
            confidence=data.confidence,
            assumptions=list(data.assumptions),
            summary=data.summary or f"{data.action_type} via {data.tool_name}",
            plan_id=data.plan_id,
            step_index=data.step_index,
            conversation_id=data.conversation_id,
            requested_at=now,
            expires_at=now + lifetime,
            created_at=now,
            updated_at=now,
        )
        self.store.create(approval)

        record = self.audit.log_agent_action(AuditEntryInput(
            user_id=data.user_id,
            conversation_id=data.conversation_id,
            action_type="create",
            action_category="agent",
            entity_type="action_approval",
            entity_id=approval.id,
            intent=f"Request approval for {data.tool_name}",
            reasoning=data.reasoning,
            confidence=data.confidence,
            input_summary=_summary_json({
                "tool_name": data.tool_name,
                "parameters": data.parameters,
                "risk_level": data.risk_level,
            }),
            output_summary=_summary_json({
                "approval_id": approval.id,
                "expires_at": to_iso(approval.expires_at),
            }),
        ))
        self.store.set_audit_log_id(approval.id, record.id)
        approval.audit_log_id = record.id
        logger.info("Approval created: %s (expires %s)", approval.id, to_iso(approval.expires_at))
        return CreatedApproval(approval=approval, audit_log_id=record.id)

    # ---------------- Decisions ----------------
    def decide(
        self,
        user_id: str,
        approval_id: str,
        decision: str,
        *,
        modified_parameters: Optional[Dict[str, Any]] = None,
        feedback: Optional[str] = None,
    ) -> Optional[DecisionResult]:
        if decision not in DECISIONS:
            raise ApprovalInputError(f"Unknown decision: {decision!r} (expected one of {DECISIONS})")
        now = self.clock()

        existing = self.store.get_by_id_for_user(user_id, approval_id)
        if existing is None:
            logger.warning("Approval not found: %s (user=%s)", approval_id, user_id)
            return None
        if existing.status != "pending":
            logger.warning("Approval already decided: %s (status=%s)", approval_id, existing.status)
            return None
        if existing.is_expired(now):
            logger.warning("Approval expired: %s (expired at %s)", approval_id, to_iso(existing.expires_at))
            return None

        approving = decision == "approve"
        changes = ApprovalUpdate(
            status="approved" if approving else "rejected",
            decided_at=now,
            resolved_by="user",
            modified_parameters=modified_parameters if approving else None,
            user_feedback=None if approving else feedback,
        )
        updated = self.store.update(
            approval_id, changes, expected_status="pending", not_expired_at=now, now=now
        )
        if updated is None:
            # Someone else decided it, or the sweeper got there first
            logger.warning("Approval no longer pending: %s", approval_id)
            return None

        self.audit.log_agent_action(AuditEntryInput(
            user_id=user_id,
            conversation_id=existing.conversation_id,
            action_type=decision,
            action_category="agent",
            entity_type="action_approval",
            entity_id=approval_id,
            intent=f"User {decision}d {existing.tool_name} action",
            reasoning=None if approving else feedback,
            input_summary=_summary_json({
                "approval_id": approval_id,
                "decision": decision,
                "modified_parameters": modified_parameters,
                "feedback": feedback,
            }),
        ))

        resumption = None
        if existing.plan_id and existing.step_index is not None:
            resumption = PlanResumption(plan_id=existing.plan_id, step_index=existing.step_index)

        logger.info(
            "Approval decision processed: %s (decision=%s, modified=%s, plan=%s)",
            approval_id, decision, bool(modified_parameters), existing.plan_id,
        )
        return DecisionResult(
            approval=updated,
            should_execute=approving,
            effective_parameters=effective_parameters(existing.parameters, modified_parameters) if approving else None,
            plan_resumption=resumption,
        )

    def approve(
        self, user_id: str, approval_id: str, modified_parameters: Optional[Dict[str, Any]] = None
    ) -> Optional[DecisionResult]:
        return self.decide(user_id, approval_id, "approve", modified_parameters=modified_parameters)

    def reject(self, user_id: str, approval_id: str, feedback: Optional[str] = None) -> Optional[DecisionResult]:
        return self.decide(user_id, approval_id, "reject", feedback=feedback)

    # ---------------- Execution tracking ----------------
    def mark_executed(self, approval_id: str, result: Any = None) -> Optional[Approval]:
        updated = self.store.update(approval_id, ApprovalUpdate(status="executed", result=result), now=self.clock())
        logger.info("Approval marked as executed: %s", approval_id)
        return updated

    def mark_failed(self, approval_id: str, error_message: str) -> Optional[Approval]:
        updated = self.store.update(
            approval_id, ApprovalUpdate(status="failed", error_message=error_message), now=self.clock()
        )
        logger.warning("Approval marked as failed: %s (%s)", approval_id, error_message)
        return updated

    # ---------------- Queries ----------------
    def get_approval(self, user_id: str, approval_id: str) -> Optional[Approval]:
        return self.store.get_by_id_for_user(user_id, approval_id)

    def get_pending_approvals(self, user_id: str, options: Optional[ApprovalQueryOptions] = None) -> List[Approval]:
        return self.store.get_pending(user_id, options, now=self.clock())

    def query_approvals(self, user_id: str, options: Optional[ApprovalQueryOptions] = None) -> ApprovalQueryResult:
        return self.store.query(user_id, options, now=self.clock())

    def get_pending_count(self, user_id: str) -> int:
        result = self.store.query(user_id, ApprovalQueryOptions(status="pending", limit=1), now=self.clock())
        return result.total_count

    # ---------------- Display ----------------
    def format_for_display(self, approval: Approval, plan: Optional[Plan] = None) -> ApprovalDisplay:
        return format_for_display(
            approval,
            plan,
            now=self.clock(),
            sensitive_keys=self.sensitive_keys,
            urgent_minutes=self.urgent_minutes,
        )

    def get_approval_for_display(
        self, user_id: str, approval_id: str, plan: Optional[Plan] = None
    ) -> Optional[ApprovalDisplay]:
        approval = self.store.get_by_id_for_user(user_id, approval_id)
        if approval is None:
            return None
        return self.format_for_display(approval, plan)

    # ---------------- Plan integration ----------------
    def get_pending_approvals_for_plan(self, plan_id: str) -> List[Approval]:
        return self.store.get_pending_for_plan(plan_id)

    def cancel_approvals_for_plan(self, plan_id: str) -> int:
        count = self.store.cancel_for_plan(plan_id, now=self.clock())
        if count > 0:
            logger.info("Cancelled %d approval(s) for plan %s", count, plan_id)
        return count

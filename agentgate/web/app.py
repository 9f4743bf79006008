from __future__ import annotations
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel
from ..approvals import (
    ApprovalQueryOptions,
    ApprovalService,
    ApprovalStore,
    ExpirationOptions,
    ExpirationSweeper,
)
from ..audit.chainlog import ChainAuditLog
from ..config import Settings, default_settings
from ..core.types import utcnow
from ..errors import ApprovalInputError

NOT_ACTIONABLE = "This approval is no longer actionable"


class DecisionBody(BaseModel):
    user_id: str
    decision: str
    modified_parameters: Optional[Dict[str, Any]] = None
    feedback: Optional[str] = None


class ExecutedBody(BaseModel):
    result: Any = None


class FailedBody(BaseModel):
    error_message: str


class ExpirationBody(BaseModel):
    batched: bool = False
    batch_size: Optional[int] = None
    cancel_affected_plans: Optional[bool] = None


def create_app(
    db_path: str,
    audit_path: str,
    *,
    settings: Settings | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    app = FastAPI(title="agentgate", docs_url=None, redoc_url=None)

    s = settings or default_settings()
    app.state.db_path = db_path
    app.state.audit = ChainAuditLog(Path(audit_path), secret=s.audit.chain_secret)
    app.state.settings = s

    def _with_store() -> ApprovalStore:
        return ApprovalStore(app.state.db_path)

    def _service(store: ApprovalStore) -> ApprovalService:
        return ApprovalService(
            store,
            app.state.audit,
            expirations=s.expiration_table(),
            clock=clock,
            sensitive_keys=s.approvals.sensitive_keys,
            urgent_minutes=s.approvals.urgent_minutes,
        )

    @app.get("/api/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/api/approvals")
    def list_pending(
        user_id: str,
        plan_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        limit: int = Query(default=20, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
    ) -> dict:
        store = _with_store()
        try:
            items = _service(store).get_pending_approvals(
                user_id,
                ApprovalQueryOptions(plan_id=plan_id, conversation_id=conversation_id, limit=limit, offset=offset),
            )
            return {"count": len(items), "items": [a.to_dict() for a in items]}
        finally:
            store.close()

    @app.get("/api/approvals/{approval_id}")
    def show(approval_id: str, user_id: str) -> dict:
        store = _with_store()
        try:
            view = _service(store).get_approval_for_display(user_id, approval_id)
        finally:
            store.close()
        if view is None:
            raise HTTPException(status_code=404, detail="Approval not found")
        return asdict(view)

    @app.post("/api/approvals/{approval_id}/decision")
    def decide(approval_id: str, body: DecisionBody) -> dict:
        store = _with_store()
        try:
            result = _service(store).decide(
                body.user_id,
                approval_id,
                body.decision,
                modified_parameters=body.modified_parameters,
                feedback=body.feedback,
            )
        except ApprovalInputError as e:
            raise HTTPException(status_code=400, detail=str(e))
        finally:
            store.close()
        if result is None:
            raise HTTPException(status_code=409, detail=NOT_ACTIONABLE)
        return {
            "approval": result.approval.to_dict(),
            "should_execute": result.should_execute,
            "effective_parameters": result.effective_parameters,
            "plan_resumption": asdict(result.plan_resumption) if result.plan_resumption else None,
        }

    @app.post("/api/approvals/{approval_id}/executed")
    def executed(approval_id: str, body: ExecutedBody) -> dict:
        store = _with_store()
        try:
            updated = _service(store).mark_executed(approval_id, body.result)
        finally:
            store.close()
        if updated is None:
            raise HTTPException(status_code=404, detail="Approval not found")
        return updated.to_dict()

    @app.post("/api/approvals/{approval_id}/failed")
    def failed(approval_id: str, body: FailedBody) -> dict:
        store = _with_store()
        try:
            updated = _service(store).mark_failed(approval_id, body.error_message)
        finally:
            store.close()
        if updated is None:
            raise HTTPException(status_code=404, detail="Approval not found")
        return updated.to_dict()

    @app.get("/api/plans/{plan_id}/approvals")
    def plan_approvals(plan_id: str) -> dict:
        store = _with_store()
        try:
            items = _service(store).get_pending_approvals_for_plan(plan_id)
            return {"count": len(items), "items": [a.to_dict() for a in items]}
        finally:
            store.close()

    @app.post("/api/plans/{plan_id}/cancel")
    def cancel_plan(plan_id: str) -> dict:
        store = _with_store()
        try:
            return {"plan_id": plan_id, "cancelled": _service(store).cancel_approvals_for_plan(plan_id)}
        finally:
            store.close()

    @app.post("/api/expiration/run")
    def run_expiration(body: ExpirationBody | None = None) -> dict:
        body = body or ExpirationBody()
        cancel = s.sweeper.cancel_affected_plans if body.cancel_affected_plans is None else body.cancel_affected_plans
        store = _with_store()
        try:
            sweeper = ExpirationSweeper(
                store,
                app.state.audit,
                clock=clock,
                options=ExpirationOptions(cancel_affected_plans=cancel, batch_size=s.sweeper.batch_size),
            )
            if body.batched:
                result = sweeper.process_expirations_in_batches(
                    body.batch_size, delay=s.sweeper.batch_delay_seconds
                )
            else:
                result = sweeper.run_expiration_check()
        except ApprovalInputError as e:
            raise HTTPException(status_code=400, detail=str(e))
        finally:
            store.close()
        return asdict(result)

    @app.get("/api/stats")
    def stats(user_id: str) -> dict:
        store = _with_store()
        try:
            counts = store.get_count_by_status(user_id)
            pending = _service(store).get_pending_count(user_id)
        finally:
            store.close()
        return {"user_id": user_id, "by_status": counts, "pending_actionable": pending}

    return app

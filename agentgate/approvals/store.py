"""SQLite approval store.

Every state change that must not race (decision, expiry, plan cancellation)
is a single conditional UPDATE keyed on ``status = 'pending'``; callers look
at the number of rows touched instead of trusting an earlier read.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.types import Assumption, from_iso, to_iso, utcnow
from .types import (
    Approval,
    ApprovalQueryOptions,
    ApprovalQueryResult,
    ApprovalUpdate,
    StaleExpiration,
    UNSET,
)

logger = logging.getLogger(__name__)

SCHEMA = [
    """CREATE TABLE IF NOT EXISTS approvals (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        plan_id TEXT,
        step_index INTEGER,
        conversation_id TEXT,
        tool_name TEXT NOT NULL,
        action_type TEXT NOT NULL,
        risk_level TEXT NOT NULL,
        parameters TEXT NOT NULL,
        reasoning TEXT NOT NULL DEFAULT '',
        confidence REAL NOT NULL DEFAULT 0.5,
        assumptions TEXT NOT NULL DEFAULT '[]',
        summary TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL DEFAULT 'pending',
        requested_at TEXT NOT NULL,
        expires_at TEXT,
        decided_at TEXT,
        resolved_by TEXT,
        user_feedback TEXT,
        modified_parameters TEXT,
        result TEXT,
        error_message TEXT,
        audit_log_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );""",
    "CREATE INDEX IF NOT EXISTS idx_approvals_user_status ON approvals(user_id, status);",
    "CREATE INDEX IF NOT EXISTS idx_approvals_status_expires ON approvals(status, expires_at);",
    "CREATE INDEX IF NOT EXISTS idx_approvals_plan ON approvals(plan_id, status);",
]

_COLUMNS = (
    "id, user_id, plan_id, step_index, conversation_id, tool_name, action_type, risk_level, "
    "parameters, reasoning, confidence, assumptions, summary, status, requested_at, expires_at, "
    "decided_at, resolved_by, user_feedback, modified_parameters, result, error_message, "
    "audit_log_id, created_at, updated_at"
)


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


class ApprovalStore:
    def __init__(self, path: str | Path):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        # Shared with the expiration worker thread; statements go through _lock
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        if self.path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL;")
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            cur = self.conn.cursor()
            for stmt in SCHEMA:
                cur.execute(stmt)
            self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "ApprovalStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ---------------- Mapping ----------------
    @staticmethod
    def _to_approval(r: sqlite3.Row) -> Approval:
        return Approval(
            id=r["id"],
            user_id=r["user_id"],
            plan_id=r["plan_id"],
            step_index=r["step_index"],
            conversation_id=r["conversation_id"],
            tool_name=r["tool_name"],
            action_type=r["action_type"],
            risk_level=r["risk_level"],
            parameters=_loads(r["parameters"]) or {},
            reasoning=r["reasoning"],
            confidence=float(r["confidence"]),
            assumptions=[Assumption.from_dict(a) for a in (_loads(r["assumptions"]) or [])],
            summary=r["summary"],
            status=r["status"],
            requested_at=from_iso(r["requested_at"]),
            expires_at=from_iso(r["expires_at"]),
            decided_at=from_iso(r["decided_at"]),
            resolved_by=r["resolved_by"],
            user_feedback=r["user_feedback"],
            modified_parameters=_loads(r["modified_parameters"]),
            result=_loads(r["result"]),
            error_message=r["error_message"],
            audit_log_id=r["audit_log_id"],
            created_at=from_iso(r["created_at"]),
            updated_at=from_iso(r["updated_at"]),
        )

    def _fetch_one(self, sql: str, params: tuple) -> Optional[Approval]:
        with self._lock:
            row = self.conn.execute(sql, params).fetchone()
        return self._to_approval(row) if row else None

    def _fetch_all(self, sql: str, params: tuple) -> List[Approval]:
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [self._to_approval(r) for r in rows]

    # ---------------- Writes ----------------
    def create(self, approval: Approval) -> Approval:
        with self._lock:
            self.conn.execute(
                f"INSERT INTO approvals ({_COLUMNS}) VALUES ({', '.join('?' * 25)})",
                (
                    approval.id, approval.user_id, approval.plan_id, approval.step_index,
                    approval.conversation_id, approval.tool_name, approval.action_type,
                    approval.risk_level, _dumps(approval.parameters or {}), approval.reasoning,
                    float(approval.confidence), _dumps([a.to_dict() for a in approval.assumptions]),
                    approval.summary, approval.status, to_iso(approval.requested_at),
                    to_iso(approval.expires_at), to_iso(approval.decided_at), approval.resolved_by,
                    approval.user_feedback, _dumps(approval.modified_parameters), _dumps(approval.result),
                    approval.error_message, approval.audit_log_id, to_iso(approval.created_at),
                    to_iso(approval.updated_at),
                ),
            )
            self.conn.commit()
        logger.debug("Approval record created: %s (user=%s, tool=%s)", approval.id, approval.user_id, approval.tool_name)
        return approval

    def update(
        self,
        approval_id: str,
        changes: ApprovalUpdate,
        *,
        expected_status: Optional[str] = None,
        not_expired_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Approval]:
        """Apply ``changes``; with ``expected_status`` the write only lands if the row is still in it.

        Returns the updated approval, or None when no row matched.
        """
        sets: Dict[str, Any] = {}
        if changes.status is not None:
            sets["status"] = changes.status
        if changes.decided_at is not None:
            sets["decided_at"] = to_iso(changes.decided_at)
        if changes.resolved_by is not None:
            sets["resolved_by"] = changes.resolved_by
        if changes.user_feedback is not None:
            sets["user_feedback"] = changes.user_feedback
        if changes.modified_parameters is not None:
            sets["modified_parameters"] = _dumps(changes.modified_parameters)
        if changes.result is not UNSET:
            sets["result"] = _dumps(changes.result)
        if changes.error_message is not None:
            sets["error_message"] = changes.error_message
        sets["updated_at"] = to_iso(now or utcnow())

        sql = f"UPDATE approvals SET {', '.join(f'{k} = ?' for k in sets)} WHERE id = ?"
        params: List[Any] = [*sets.values(), approval_id]
        if expected_status is not None:
            sql += " AND status = ?"
            params.append(expected_status)
        if not_expired_at is not None:
            sql += " AND (expires_at IS NULL OR expires_at >= ?)"
            params.append(to_iso(not_expired_at))

        with self._lock:
            cur = self.conn.execute(sql, params)
            self.conn.commit()
            touched = cur.rowcount
        if touched == 0:
            return None
        return self.get_by_id(approval_id)

    def set_audit_log_id(self, approval_id: str, audit_log_id: str) -> None:
        with self._lock:
            self.conn.execute(
                "UPDATE approvals SET audit_log_id = ?, updated_at = ? WHERE id = ?",
                (audit_log_id, to_iso(utcnow()), approval_id),
            )
            self.conn.commit()

    def expire_stale(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> StaleExpiration:
        """Flip overdue pending approvals to 'expired' in one statement.

        Only rows this statement actually changed are reported, so two
        concurrent sweeps never count the same approval.
        """
        now = now or utcnow()
        ts = to_iso(now)
        with self._lock:
            rows = self.conn.execute(
                """UPDATE approvals
                   SET status = 'expired', decided_at = ?, resolved_by = 'timeout', updated_at = ?
                   WHERE status = 'pending' AND id IN (
                       SELECT id FROM approvals
                       WHERE status = 'pending' AND expires_at IS NOT NULL AND expires_at < ?
                       ORDER BY expires_at ASC
                       LIMIT ?
                   )
                   RETURNING id, plan_id""",
                (ts, ts, ts, -1 if limit is None else int(limit)),
            ).fetchall()
            self.conn.commit()
        ids = [r["id"] for r in rows]
        plan_ids = list(dict.fromkeys(r["plan_id"] for r in rows if r["plan_id"]))
        if ids:
            logger.info("Expired %d stale approval(s) (plans=%s)", len(ids), plan_ids)
        return StaleExpiration(count=len(ids), ids=ids, plan_ids=plan_ids)

    def cancel_for_plan(self, plan_id: str, now: Optional[datetime] = None) -> int:
        ts = to_iso(now or utcnow())
        with self._lock:
            cur = self.conn.execute(
                "UPDATE approvals SET status = 'rejected', decided_at = ?, resolved_by = 'system', updated_at = ? "
                "WHERE plan_id = ? AND status = 'pending'",
                (ts, ts, plan_id),
            )
            self.conn.commit()
            return cur.rowcount

    # ---------------- Reads ----------------
    def get_by_id(self, approval_id: str) -> Optional[Approval]:
        return self._fetch_one(f"SELECT {_COLUMNS} FROM approvals WHERE id = ?", (approval_id,))

    def get_by_id_for_user(self, user_id: str, approval_id: str) -> Optional[Approval]:
        return self._fetch_one(
            f"SELECT {_COLUMNS} FROM approvals WHERE id = ? AND user_id = ?", (approval_id, user_id)
        )

    def get_pending(
        self, user_id: str, options: Optional[ApprovalQueryOptions] = None, now: Optional[datetime] = None
    ) -> List[Approval]:
        opts = options or ApprovalQueryOptions()
        where = ["user_id = ?", "status = 'pending'"]
        params: List[Any] = [user_id]
        if opts.conversation_id:
            where.append("conversation_id = ?")
            params.append(opts.conversation_id)
        if opts.plan_id:
            where.append("plan_id = ?")
            params.append(opts.plan_id)
        if not opts.include_expired:
            where.append("(expires_at IS NULL OR expires_at > ?)")
            params.append(to_iso(now or utcnow()))
        order = "ASC" if opts.order == "asc" else "DESC"
        params += [int(opts.limit), int(opts.offset)]
        return self._fetch_all(
            f"SELECT {_COLUMNS} FROM approvals WHERE {' AND '.join(where)} "
            f"ORDER BY requested_at {order} LIMIT ? OFFSET ?",
            tuple(params),
        )

    def get_pending_for_plan(self, plan_id: str) -> List[Approval]:
        return self._fetch_all(
            f"SELECT {_COLUMNS} FROM approvals WHERE plan_id = ? AND status = 'pending' ORDER BY step_index ASC",
            (plan_id,),
        )

    def get_expiring(self, user_id: str, now: datetime, horizon: datetime) -> List[Approval]:
        """Pending approvals with ``now < expires_at <= horizon``, soonest first."""
        return self._fetch_all(
            f"SELECT {_COLUMNS} FROM approvals "
            "WHERE user_id = ? AND status = 'pending' AND expires_at > ? AND expires_at <= ? "
            "ORDER BY expires_at ASC",
            (user_id, to_iso(now), to_iso(horizon)),
        )

    def query(
        self, user_id: str, options: Optional[ApprovalQueryOptions] = None, now: Optional[datetime] = None
    ) -> ApprovalQueryResult:
        opts = options or ApprovalQueryOptions()
        where = ["user_id = ?"]
        params: List[Any] = [user_id]

        statuses: List[str] = []
        if isinstance(opts.status, str):
            statuses = [opts.status]
        elif opts.status:
            statuses = list(opts.status)
        if statuses:
            where.append(f"status IN ({', '.join('?' * len(statuses))})")
            params += statuses
        if opts.conversation_id:
            where.append("conversation_id = ?")
            params.append(opts.conversation_id)
        if opts.plan_id:
            where.append("plan_id = ?")
            params.append(opts.plan_id)
        # Overdue-but-unswept rows are hidden unless asked for
        if not opts.include_expired and (not statuses or statuses == ["pending"]):
            where.append("(status != 'pending' OR expires_at IS NULL OR expires_at > ?)")
            params.append(to_iso(now or utcnow()))

        clause = " AND ".join(where)
        with self._lock:
            total = self.conn.execute(f"SELECT COUNT(*) FROM approvals WHERE {clause}", params).fetchone()[0]
        order = "ASC" if opts.order == "asc" else "DESC"
        approvals = self._fetch_all(
            f"SELECT {_COLUMNS} FROM approvals WHERE {clause} ORDER BY requested_at {order} LIMIT ? OFFSET ?",
            tuple(params + [int(opts.limit), int(opts.offset)]),
        )
        return ApprovalQueryResult(
            approvals=approvals,
            total_count=int(total),
            has_more=int(opts.offset) + len(approvals) < int(total),
        )

    def get_count_by_status(self, user_id: str) -> Dict[str, int]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT status, COUNT(*) AS n FROM approvals WHERE user_id = ? GROUP BY status", (user_id,)
            ).fetchall()
        return {r["status"]: int(r["n"]) for r in rows}

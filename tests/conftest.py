from datetime import datetime, timedelta, timezone
from pathlib import Path
import pytest
from agentgate.approvals import ApprovalCreateInput, ApprovalService, ApprovalStore
from agentgate.audit import ChainAuditLog

ROOT = Path(__file__).resolve().parents[1]
T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class Clock:
    """Settable clock handed to services instead of the wall clock."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def store(tmp_path: Path):
    s = ApprovalStore(tmp_path / "approvals.db")
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def audit(tmp_path: Path) -> ChainAuditLog:
    return ChainAuditLog(tmp_path / "audit" / "chain.jsonl")


@pytest.fixture
def service(store, audit, clock) -> ApprovalService:
    return ApprovalService(store, audit, clock=clock)


@pytest.fixture
def make_input():
    def _make(**overrides) -> ApprovalCreateInput:
        data = dict(
            user_id="u1",
            tool_name="send_email",
            parameters={"to": "ada@example.com", "subject": "Hi", "body": "Hello"},
            action_type="send",
            risk_level="medium",
            reasoning="User asked to reply to Ada",
            confidence=0.82,
        )
        data.update(overrides)
        return ApprovalCreateInput(**data)
    return _make

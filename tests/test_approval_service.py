from datetime import timedelta
import json
import pytest
from pathlib import Path
from agentgate.approvals import ApprovalQueryOptions, ApprovalService, ApprovalStore, ApprovalUpdate, ExpirationSweeper
from agentgate.audit import ChainAuditLog
from agentgate.errors import ApprovalInputError
from conftest import T0


@pytest.mark.parametrize("risk,hours", [("low", 24), ("medium", 12), ("high", 4), ("critical", 1)])
def test_create_sets_risk_based_expiry(service, make_input, risk, hours):
    created = service.create(make_input(risk_level=risk))
    a = created.approval
    assert a.status == "pending"
    assert a.requested_at == T0
    assert a.expires_at - a.requested_at == timedelta(hours=hours)


def test_create_override_wins_exactly(service, make_input):
    a = service.create(make_input(risk_level="low", expires_in=timedelta(minutes=7))).approval
    assert a.expires_at == T0 + timedelta(minutes=7)


def test_create_unknown_risk_raises(service, make_input):
    with pytest.raises(ApprovalInputError):
        service.create(make_input(risk_level="extreme"))


def test_create_writes_audit_and_links_it(service, store, audit, make_input):
    created = service.create(make_input())
    assert created.audit_log_id
    assert store.get_by_id(created.approval.id).audit_log_id == created.audit_log_id
    entry = audit.find(created.audit_log_id)
    assert entry is not None
    assert entry.data["action_type"] == "create"
    assert entry.data["entity_type"] == "action_approval"
    assert entry.data["entity_id"] == created.approval.id
    assert json.loads(entry.data["input_summary"])["tool_name"] == "send_email"
    assert ChainAuditLog.verify(audit.path) is True


def test_default_summary(service, make_input):
    a = service.create(make_input()).approval
    assert a.summary == "send via send_email"


def test_approve_with_overrides_merges_parameters(service, make_input):
    a = service.create(make_input(plan_id="plan-1", step_index=2)).approval
    result = service.approve("u1", a.id, modified_parameters={"subject": "Hello again", "cc": "bob@example.com"})
    assert result is not None
    assert result.should_execute is True
    assert result.approval.status == "approved"
    assert result.approval.resolved_by == "user"
    assert result.approval.decided_at == T0
    assert result.effective_parameters == {
        "to": "ada@example.com",
        "subject": "Hello again",
        "body": "Hello",
        "cc": "bob@example.com",
    }
    assert result.plan_resumption.plan_id == "plan-1"
    assert result.plan_resumption.step_index == 2
    assert result.approval.modified_parameters == {"subject": "Hello again", "cc": "bob@example.com"}


def test_reject_stores_feedback(service, make_input):
    a = service.create(make_input()).approval
    result = service.reject("u1", a.id, feedback="Wrong recipient")
    assert result.should_execute is False
    assert result.effective_parameters is None
    assert result.plan_resumption is None
    assert result.approval.status == "rejected"
    assert result.approval.user_feedback == "Wrong recipient"


def test_second_decision_returns_none_and_keeps_first(service, store, make_input):
    a = service.create(make_input()).approval
    assert service.approve("u1", a.id) is not None
    assert service.reject("u1", a.id, feedback="changed my mind") is None
    assert service.approve("u1", a.id) is None
    stored = store.get_by_id(a.id)
    assert stored.status == "approved"
    assert stored.user_feedback is None


def test_decide_other_user_or_missing_returns_none(service, make_input):
    a = service.create(make_input()).approval
    assert service.approve("someone-else", a.id) is None
    assert service.approve("u1", "does-not-exist") is None


def test_decide_unknown_decision_raises(service, make_input):
    a = service.create(make_input()).approval
    with pytest.raises(ApprovalInputError):
        service.decide("u1", a.id, "maybe")


def test_decide_after_expiry_before_sweep_returns_none(service, store, clock, make_input):
    a = service.create(make_input(risk_level="high")).approval
    clock.advance(hours=4, seconds=1)
    assert service.approve("u1", a.id) is None
    assert store.get_by_id(a.id).status == "pending"


def test_decide_exactly_at_expiry_succeeds(service, clock, make_input):
    a = service.create(make_input(risk_level="critical")).approval
    clock.advance(hours=1)
    assert service.approve("u1", a.id) is not None


class InterleavingStore(ApprovalStore):
    """Runs ``interleave`` right after the pre-decision read, like a second worker would."""

    interleave = None

    def get_by_id_for_user(self, user_id, approval_id):
        found = super().get_by_id_for_user(user_id, approval_id)
        if self.interleave is not None:
            self.interleave()
        return found


def _racing_service(tmp_path: Path, clock):
    store = InterleavingStore(tmp_path / "race.db")
    audit = ChainAuditLog(tmp_path / "race.jsonl")
    return ApprovalService(store, audit, clock=clock), store, audit


def test_decision_loses_to_competing_decision(tmp_path: Path, clock, make_input):
    service, store, audit = _racing_service(tmp_path, clock)
    rival = ApprovalStore(tmp_path / "race.db")
    try:
        a = service.create(make_input()).approval
        store.interleave = lambda: rival.update(
            a.id,
            ApprovalUpdate(status="rejected", decided_at=clock(), resolved_by="user", user_feedback="no"),
            expected_status="pending",
            now=clock(),
        )
        assert service.approve("u1", a.id, {"subject": "Changed"}) is None

        stored = store.get_by_id(a.id)
        assert stored.status == "rejected"
        assert stored.user_feedback == "no"
        assert stored.modified_parameters is None
        assert [e.data["action_type"] for e in audit.entries()] == ["create"]
    finally:
        rival.close()
        store.close()


def test_decision_loses_to_competing_sweep(tmp_path: Path, clock, make_input):
    service, store, audit = _racing_service(tmp_path, clock)
    rival = ApprovalStore(tmp_path / "race.db")
    try:
        a = service.create(make_input(risk_level="critical")).approval
        clock.advance(hours=1)
        swept = []
        store.interleave = lambda: swept.append(rival.expire_stale(clock() + timedelta(seconds=1)))
        assert service.approve("u1", a.id) is None

        assert swept[0].ids == [a.id]
        stored = store.get_by_id(a.id)
        assert stored.status == "expired"
        assert stored.resolved_by == "timeout"
        assert [e.data["action_type"] for e in audit.entries()] == ["create"]
    finally:
        rival.close()
        store.close()


def test_critical_end_to_end(service, store, audit, clock, make_input):
    decided = service.create(make_input(risk_level="critical", plan_id="p-1", step_index=0)).approval
    forgotten = service.create(make_input(risk_level="critical", plan_id="p-2", step_index=1)).approval
    assert decided.expires_at == T0 + timedelta(hours=1)

    clock.now = T0 + timedelta(minutes=59)
    result = service.approve("u1", decided.id)
    assert result is not None and result.approval.status == "approved"

    clock.now = T0 + timedelta(minutes=61)
    assert service.approve("u1", forgotten.id) is None
    assert service.reject("u1", forgotten.id) is None

    sweep = ExpirationSweeper(store, audit, clock=clock).expire_stale_approvals()
    assert sweep.expired_count == 1
    assert sweep.expired_ids == [forgotten.id]
    assert "p-2" in sweep.affected_plan_ids
    expired = store.get_by_id(forgotten.id)
    assert expired.status == "expired"
    assert expired.resolved_by == "timeout"
    assert store.get_by_id(decided.id).status == "approved"


def test_mark_executed_and_failed(service, make_input):
    a = service.create(make_input()).approval
    service.approve("u1", a.id)
    done = service.mark_executed(a.id, {"message_id": "m-1"})
    assert done.status == "executed"
    assert done.result == {"message_id": "m-1"}

    b = service.create(make_input()).approval
    service.approve("u1", b.id)
    failed = service.mark_failed(b.id, "SMTP timeout")
    assert failed.status == "failed"
    assert failed.error_message == "SMTP timeout"
    assert service.mark_failed("missing", "x") is None


def test_mark_executed_can_store_null_result(service, store, make_input):
    a = service.create(make_input()).approval
    service.approve("u1", a.id)
    service.mark_executed(a.id, {"message_id": "m-1"})
    again = service.mark_executed(a.id, None)
    assert again.status == "executed"
    assert again.result is None
    assert store.get_by_id(a.id).result is None


def test_queries_hide_overdue_pending(service, clock, make_input):
    a = service.create(make_input(risk_level="critical")).approval
    b = service.create(make_input(risk_level="low")).approval
    assert service.get_pending_count("u1") == 2
    clock.advance(hours=2)
    pending = service.get_pending_approvals("u1")
    assert [x.id for x in pending] == [b.id]
    assert service.get_pending_count("u1") == 1
    everything = service.get_pending_approvals("u1", ApprovalQueryOptions(include_expired=True))
    assert {x.id for x in everything} == {a.id, b.id}
    assert service.get_approval("u1", a.id).id == a.id
    assert service.get_approval("u2", a.id) is None


def test_plan_integration(service, store, make_input):
    first = service.create(make_input(plan_id="plan-9", step_index=1)).approval
    second = service.create(make_input(plan_id="plan-9", step_index=0)).approval
    service.create(make_input(plan_id="other", step_index=0))

    pending = service.get_pending_approvals_for_plan("plan-9")
    assert [a.id for a in pending] == [second.id, first.id]

    assert service.cancel_approvals_for_plan("plan-9") == 2
    assert service.cancel_approvals_for_plan("plan-9") == 0
    cancelled = store.get_by_id(first.id)
    assert cancelled.status == "rejected"
    assert cancelled.resolved_by == "system"
    assert service.get_pending_approvals_for_plan("plan-9") == []


def test_display_through_service(service, make_input):
    a = service.create(make_input(parameters={"to": "x", "api_token": "abc"})).approval
    view = service.get_approval_for_display("u1", a.id)
    assert view.parameters == {"to": "x", "api_token": "***"}
    assert view.confidence_percent == 82
    assert view.expires_in == "12 hours"
    assert service.get_approval_for_display("u2", a.id) is None

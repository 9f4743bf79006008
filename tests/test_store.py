from datetime import timedelta
from pathlib import Path
from agentgate.approvals import Approval, ApprovalQueryOptions, ApprovalStore, ApprovalUpdate
from agentgate.core.types import Assumption
from conftest import T0


def _approval(i: int, **kw) -> Approval:
    data = dict(
        id=f"a{i}",
        user_id="u1",
        tool_name="create_event",
        action_type="create",
        risk_level="medium",
        parameters={"title": f"Meeting {i}", "attendees": ["ada", "bob"]},
        requested_at=T0 + timedelta(minutes=i),
        expires_at=T0 + timedelta(hours=12, minutes=i),
        created_at=T0,
        updated_at=T0,
    )
    data.update(kw)
    return Approval(**data)


def test_roundtrip_keeps_typed_fields(tmp_path: Path):
    db = ApprovalStore(tmp_path / "a.db")
    try:
        a = _approval(
            1,
            plan_id="p-1",
            step_index=3,
            conversation_id="c-1",
            confidence=0.7,
            assumptions=[Assumption("Ada means the Monday sync", "intent", ["last thread"], 0.6)],
        )
        db.create(a)
        got = db.get_by_id("a1")
        assert got.parameters == {"title": "Meeting 1", "attendees": ["ada", "bob"]}
        assert got.plan_id == "p-1" and got.step_index == 3 and got.conversation_id == "c-1"
        assert got.expires_at == T0 + timedelta(hours=12, minutes=1)
        assert got.assumptions[0].statement == "Ada means the Monday sync"
        assert got.assumptions[0].evidence == ["last thread"]
        assert db.get_by_id_for_user("u2", "a1") is None
    finally:
        db.close()


def test_conditional_update(store):
    store.create(_approval(1))
    changes = ApprovalUpdate(status="approved", decided_at=T0, resolved_by="user")
    assert store.update("a1", changes, expected_status="pending", now=T0) is not None
    # Already approved: the guarded write matches nothing
    again = ApprovalUpdate(status="rejected", decided_at=T0, resolved_by="user")
    assert store.update("a1", again, expected_status="pending", now=T0) is None
    assert store.get_by_id("a1").status == "approved"


def test_update_refuses_expired_rows(store):
    store.create(_approval(1, expires_at=T0))
    late = T0 + timedelta(seconds=1)
    changes = ApprovalUpdate(status="approved", decided_at=late, resolved_by="user")
    assert store.update("a1", changes, expected_status="pending", not_expired_at=late, now=late) is None
    assert store.get_by_id("a1").status == "pending"


def test_expire_stale_reports_only_rows_it_changed(store):
    store.create(_approval(1, plan_id="p-1", expires_at=T0))
    store.create(_approval(2, plan_id="p-1", expires_at=T0 + timedelta(minutes=1)))
    store.create(_approval(3, plan_id="p-2", expires_at=T0 + timedelta(hours=5)))
    store.create(_approval(4, expires_at=T0))

    now = T0 + timedelta(minutes=2)
    first = store.expire_stale(now, limit=2)
    assert first.count == 2
    second = store.expire_stale(now)
    assert second.count == 1
    assert set(first.ids) | set(second.ids) == {"a1", "a2", "a4"}
    assert store.expire_stale(now).count == 0
    assert store.get_by_id("a3").status == "pending"
    assert store.get_by_id("a4").resolved_by == "timeout"


def test_query_filters_and_paging(store):
    for i in range(5):
        store.create(_approval(i))
    store.update("a0", ApprovalUpdate(status="rejected"))
    store.create(_approval(9, user_id="u2"))

    page = store.query("u1", ApprovalQueryOptions(limit=2, order="asc"), now=T0)
    assert [a.id for a in page.approvals] == ["a0", "a1"]
    assert page.total_count == 5 and page.has_more is True

    pending = store.query("u1", ApprovalQueryOptions(status="pending", order="desc"), now=T0)
    assert [a.id for a in pending.approvals] == ["a4", "a3", "a2", "a1"]
    assert pending.has_more is False

    mixed = store.query("u1", ApprovalQueryOptions(status=["rejected", "approved"]), now=T0)
    assert [a.id for a in mixed.approvals] == ["a0"]


def test_query_hides_overdue_pending_unless_asked(store):
    store.create(_approval(1, expires_at=T0))
    store.create(_approval(2))
    later = T0 + timedelta(hours=1)
    assert [a.id for a in store.query("u1", now=later).approvals] == ["a2"]
    both = store.query("u1", ApprovalQueryOptions(include_expired=True), now=later)
    assert both.total_count == 2


def test_get_pending_filters_by_plan_and_conversation(store):
    store.create(_approval(1, plan_id="p-1", conversation_id="c-1"))
    store.create(_approval(2, plan_id="p-2", conversation_id="c-1"))
    assert [a.id for a in store.get_pending("u1", ApprovalQueryOptions(plan_id="p-1"), now=T0)] == ["a1"]
    assert len(store.get_pending("u1", ApprovalQueryOptions(conversation_id="c-1"), now=T0)) == 2


def test_counts_and_audit_link(store):
    store.create(_approval(1))
    store.create(_approval(2))
    store.cancel_for_plan("nothing")
    store.update("a2", ApprovalUpdate(status="executed", result={"ok": True}))
    store.set_audit_log_id("a1", "abc123")
    assert store.get_count_by_status("u1") == {"pending": 1, "executed": 1}
    assert store.get_by_id("a1").audit_log_id == "abc123"
    assert store.get_by_id("a2").result == {"ok": True}


def test_update_result_null_versus_untouched(store):
    store.create(_approval(1, status="executed", result={"ok": True}))
    store.update("a1", ApprovalUpdate(error_message="late retry"))
    assert store.get_by_id("a1").result == {"ok": True}
    store.update("a1", ApprovalUpdate(result=None))
    got = store.get_by_id("a1")
    assert got.result is None
    assert got.error_message == "late retry"


def test_get_expiring_window_is_not_capped(store):
    store.create(_approval(0, expires_at=T0 + timedelta(minutes=10)))
    for i in range(1, 121):
        store.create(_approval(i, risk_level="low", expires_at=T0 + timedelta(hours=24)))
    store.create(_approval(200, expires_at=T0 + timedelta(minutes=5)))
    store.create(_approval(201, expires_at=T0 - timedelta(minutes=1)))
    store.create(_approval(202, user_id="u2", expires_at=T0 + timedelta(minutes=1)))

    soon = store.get_expiring("u1", T0, T0 + timedelta(minutes=30))
    assert [a.id for a in soon] == ["a200", "a0"]
    assert len(store.get_expiring("u1", T0, T0 + timedelta(days=2))) == 122

import asyncio
import json
from datetime import datetime

import pytest
from sqlalchemy.exc import OperationalError

from conftest import MemoryStore, RecordingNotifier, make_request, make_user
from app.core.errors import PersistenceError
from app.services.approval_service import ApprovalService, DecisionPayload
from app.services.request_events import RequestEventBus
from app.workflow.policy import RequestStatus, role_for_status


HEAD = make_user(1, is_head=True, department_id=10)
PARENT_HEAD = make_user(2, is_head=True, department_id=20)
ADMIN = make_user(3, is_admin=True)
COMPTROLLER = make_user(4, is_comptroller=True)
HR = make_user(5, is_hr=True)
VP = make_user(6, is_vp=True)
PRESIDENT = make_user(7, is_president=True)
ALL_USERS = [HEAD, PARENT_HEAD, ADMIN, COMPTROLLER, HR, VP, PRESIDENT]

SIGNED = DecisionPayload(signature="data:image/png;base64,AAAA")


def _service(request_row, notifier=None, events=None, store=None, **kwargs):
    store = store or MemoryStore([request_row], ALL_USERS)
    service = ApprovalService(
        store=store,
        notifier=notifier or RecordingNotifier(),
        events=events or RequestEventBus(),
        **kwargs,
    )
    return service, store


def _decide(service, actor, role, action, payload=None, request_id=1):
    async def _run():
        result = await service.submit_decision(
            session=None,
            request_id=request_id,
            actor_id=actor.id,
            role=role,
            action=action,
            payload=payload,
        )
        await service.drain()
        return result

    return asyncio.run(_run())


def test_head_approval_without_budget_goes_to_admin():
    request_row = make_request(status="pending_head", parent_department_id=None, has_budget=False)
    service, _ = _service(request_row)

    result = _decide(service, HEAD, "head", "approve", SIGNED)

    assert result.success is True
    assert result.new_status == "pending_admin"
    assert request_row.status == "pending_admin"
    assert request_row.head_approved_by == HEAD.id
    assert request_row.head_signature == SIGNED.signature
    assert request_row.head_approved_at is not None


def test_head_approval_with_parent_department_goes_to_parent_head():
    request_row = make_request(status="pending_head", parent_department_id=20, has_budget=True)
    service, _ = _service(request_row)

    result = _decide(service, HEAD, "head", "approve", SIGNED)
    assert result.new_status == "pending_parent_head"

    result = _decide(service, PARENT_HEAD, "head", "approve", SIGNED)
    assert result.new_status == "pending_comptroller"
    assert request_row.parent_head_approved_by == PARENT_HEAD.id


def test_same_head_cannot_also_sign_as_parent_head():
    request_row = make_request(status="pending_head", parent_department_id=20)
    service, _ = _service(request_row)

    assert _decide(service, HEAD, "head", "approve", SIGNED).success is True
    second = _decide(service, HEAD, "head", "approve", SIGNED)

    assert second.success is False
    assert second.error == "already_processed"
    assert request_row.parent_head_approved_at is None


def test_head_from_another_department_is_unauthorized():
    request_row = make_request(status="pending_head", department_id=99)
    service, store = _service(request_row)

    result = _decide(service, HEAD, "head", "approve", SIGNED)

    assert result.error == "unauthorized"
    assert store.writes == []


def test_vp_approval_over_threshold_goes_to_president():
    request_row = make_request(
        status="pending_vp",
        requester_is_head=False,
        total_budget=20000,
        comptroller_edited_budget=None,
    )
    service, _ = _service(request_row)

    result = _decide(service, VP, "vp", "approve", SIGNED)

    assert result.new_status == "pending_president"
    assert request_row.vp_approved_by == VP.id


def test_vp_approval_at_threshold_is_final():
    request_row = make_request(status="pending_vp", total_budget=15000.00)
    service, _ = _service(request_row)

    result = _decide(service, VP, "vp", "approve", SIGNED)

    assert result.new_status == "approved"


def test_comptroller_approval_needs_no_signature_and_moves_to_hr():
    request_row = make_request(status="pending_comptroller", has_budget=True, total_budget=8000)
    notifier = RecordingNotifier()
    service, _ = _service(request_row, notifier=notifier)

    result = _decide(service, COMPTROLLER, "comptroller", "approve", DecisionPayload(comments="Verified"))

    assert result.new_status == "pending_hr"
    assert request_row.comptroller_approved_by == COMPTROLLER.id
    assert request_row.comptroller_comments == "Verified"
    assert notifier.calls[0]["new_status"] == "pending_hr"
    assert notifier.calls[0]["actor_id"] == COMPTROLLER.id


def test_comptroller_approval_can_carry_budget_edits():
    request_row = make_request(
        status="pending_comptroller",
        has_budget=True,
        total_budget=20000,
        expense_breakdown=[
            {"category": "Transportation", "amount": 12000, "description": "Airfare"},
            {"category": "Meals", "amount": 8000, "description": None},
        ],
    )
    service, _ = _service(request_row)

    result = _decide(
        service,
        COMPTROLLER,
        "comptroller",
        "approve",
        DecisionPayload(edited_budget={"transportation": 6000}),
    )

    assert result.success is True
    assert request_row.comptroller_edited_budget == 14000.0
    assert request_row.total_budget == 20000
    breakdown = json.loads(request_row.expense_breakdown)
    assert breakdown[0]["amount"] == 6000.0
    assert breakdown[1]["amount"] == 8000


def test_signature_required_on_signing_stages():
    request_row = make_request(status="pending_hr")
    service, store = _service(request_row)

    result = _decide(service, HR, "hr", "approve", DecisionPayload(comments="ok"))

    assert result.success is False
    assert result.error == "signature_required"
    assert request_row.status == "pending_hr"
    assert store.writes == []


def test_admin_processing_without_budget_goes_to_hr():
    request_row = make_request(status="pending_admin", has_budget=False)
    service, _ = _service(request_row)

    result = _decide(service, ADMIN, "admin", "approve", DecisionPayload(comments="Vehicle assigned"))

    assert result.new_status == "pending_hr"
    assert request_row.admin_processed_by == ADMIN.id
    assert request_row.admin_comments == "Vehicle assigned"


def test_head_cannot_approve_pending_vp():
    request_row = make_request(status="pending_vp")
    service, store = _service(request_row)

    result = _decide(service, HEAD, "head", "approve", SIGNED)

    assert result.success is False
    assert result.error == "unauthorized"
    assert store.writes == []


def test_second_approval_is_already_processed_and_changes_nothing():
    request_row = make_request(status="pending_hr")
    service, store = _service(request_row)

    first = _decide(service, HR, "hr", "approve", SIGNED)
    snapshot = request_row.model_dump()
    second = _decide(service, HR, "hr", "approve", SIGNED)

    assert first.success is True
    assert second.success is False
    assert second.error == "already_processed"
    assert request_row.model_dump() == snapshot
    assert len(store.writes) == 1


def test_stamped_stage_is_never_restamped():
    # Status was rolled back by hand but the stage already carries an approval.
    request_row = make_request(status="pending_hr", hr_approved_by=5, hr_approved_at=datetime(2026, 1, 6, 9, 30))
    service, store = _service(request_row)

    result = _decide(service, HR, "hr", "approve", SIGNED)

    assert result.error == "already_processed"
    assert store.writes == []


@pytest.mark.parametrize("status", sorted(s.value for s in RequestStatus if s.value.startswith("pending_")))
def test_rejection_is_legal_from_every_pending_state(status):
    request_row = make_request(status=status)
    notifier = RecordingNotifier()
    service, _ = _service(request_row, notifier=notifier)
    role = role_for_status(status).value
    actor = {user_role: user for user_role, user in [
        ("head", HEAD), ("admin", ADMIN), ("comptroller", COMPTROLLER),
        ("hr", HR), ("vp", VP), ("president", PRESIDENT),
    ]}[role]

    result = _decide(service, actor, role, "reject", DecisionPayload(rejection_reason="Out of policy"))

    assert result.success is True
    assert result.new_status == "rejected"
    assert request_row.rejection_stage == role
    assert request_row.rejection_reason == "Out of policy"
    assert request_row.rejected_by == actor.id
    assert notifier.calls[0]["prior_action"] == "reject"


def test_any_approver_in_the_chain_may_reject():
    request_row = make_request(status="pending_hr")
    service, _ = _service(request_row)

    result = _decide(service, PRESIDENT, "president", "reject", DecisionPayload(comments="Not a priority"))

    assert result.new_status == "rejected"
    assert request_row.rejection_stage == "president"
    assert request_row.rejection_reason == "Not a priority"


def test_president_rejection_scenario():
    request_row = make_request(status="pending_president")
    notifier = RecordingNotifier()
    service, _ = _service(request_row, notifier=notifier)

    result = _decide(
        service,
        PRESIDENT,
        "president",
        "reject",
        DecisionPayload(rejection_reason="insufficient justification"),
    )

    assert result.new_status == "rejected"
    assert request_row.rejection_stage == "president"
    assert request_row.rejection_reason == "insufficient justification"
    assert request_row.president_approved_at is None
    assert len(notifier.calls) == 1
    assert notifier.calls[0]["requester_id"] == request_row.requester_id
    assert notifier.calls[0]["new_status"] == "rejected"


def test_rejecting_a_closed_request_is_already_processed():
    request_row = make_request(status="rejected")
    service, store = _service(request_row)

    result = _decide(service, VP, "vp", "reject", DecisionPayload(rejection_reason="again"))

    assert result.error == "already_processed"
    assert store.writes == []


def test_draft_cannot_be_rejected():
    request_row = make_request(status="draft")
    service, _ = _service(request_row)

    result = _decide(service, HEAD, "head", "reject")

    assert result.error == "unauthorized"


def test_return_records_normalized_reason_and_stage_comments():
    request_row = make_request(status="pending_comptroller", has_budget=True)
    service, _ = _service(request_row)

    result = _decide(
        service,
        COMPTROLLER,
        "comptroller",
        "return",
        DecisionPayload(return_reason="Attach quotation for lodging"),
    )

    assert result.new_status == "returned"
    assert request_row.return_reason == "Attach quotation for lodging"
    assert request_row.return_stage == "comptroller"
    assert request_row.returned_by == COMPTROLLER.id
    assert request_row.comptroller_comments == "Attach quotation for lodging"
    assert request_row.rejected_at is None
    assert request_row.rejection_reason is None
    assert request_row.comptroller_approved_at is None


def test_parent_head_return_uses_parent_head_comments():
    request_row = make_request(status="pending_parent_head", parent_department_id=20)
    service, _ = _service(request_row)

    _decide(service, PARENT_HEAD, "head", "return", DecisionPayload(comments="Clarify the itinerary"))

    assert request_row.parent_head_comments == "Clarify the itinerary"
    assert request_row.head_comments is None


def test_head_approval_stores_next_approver_hint():
    request_row = make_request(status="pending_head", workflow_metadata=json.dumps({"source": "mobile"}))
    service, _ = _service(request_row)

    _decide(
        service,
        HEAD,
        "head",
        "approve",
        DecisionPayload(signature="sig", next_approver_id=42, next_approver_role="vp"),
    )

    assert json.loads(request_row.workflow_metadata) == {
        "source": "mobile",
        "next_approver_id": 42,
        "next_approver_role": "vp",
    }


def test_unknown_request_is_not_found():
    request_row = make_request(id=1)
    service, _ = _service(request_row)

    result = _decide(service, HR, "hr", "approve", SIGNED, request_id=404)

    assert result.success is False
    assert result.error == "not_found"


def test_unknown_action_is_invalid():
    request_row = make_request(status="pending_hr")
    service, _ = _service(request_row)

    result = _decide(service, HR, "hr", "escalate")

    assert result.error == "invalid_decision"


def test_slow_load_fails_with_timeout():
    class _SlowStore(MemoryStore):
        async def get_request(self, session, request_id):
            await asyncio.sleep(1)
            return await super().get_request(session, request_id)

    request_row = make_request(status="pending_hr")
    store = _SlowStore([request_row], ALL_USERS)
    service, _ = _service(request_row, store=store, load_timeout=0.01)

    result = _decide(service, HR, "hr", "approve", SIGNED)

    assert result.error == "timeout"
    assert store.writes == []


def test_persistence_failure_is_reported_and_nothing_is_notified():
    class _BrokenStore(MemoryStore):
        async def update_request(self, *args, **kwargs):
            raise PersistenceError("disk full", request_id=1)

    request_row = make_request(status="pending_hr")
    notifier = RecordingNotifier()
    store = _BrokenStore([request_row], ALL_USERS)
    service, _ = _service(request_row, store=store, notifier=notifier)

    result = _decide(service, HR, "hr", "approve", SIGNED)

    assert result.error == "persistence_error"
    assert request_row.status == "pending_hr"
    assert notifier.calls == []


def test_notification_failure_does_not_fail_the_decision():
    request_row = make_request(status="pending_hr")
    notifier = RecordingNotifier(fail=True)
    service, _ = _service(request_row, notifier=notifier)

    result = _decide(service, HR, "hr", "approve", SIGNED)

    assert result.success is True
    assert result.new_status == "pending_vp"
    assert len(notifier.calls) == 1


def test_state_change_event_is_published():
    request_row = make_request(status="pending_president")
    events = RequestEventBus()
    received = []
    events.subscribe(received.append)
    service, _ = _service(request_row, events=events)

    _decide(service, PRESIDENT, "president", "approve", SIGNED)

    assert len(received) == 1
    assert received[0].request_id == 1
    assert received[0].previous_status == "pending_president"
    assert received[0].new_status == "approved"
    assert received[0].actor_id == PRESIDENT.id


def test_inactive_actor_is_unauthorized():
    request_row = make_request(status="pending_hr")
    inactive = make_user(50, is_hr=True, is_active=False)
    store = MemoryStore([request_row], ALL_USERS + [inactive])
    service, _ = _service(request_row, store=store)

    result = _decide(service, inactive, "hr", "approve", SIGNED)

    assert result.error == "unauthorized"


def test_head_cannot_approve_a_vp_stage_request_signed_by_another_head():
    request_row = make_request(
        status="pending_vp",
        head_approved_by=HEAD.id,
        head_approved_at=datetime(2026, 1, 6, 9, 0),
        hr_approved_by=HR.id,
        hr_approved_at=datetime(2026, 1, 7, 9, 0),
    )
    outsider = make_user(99, is_head=True, department_id=77)
    store = MemoryStore([request_row], ALL_USERS + [outsider])
    service, _ = _service(request_row, store=store)

    result = _decide(service, outsider, "head", "approve", SIGNED)

    assert result.success is False
    assert result.error == "unauthorized"
    assert store.writes == []


def test_head_replaying_an_earlier_approval_is_already_processed():
    request_row = make_request(
        status="pending_vp",
        head_approved_by=HEAD.id,
        head_approved_at=datetime(2026, 1, 6, 9, 0),
    )
    service, store = _service(request_row)

    result = _decide(service, HEAD, "head", "approve", SIGNED)

    assert result.error == "already_processed"
    assert store.writes == []


def test_actor_lookup_failure_is_a_persistence_error():
    class _UserLookupDown(MemoryStore):
        async def get_user(self, session, user_id):
            raise OperationalError("SELECT user", {}, Exception("connection reset"))

    request_row = make_request(status="pending_hr")
    notifier = RecordingNotifier()
    store = _UserLookupDown([request_row], ALL_USERS)
    service, _ = _service(request_row, store=store, notifier=notifier)

    result = _decide(service, HR, "hr", "approve", SIGNED)

    assert result.success is False
    assert result.error == "persistence_error"
    assert request_row.status == "pending_hr"
    assert notifier.calls == []


def test_slow_actor_lookup_fails_with_timeout():
    class _SlowUserStore(MemoryStore):
        async def get_user(self, session, user_id):
            await asyncio.sleep(1)
            return await super().get_user(session, user_id)

    request_row = make_request(status="pending_hr")
    store = _SlowUserStore([request_row], ALL_USERS)
    service, _ = _service(request_row, store=store, load_timeout=0.01)

    result = _decide(service, HR, "hr", "approve", SIGNED)

    assert result.error == "timeout"
    assert store.writes == []


def test_decision_returns_before_notifications_are_delivered():
    class _SlowNotifier(RecordingNotifier):
        def __init__(self):
            super().__init__()
            self.release = asyncio.Event()

        async def dispatch(self, **kwargs):
            await self.release.wait()
            return await super().dispatch(**kwargs)

    request_row = make_request(status="pending_hr")

    async def _run():
        notifier = _SlowNotifier()
        service, _ = _service(request_row, notifier=notifier)
        result = await service.submit_decision(
            session=None,
            request_id=1,
            actor_id=HR.id,
            role="hr",
            action="approve",
            payload=SIGNED,
        )
        pending_before = len(notifier.calls)
        notifier.release.set()
        await service.drain()
        return result, pending_before, len(notifier.calls)

    result, delivered_before, delivered_after = asyncio.run(_run())

    assert result.success is True
    assert request_row.status == "pending_vp"
    assert delivered_before == 0
    assert delivered_after == 1

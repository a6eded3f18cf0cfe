import pytest

from plangate.errors import IllegalTransitionError, VersionConflictError
from plangate.lifecycle import CANCELLATION_HEADING, REJECTION_HEADING, is_terminal
from plangate.schemas import PLAN_STATUSES, TERMINAL_STATUSES, TRANSITIONS
from tests.fakes import reminder_draft


async def _plan_in(store, lifecycle, status):
    plan = await store.create(reminder_draft())
    path = {
        "proposed": [],
        "approved": ["approve"],
        "executing": ["approve", "mark_executing"],
        "completed": ["approve", "mark_executing", "mark_completed"],
        "failed": ["approve", "mark_executing", "mark_failed"],
        "stalled": ["approve", "mark_executing", "mark_stalled"],
        "rejected": ["reject"],
        "cancelled": ["cancel"],
    }[status]
    for op in path:
        if op in ("mark_completed", "mark_failed", "mark_stalled"):
            plan = await getattr(lifecycle, op)(plan.id, "done")
        else:
            plan = await getattr(lifecycle, op)(plan.id)
    assert plan.status == status
    return plan


async def test_happy_path(store, lifecycle, clock):
    plan = await store.create(reminder_draft())
    approved = await lifecycle.approve(plan.id, expected_version=1)
    assert (approved.status, approved.version) == ("approved", 2)

    clock.advance(minutes=1)
    executing = await lifecycle.mark_executing(plan.id, session="sess-1", expected_version=2)
    assert executing.status == "executing"
    assert executing.version == 3
    assert executing.execution_started_at == "2026-03-01T09:01:00Z"
    assert executing.execution_session == "sess-1"
    assert [s.status for s in executing.scripts] == ["pending", "pending"]

    clock.advance(minutes=4)
    completed = await lifecycle.mark_completed(plan.id, "Reminder sent to ACME.")
    assert completed.status == "completed"
    assert completed.version == 4
    assert completed.execution_ended_at == "2026-03-01T09:05:00Z"
    assert completed.result_summary == "Reminder sent to ACME."
    assert completed.is_terminal


async def test_reject_appends_feedback(store, lifecycle):
    plan = await store.create(reminder_draft())
    rejected = await lifecycle.reject(plan.id, "Wrong customer; use the Globex invoice.")
    assert rejected.status == "rejected"
    assert REJECTION_HEADING in rejected.body
    assert rejected.body.endswith("Wrong customer; use the Globex invoice.")
    on_disk = await store.get(plan.id, use_cache=False)
    assert on_disk.body == rejected.body


async def test_reject_keeps_existing_notes(store, lifecycle):
    draft = reminder_draft()
    draft["body"] = "Drafted from the weekly AR review."
    plan = await store.create(draft)
    rejected = await lifecycle.reject(plan.id, "Not this week.")
    assert rejected.body.startswith("Drafted from the weekly AR review.\n\n" + REJECTION_HEADING)


async def test_reject_without_feedback(store, lifecycle):
    plan = await store.create(reminder_draft())
    rejected = await lifecycle.reject(plan.id)
    assert rejected.status == "rejected"
    assert rejected.body is None


async def test_cancel_records_reason(store, lifecycle):
    plan = await _plan_in(store, lifecycle, "executing")
    cancelled = await lifecycle.cancel(plan.id, "Customer paid in the meantime.")
    assert cancelled.status == "cancelled"
    assert CANCELLATION_HEADING in cancelled.body


async def test_mark_failed_records_reason(store, lifecycle):
    plan = await _plan_in(store, lifecycle, "executing")
    failed = await lifecycle.mark_failed(plan.id, "gmail: quota exceeded")
    assert failed.status == "failed"
    assert failed.result_summary == "gmail: quota exceeded"
    assert failed.execution_ended_at is not None


async def test_mark_stalled_leaves_end_time_unset(store, lifecycle):
    plan = await _plan_in(store, lifecycle, "executing")
    stalled = await lifecycle.mark_stalled(plan.id, "no word from executor")
    assert stalled.status == "stalled"
    assert stalled.execution_ended_at is None
    assert stalled.result_summary == "no word from executor"


async def test_approve_twice_is_illegal(store, lifecycle):
    plan = await store.create(reminder_draft())
    await lifecycle.approve(plan.id)
    with pytest.raises(IllegalTransitionError) as excinfo:
        await lifecycle.approve(plan.id)
    assert excinfo.value.current_status == "approved"
    assert "not in proposed status" in str(excinfo.value)


async def test_stale_expected_version_conflicts(store, lifecycle):
    plan = await store.create(reminder_draft())
    await store.update(plan.id, lambda p: None)
    with pytest.raises(VersionConflictError):
        await lifecycle.approve(plan.id, expected_version=1)
    assert (await store.get(plan.id, use_cache=False)).status == "proposed"


REACHABLE = ("proposed", "approved", "executing", "completed", "failed", "stalled", "rejected", "cancelled")


@pytest.mark.parametrize("status", REACHABLE)
@pytest.mark.parametrize("operation", sorted(TRANSITIONS))
async def test_every_operation_guards_its_source_status(store, lifecycle, status, operation):
    plan = await _plan_in(store, lifecycle, status)
    sources, target = TRANSITIONS[operation]
    method = getattr(lifecycle, operation)
    args = (plan.id, "note") if operation in ("mark_completed", "mark_failed", "mark_stalled") else (plan.id,)
    if status in sources:
        updated = await method(*args)
        assert updated.status == target
        assert updated.version == plan.version + 1
    else:
        with pytest.raises(IllegalTransitionError):
            await method(*args)
        on_disk = await store.get(plan.id, use_cache=False)
        assert (on_disk.status, on_disk.version) == (plan.status, plan.version)


def test_terminal_statuses():
    assert set(TERMINAL_STATUSES) == {"completed", "failed", "rejected", "cancelled"}
    for status in PLAN_STATUSES:
        assert is_terminal(status) == (status in TERMINAL_STATUSES)
    # cancel reaches every status that is not terminal
    cancel_sources, _ = TRANSITIONS["cancel"]
    assert set(cancel_sources) == set(PLAN_STATUSES) - set(TERMINAL_STATUSES)

import pytest

from plangate.checkpoint import CheckpointLog
from plangate.errors import DispatchError, IllegalTransitionError, PlanStoreError, PreflightError, VersionConflictError
from plangate.plan_runner import SUMMARY_LIMIT, PlanRunner
from plangate.preflight import StaticToolInventory
from tests.fakes import FailingDispatcher, FakeDispatcher, reminder_draft


def make_runner(store, lifecycle, dispatcher=None, tools=("odoo-toolbox", "gmail")):
    checkpoints = CheckpointLog(store.sessions_dir)
    return PlanRunner(store, lifecycle, checkpoints, StaticToolInventory(tools), dispatcher=dispatcher)


async def _approved(store, lifecycle):
    plan = await store.create(reminder_draft())
    return await lifecycle.approve(plan.id)


async def test_full_run_is_checkpointed(store, lifecycle):
    dispatcher = FakeDispatcher()
    runner = make_runner(store, lifecycle, dispatcher)
    plan = await _approved(store, lifecycle)

    started = await runner.start(plan.id, plan.version, session="sess-7")
    assert started.status == "executing"
    assert [p.id for p in dispatcher.dispatched] == [plan.id]

    await runner.report_step(plan.id, 0, "done", "invoice read")
    stepped = await runner.report_step(plan.id, 1, "done", "email sent")
    assert [s.status for s in stepped.scripts] == ["done", "done"]
    assert stepped.scripts[0].summary == "invoice read"

    finished = await runner.finish(plan.id, True, "Reminder delivered.")
    assert finished.status == "completed"
    assert finished.result_summary == "Reminder delivered."

    records = runner.checkpoints.read(plan.id)
    assert [(r.step, r.status) for r in records] == [(None, "started"), (0, "done"), (1, "done"), (None, "completed")]


async def test_start_without_dispatcher(store, lifecycle):
    runner = make_runner(store, lifecycle)
    plan = await _approved(store, lifecycle)
    started = await runner.start(plan.id, plan.version)
    assert started.status == "executing"


async def test_preflight_failure_leaves_plan_approved(store, lifecycle):
    dispatcher = FakeDispatcher()
    runner = make_runner(store, lifecycle, dispatcher, tools=("odoo-toolbox",))
    plan = await _approved(store, lifecycle)
    with pytest.raises(PreflightError) as excinfo:
        await runner.start(plan.id, plan.version)
    assert excinfo.value.missing_tools == ["gmail"]
    assert (await store.get(plan.id, use_cache=False)).status == "approved"
    assert dispatcher.dispatched == []
    assert runner.checkpoints.read(plan.id) == []


async def test_per_call_inventory_overrides_default(store, lifecycle):
    runner = make_runner(store, lifecycle, tools=())
    plan = await _approved(store, lifecycle)
    started = await runner.start(plan.id, plan.version, inventory=StaticToolInventory(["gmail", "odoo-toolbox"]))
    assert started.status == "executing"


async def test_dispatch_failure_marks_plan_failed(store, lifecycle):
    runner = make_runner(store, lifecycle, FailingDispatcher("agent host unreachable"))
    plan = await _approved(store, lifecycle)
    with pytest.raises(DispatchError):
        await runner.start(plan.id, plan.version)
    failed = await store.get(plan.id, use_cache=False)
    assert failed.status == "failed"
    assert "agent host unreachable" in failed.result_summary
    assert [r.status for r in runner.checkpoints.read(plan.id)] == ["started", "failed"]


async def test_dispatch_error_survives_failed_bookkeeping(store, lifecycle, monkeypatch):
    runner = make_runner(store, lifecycle, FailingDispatcher("agent host unreachable"))
    plan = await _approved(store, lifecycle)

    async def conflicting_mark_failed(plan_id, reason):
        raise VersionConflictError(plan_id, 3, 4, operation="mark_failed")

    monkeypatch.setattr(lifecycle, "mark_failed", conflicting_mark_failed)
    with pytest.raises(DispatchError) as excinfo:
        await runner.start(plan.id, plan.version)
    assert isinstance(excinfo.value.cause, ConnectionError)
    assert [r.status for r in runner.checkpoints.read(plan.id)] == ["started", "failed"]


async def test_report_step_requires_executing_plan(store, lifecycle):
    runner = make_runner(store, lifecycle)
    plan = await _approved(store, lifecycle)
    with pytest.raises(IllegalTransitionError):
        await runner.report_step(plan.id, 0, "done")
    assert runner.checkpoints.read(plan.id) == []


async def test_report_step_validates_index_and_status(store, lifecycle):
    runner = make_runner(store, lifecycle)
    plan = await _approved(store, lifecycle)
    await runner.start(plan.id, plan.version)
    with pytest.raises(PlanStoreError):
        await runner.report_step(plan.id, 2, "done")
    with pytest.raises(ValueError):
        await runner.report_step(plan.id, 0, "exploded")


async def test_failed_finish_and_summary_clipping(store, lifecycle):
    runner = make_runner(store, lifecycle)
    plan = await _approved(store, lifecycle)
    await runner.start(plan.id, plan.version)
    failed = await runner.finish(plan.id, False, "x" * (SUMMARY_LIMIT + 50))
    assert failed.status == "failed"
    assert len(failed.result_summary) == SUMMARY_LIMIT
    assert runner.checkpoints.read(plan.id)[-1].status == "failed"


async def test_finish_twice_is_illegal(store, lifecycle):
    runner = make_runner(store, lifecycle)
    plan = await _approved(store, lifecycle)
    await runner.start(plan.id, plan.version)
    await runner.finish(plan.id, True)
    with pytest.raises(IllegalTransitionError):
        await runner.finish(plan.id, False, "late failure")

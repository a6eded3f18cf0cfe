import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .checkpoint import CheckpointLog
from .config import PlannerSettings, load_settings
from .errors import (
    DispatchError,
    IllegalTransitionError,
    ImmutableFieldError,
    PlanNotFoundError,
    PlanParseError,
    PreflightError,
    PlanStoreError,
    VersionConflictError,
)
from .lifecycle import PlanLifecycle
from .plan_runner import AgentDispatcher, PlanRunner
from .plan_store import PlanStore
from .preflight import StaticToolInventory, ToolInventory
from .schemas import (
    ApproveRequest,
    CancelRequest,
    ExecutePlanRequest,
    OutcomeRequest,
    Plan,
    PlanDraft,
    RejectRequest,
    StepReport,
)
from .stalled import StalledPlanDetector, find_stale_proposals, recover_stalled_plans


logger = logging.getLogger("uvicorn.error")


def plan_payload(plan: Plan, stale_ids: Optional[set] = None) -> Dict[str, Any]:
    data = plan.model_dump(mode="json")
    if stale_ids is not None:
        data["stale"] = plan.id in stale_ids
    return data


def get_settings(request: Request) -> PlannerSettings:
    return request.app.state.settings


def get_store(request: Request) -> PlanStore:
    return request.app.state.store


def get_lifecycle(request: Request) -> PlanLifecycle:
    return request.app.state.lifecycle


def get_runner(request: Request) -> PlanRunner:
    return request.app.state.runner


def get_checkpoints(request: Request) -> CheckpointLog:
    return request.app.state.checkpoints


router = APIRouter()


@router.get("/settings")
async def get_settings_route(settings: PlannerSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.get("/api/plans")
async def list_plans(
    status: Optional[str] = None,
    store: PlanStore = Depends(get_store),
    settings: PlannerSettings = Depends(get_settings),
):
    statuses = [s for s in (status or "").split(",") if s.strip()] or None
    try:
        plans = await store.list(status=statuses)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    plans.sort(key=lambda p: p.created_at, reverse=True)
    stale_ids = {p.id for p in find_stale_proposals(plans, settings.stale_after_days)}
    return {"plans": [plan_payload(p, stale_ids) for p in plans]}


@router.post("/api/plans")
async def propose_plan(draft: PlanDraft, store: PlanStore = Depends(get_store)):
    plan = await store.create(draft)
    return {"plan": plan_payload(plan)}


@router.get("/api/plans/{plan_id}")
async def get_plan(plan_id: str, store: PlanStore = Depends(get_store)):
    plan = await store.require(plan_id)
    return {"plan": plan_payload(plan)}


@router.post("/api/plans/{plan_id}/approve")
async def approve_plan(
    plan_id: str,
    payload: Optional[ApproveRequest] = None,
    lifecycle: PlanLifecycle = Depends(get_lifecycle),
):
    payload = payload or ApproveRequest()
    plan = await lifecycle.approve(plan_id, expected_version=payload.expected_version)
    return {"plan": plan_payload(plan)}


@router.post("/api/plans/{plan_id}/reject")
async def reject_plan(
    plan_id: str,
    payload: Optional[RejectRequest] = None,
    lifecycle: PlanLifecycle = Depends(get_lifecycle),
):
    plan = await lifecycle.reject(plan_id, payload.feedback if payload else None)
    return {"plan": plan_payload(plan)}


@router.post("/api/plans/{plan_id}/cancel")
async def cancel_plan(
    plan_id: str,
    payload: Optional[CancelRequest] = None,
    lifecycle: PlanLifecycle = Depends(get_lifecycle),
):
    plan = await lifecycle.cancel(plan_id, payload.reason if payload else None)
    return {"plan": plan_payload(plan)}


@router.post("/api/plans/{plan_id}/execute")
async def execute_plan(
    plan_id: str,
    payload: ExecutePlanRequest,
    runner: PlanRunner = Depends(get_runner),
):
    inventory: Optional[ToolInventory] = None
    if payload.available_tools is not None:
        inventory = StaticToolInventory(payload.available_tools)
    plan = await runner.start(plan_id, payload.expected_version, session=payload.session, inventory=inventory)
    return {"plan": plan_payload(plan)}


@router.post("/api/plans/{plan_id}/steps/{step_index}")
async def report_step(
    plan_id: str,
    step_index: int,
    payload: StepReport,
    runner: PlanRunner = Depends(get_runner),
):
    plan = await runner.report_step(plan_id, step_index, payload.status, payload.summary)
    return {"plan": plan_payload(plan)}


@router.post("/api/plans/{plan_id}/complete")
async def complete_plan(plan_id: str, payload: OutcomeRequest, runner: PlanRunner = Depends(get_runner)):
    plan = await runner.finish(plan_id, True, payload.summary)
    return {"plan": plan_payload(plan)}


@router.post("/api/plans/{plan_id}/fail")
async def fail_plan(plan_id: str, payload: OutcomeRequest, runner: PlanRunner = Depends(get_runner)):
    plan = await runner.finish(plan_id, False, payload.summary)
    return {"plan": plan_payload(plan)}


@router.get("/api/plans/{plan_id}/checkpoints")
async def list_checkpoints(
    plan_id: str,
    limit: Optional[int] = None,
    store: PlanStore = Depends(get_store),
    checkpoints: CheckpointLog = Depends(get_checkpoints),
):
    await store.require(plan_id)
    records = checkpoints.read(plan_id, limit=limit)
    return {"records": [r.model_dump() for r in records]}


@router.get("/api/recovery")
async def last_recovery(request: Request):
    return {"recovery": request.app.state.recovery}


def _error_response(status_code: int, exc: Exception, **extra: Any) -> JSONResponse:
    detail: Dict[str, Any] = {"error": type(exc).__name__, "message": str(exc)}
    plan_id = getattr(exc, "plan_id", None)
    if plan_id:
        detail["plan_id"] = plan_id
    detail.update({k: v for k, v in extra.items() if v is not None})
    return JSONResponse(status_code=status_code, content={"detail": detail})


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(PlanNotFoundError)
    async def _not_found(request: Request, exc: PlanNotFoundError):
        return _error_response(404, exc)

    @app.exception_handler(VersionConflictError)
    async def _conflict(request: Request, exc: VersionConflictError):
        return _error_response(
            409, exc, expected_version=exc.expected_version, actual_version=exc.actual_version, retryable=True
        )

    @app.exception_handler(IllegalTransitionError)
    async def _illegal(request: Request, exc: IllegalTransitionError):
        return _error_response(409, exc, current_status=exc.current_status)

    @app.exception_handler(PreflightError)
    async def _preflight(request: Request, exc: PreflightError):
        return _error_response(
            422,
            exc,
            reason=exc.reason,
            expected_version=exc.expected_version,
            actual_version=exc.actual_version,
            missing_tools=exc.missing_tools or None,
        )

    @app.exception_handler(ImmutableFieldError)
    async def _immutable(request: Request, exc: ImmutableFieldError):
        return _error_response(400, exc, field=exc.field)

    @app.exception_handler(DispatchError)
    async def _dispatch(request: Request, exc: DispatchError):
        return _error_response(502, exc)

    @app.exception_handler(PlanStoreError)
    async def _bad_request(request: Request, exc: PlanStoreError):
        return _error_response(400, exc)

    @app.exception_handler(PlanParseError)
    async def _corrupt(request: Request, exc: PlanParseError):
        logger.error("Plan document unreadable: %s", exc)
        return _error_response(500, exc)


def create_app(
    settings: PlannerSettings,
    *,
    store: Optional[PlanStore] = None,
    dispatcher: Optional[AgentDispatcher] = None,
    inventory: Optional[ToolInventory] = None,
    detector: Optional[StalledPlanDetector] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.store.ensure_dirs()
        scan = await recover_stalled_plans(
            app.state.store, app.state.lifecycle, app.state.detector, app.state.checkpoints
        )
        app.state.recovery = scan.to_dict()
        yield

    app = FastAPI(title="plangate", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store or PlanStore(settings.project_path())
    app.state.lifecycle = PlanLifecycle(app.state.store)
    app.state.checkpoints = CheckpointLog(app.state.store.sessions_dir)
    app.state.detector = detector or StalledPlanDetector(settings.executor_timeout_minutes)
    app.state.runner = PlanRunner(
        app.state.store,
        app.state.lifecycle,
        app.state.checkpoints,
        inventory or StaticToolInventory(settings.available_tools),
        dispatcher=dispatcher,
    )
    app.state.recovery = {"stalled": [], "running": [], "skipped": []}

    _install_error_handlers(app)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("PLANGATE_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "plangate.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass

from pathlib import Path
from typing import Optional

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from plangate.config import PlannerSettings
from plangate.lifecycle import PlanLifecycle
from plangate.main import create_app
from plangate.plan_store import PlanStore
from plangate.preflight import StaticToolInventory
from tests.fakes import FakeClock, FakeDispatcher


def make_settings(tmp_path: Path, **overrides) -> PlannerSettings:
    settings = PlannerSettings(
        project_root=str(tmp_path),
        stale_after_days=30,
        executor_timeout_minutes=30,
        available_tools=["odoo-toolbox", "gmail"],
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path, clock: FakeClock) -> PlanStore:
    plan_store = PlanStore(tmp_path, clock=clock)
    plan_store.ensure_dirs()
    return plan_store


@pytest.fixture
def lifecycle(store: PlanStore) -> PlanLifecycle:
    return PlanLifecycle(store)


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        dispatcher: Optional[FakeDispatcher] = None,
        store: Optional[PlanStore] = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        fake_dispatcher = dispatcher or FakeDispatcher()
        app = create_app(
            settings,
            store=store,
            dispatcher=fake_dispatcher,
            inventory=StaticToolInventory(settings.available_tools),
        )
        return app, fake_dispatcher

    return _factory


@pytest.fixture
async def client(app_factory):
    app, dispatcher = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.dispatcher = dispatcher  # type: ignore[attr-defined]
            yield http_client

from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from provisioner.config import AppSettings
from provisioner.credentials import StaticCredentialProvider
from provisioner.db import Database
from provisioner.engine import ProvisioningEngine
from provisioner.main import create_app
from provisioner.provider import ProviderClient
from provisioner.record_store import ExecutionRecordStore
from tests.fakes import BASE_URL, SESSION, WORKSPACE_ID, FakeProviderClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        provider_base_url=BASE_URL,
        workspace_id=WORKSPACE_ID,
        session_cookie=SESSION,
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
async def db_path(tmp_path: Path) -> str:
    path = str(tmp_path / "test.db")
    await Database(path).init()
    return path


@pytest.fixture
def records(db_path: str) -> ExecutionRecordStore:
    return ExecutionRecordStore(db_path)


@pytest.fixture
async def provider():
    client = ProviderClient(
        BASE_URL,
        StaticCredentialProvider(SESSION),
        workspace_id=WORKSPACE_ID,
    )
    try:
        yield client
    finally:
        await client.close()


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(*, fake_provider: FakeProviderClient | None = None, **settings_overrides):
        settings = make_settings(tmp_path, **settings_overrides)
        fake = fake_provider or FakeProviderClient()
        engine = ProvisioningEngine(
            fake,
            ExecutionRecordStore(settings.database_path),
            max_parallel=settings.max_parallel,
            fail_fast=settings.fail_fast,
        )
        app = create_app(settings, engine=engine)
        return app, fake

    return _factory


@pytest.fixture
async def client(app_factory):
    app, fake = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_provider = fake  # type: ignore[attr-defined]
            yield http_client

"""Shared fixtures: throwaway SQLite database, fake compute provider, API client."""

import asyncio
import os
import tempfile
from dataclasses import replace
from pathlib import Path

_TMP = Path(tempfile.mkdtemp(prefix="flyagents-tests-"))
os.environ.setdefault("FLYAGENTS_DATABASE_URL", f"sqlite+aiosqlite:///{_TMP / 'test.db'}")
os.environ.setdefault("FLYAGENTS_BLOB_DIR", str(_TMP / "blobs"))
os.environ.setdefault("FLYAGENTS_SECRETS_ENCRYPTION_KEY", "test-encryption-key")
os.environ.setdefault("FLYAGENTS_FLY_APP_NAME", "flyagents-test")
os.environ.setdefault("FLYAGENTS_FLY_API_TOKEN", "operator-fly-token")
os.environ.setdefault("FLYAGENTS_MODEL_SET_RETRY_DELAY_S", "0")
os.environ.setdefault("FLYAGENTS_ENV", "test")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from flyagents.adapters.base import (  # noqa: E402
    ComputeProvider,
    ExecResult,
    FlyMachine,
    FlyVolume,
    FlyVolumeSnapshot,
)
from flyagents.database import async_session, drop_db, engine, init_db  # noqa: E402
from flyagents.main import app  # noqa: E402
from flyagents.schemas.lifecycle import ProvisionRequest  # noqa: E402
from flyagents.services.agent_lifecycle import AgentLifecycle  # noqa: E402
from flyagents.services.blob_store import FileBlobStore  # noqa: E402
from flyagents.utils.crypto import KeyCache, SecretsVault  # noqa: E402

TEST_KEY = "test-encryption-key"


class FakeProvider(ComputeProvider):
    """In-memory ComputeProvider with a call log and per-call failure injection.

    ``fail`` maps a method name, or ``(method name, target id)``, to the
    exception that call should raise. ``hold`` maps a method name to an
    event the call waits on after being logged.
    """

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.fail: dict = {}
        self.hold: dict[str, asyncio.Event] = {}
        self.exec_results: list[ExecResult] = []
        self.restore_fails = False
        self._seq = 0

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}{self._seq}"

    def _record(self, name: str, target=None, *extra) -> None:
        self.calls.append((name, target, *extra))
        exc = self.fail.get((name, target)) or self.fail.get(name)
        if exc:
            raise exc

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]

    async def create_volume(self, *, name, region, size_gb, snapshot_id=None):
        self._record("create_volume", snapshot_id, name)
        volume = FlyVolume(id=self._next("vol_"), name=name, region=region)
        if snapshot_id:
            if self.restore_fails:
                return replace(volume, restore_error="snapshot not found")
            return replace(volume, restored_from=snapshot_id)
        return volume

    async def create_machine(self, spec):
        self._record("create_machine", spec.volume_id, spec)
        if "create_machine" in self.hold:
            await self.hold["create_machine"].wait()
        return FlyMachine(id=self._next("m_"), state="started", region=spec.region)

    async def start_machine(self, machine_id):
        self._record("start_machine", machine_id)

    async def stop_machine(self, machine_id):
        self._record("stop_machine", machine_id)

    async def delete_machine(self, machine_id):
        self._record("delete_machine", machine_id)

    async def delete_volume(self, volume_id):
        self._record("delete_volume", volume_id)

    async def create_volume_snapshot(self, volume_id):
        self._record("create_volume_snapshot", volume_id)
        return FlyVolumeSnapshot(id=self._next("snap_"))

    async def exec_command(self, machine_id, command):
        self._record("exec_command", machine_id, command)
        if self.exec_results:
            return self.exec_results.pop(0)
        return ExecResult(exit_code=0, stdout="ok")


class FakeProviderFactory:
    def __init__(self, provider: FakeProvider) -> None:
        self.provider = provider
        self.tokens: list[tuple[str, str]] = []

    def __call__(self, api_token: str, app_name: str) -> FakeProvider:
        self.tokens.append((api_token, app_name))
        return self.provider


@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    """Fresh tables for each test."""
    await drop_db()
    await init_db()
    yield
    await engine.dispose()


@pytest_asyncio.fixture
async def db():
    async with async_session() as session:
        yield session


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def provider_factory(provider: FakeProvider) -> FakeProviderFactory:
    return FakeProviderFactory(provider)


@pytest.fixture
def vault() -> SecretsVault:
    return SecretsVault(KeyCache())


@pytest.fixture
def lifecycle(db, provider_factory, vault, tmp_path) -> AgentLifecycle:
    return AgentLifecycle(
        db,
        provider_factory=provider_factory,
        blobs=FileBlobStore(tmp_path / "blobs"),
        vault=vault,
        secrets_encryption_key=TEST_KEY,
        model_set_retry_attempts=3,
        model_set_retry_delay_s=0,
    )


@pytest.fixture
def make_request():
    """Build a complete ProvisionRequest; keyword arguments override fields."""

    def _make(**overrides) -> ProvisionRequest:
        fields = {
            "user_id": "u1",
            "tenant_id": "t1",
            "bridge_url": "https://bridge.example.com",
            "llm_api_key": "sk-llm",
            "telegram_bot_token": "tg-token",
            "service_id": "svc-1",
            "service_key": "svc-key",
            "openclaw_gateway_token": "gw-token",
        }
        fields.update(overrides)
        return ProvisionRequest(**fields)

    return _make


@pytest_asyncio.fixture
async def client(provider_factory):
    app.state.provider_factory = provider_factory
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

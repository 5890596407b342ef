"""Lifecycle service tests against the fake compute provider."""

import asyncio
import json

import pytest

from flyagents.adapters.base import ExecResult
from flyagents.errors import (
    MachineNotFound,
    MachineNotReady,
    MissingSecret,
    ProviderError,
    ValidationError,
)
from flyagents.schemas.lifecycle import EnsureMode
from flyagents.schemas.secret import AgentSecretsUpdate
from flyagents.services import machine_store, secret_service, snapshot_store
from flyagents.services.agent_lifecycle import (
    parse_allowed_skills_json,
    shell_single_quote,
    volume_name_for,
)

TEST_KEY = "test-encryption-key"

FLY = {"fly_api_token": "fly-tok", "fly_app_name": "agents"}


# ── Helpers ──────────────────────────────────────────────────────────


def test_shell_single_quote():
    assert shell_single_quote("openai/gpt-4.1-mini") == "'openai/gpt-4.1-mini'"
    assert shell_single_quote("it's") == "'it'\"'\"'s'"


def test_parse_allowed_skills_json():
    assert parse_allowed_skills_json(None) is None
    assert parse_allowed_skills_json('["a", "b"]') == ["a", "b"]
    with pytest.raises(ValidationError):
        parse_allowed_skills_json("{not json")
    with pytest.raises(ValidationError):
        parse_allowed_skills_json('{"a": 1}')
    with pytest.raises(ValidationError):
        parse_allowed_skills_json("[1, 2]")


def test_volume_name_is_fly_safe():
    name = volume_name_for("User@Example.COM-with-a-long-id")
    assert name.startswith("agent_user_examp_")
    assert len(name) <= 30
    assert all(c.isalnum() or c == "_" for c in name)


# ── Provision ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_provision_happy_path(lifecycle, provider, provider_factory, make_request, db):
    result = await lifecycle.provision(make_request(allowed_skills_json='["okr"]'), **FLY)

    assert provider.names() == ["create_volume", "create_machine", "exec_command"]
    assert provider_factory.tokens == [("fly-tok", "agents")]
    spec = provider.calls[1][2]
    assert spec.env["LLM_MODEL"] == "openai/gpt-4.1-mini"
    assert spec.env["OPENAI_API_KEY"] == "sk-llm"  # defaults to the LLM key
    assert json.loads(spec.env["ALLOWED_SKILLS_JSON"]) == ["okr"]
    assert spec.env["OPENCLAW_STATE_DIR"] == "/data/openclaw/state"
    assert spec.mount_path == "/data"
    command = provider.calls[2][2]
    assert command == ["sh", "-lc", "cd /app && node ./openclaw.mjs models set 'openai/gpt-4.1-mini'"]

    machine = await machine_store.get_machine(db, result.machine_doc_id)
    assert machine.status == "running"
    assert machine.machine_id == result.machine_id
    assert machine.fly_volume_id == result.volume_id
    assert machine.allowed_skills == ["okr"]
    assert machine.last_wake_at is not None


@pytest.mark.asyncio
async def test_provision_validation_happens_before_any_remote_call(lifecycle, provider, make_request, db):
    with pytest.raises(ValidationError):
        await lifecycle.provision(make_request(bridge_url=""), **FLY)
    with pytest.raises(ValidationError):
        await lifecycle.provision(make_request(llm_model="openai/gpt-5-mini"), **FLY)
    with pytest.raises(ValidationError):
        await lifecycle.provision(make_request(allowed_skills_json="nope"), **FLY)
    assert provider.calls == []
    assert await machine_store.list_machines_by_tenant(db, "t1") == []


@pytest.mark.asyncio
async def test_provision_machine_creation_failure_records_error(lifecycle, provider, make_request, db):
    provider.fail["create_machine"] = ProviderError("Fly API /machines failed: 500")
    with pytest.raises(ProviderError):
        await lifecycle.provision(make_request(), **FLY)

    [machine] = await machine_store.list_machines_by_tenant(db, "t1")
    assert machine.status == "error"
    assert "500" in machine.last_error
    assert machine.machine_id is None


@pytest.mark.asyncio
async def test_cancelled_provision_records_error(lifecycle, provider, make_request, db):
    provider.hold["create_machine"] = asyncio.Event()
    task = asyncio.create_task(lifecycle.provision(make_request(), **FLY))
    for _ in range(500):
        if "create_machine" in provider.names():
            break
        await asyncio.sleep(0.01)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    [machine] = await machine_store.list_machines_by_tenant(db, "t1")
    assert machine.status == "error"
    assert machine.last_error == "CancelledError"


@pytest.mark.asyncio
async def test_provision_model_set_retries_then_hard_fails(lifecycle, provider, make_request, db):
    provider.exec_results = [ExecResult(exit_code=1, stderr="not ready")] * 3
    with pytest.raises(ProviderError, match="Unable to force model"):
        await lifecycle.provision(make_request(), **FLY)

    assert provider.names().count("exec_command") == 3
    [machine] = await machine_store.list_machines_by_tenant(db, "t1")
    assert machine.status == "error"


@pytest.mark.asyncio
async def test_provision_model_set_succeeds_after_retry(lifecycle, provider, make_request):
    provider.exec_results = [ExecResult(exit_code=1, stderr="booting"), ExecResult(exit_code=0)]
    await lifecycle.provision(make_request(), **FLY)
    assert provider.names().count("exec_command") == 2


@pytest.mark.asyncio
async def test_provision_without_snapshot_creates_plain_volume(lifecycle, provider, make_request, db):
    await lifecycle.provision(make_request(force_default_model=False), **FLY)
    name, snapshot_id, _ = provider.calls[0]
    assert name == "create_volume" and snapshot_id is None
    assert provider.names() == ["create_volume", "create_machine"]


@pytest.mark.asyncio
async def test_provision_restores_from_latest_snapshot(lifecycle, provider, make_request, db):
    first = await lifecycle.provision(make_request(), **FLY)
    snapshot = await lifecycle.create_snapshot(first.machine_doc_id, **FLY)

    second = await lifecycle.provision(make_request(), **FLY)
    create_volume_calls = [c for c in provider.calls if c[0] == "create_volume"]
    assert create_volume_calls[-1][1] == snapshot.fly_volume_snapshot_id

    restored = await snapshot_store.get_snapshot(db, snapshot.snapshot_id)
    assert restored.status == "restored"
    assert restored.restore_info["machine_doc_id"] == second.machine_doc_id
    machine = await machine_store.get_machine(db, second.machine_doc_id)
    assert machine.latest_snapshot_id == snapshot.snapshot_id


@pytest.mark.asyncio
async def test_failed_restore_still_provisions(lifecycle, provider, make_request, db):
    first = await lifecycle.provision(make_request(), **FLY)
    snapshot = await lifecycle.create_snapshot(first.machine_doc_id, **FLY)
    provider.restore_fails = True

    second = await lifecycle.provision(make_request(), **FLY)
    machine = await machine_store.get_machine(db, second.machine_doc_id)
    assert machine.status == "running"
    assert machine.latest_snapshot_id is None
    failed = await snapshot_store.get_snapshot(db, snapshot.snapshot_id)
    assert failed.status == "failed"
    assert failed.restore_info["error"] == "snapshot not found"


# ── Stored secrets ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_stored_secrets_fill_gaps_and_supplied_wins(
    lifecycle, provider, provider_factory, make_request, db, vault
):
    await secret_service.upsert_agent_secrets(
        db,
        vault,
        TEST_KEY,
        "t1",
        "u1",
        AgentSecretsUpdate(fly_api_token="stored-fly", llm_api_key="stored-llm", telegram_bot_token="stored-tg"),
    )
    req = make_request(llm_api_key=None, telegram_bot_token="supplied-tg")
    await lifecycle.provision_with_stored_secrets(req, fly_app_name="agents")

    assert provider_factory.tokens == [("stored-fly", "agents")]
    env = provider.calls[1][2].env
    assert env["LLM_API_KEY"] == "stored-llm"
    assert env["TELEGRAM_BOT_TOKEN"] == "supplied-tg"


@pytest.mark.asyncio
async def test_stored_secrets_missing_fails_before_record(lifecycle, provider, make_request, db, monkeypatch):
    from flyagents.config import settings

    monkeypatch.setattr(settings, "telegram_bot_token", "")
    with pytest.raises(MissingSecret) as exc_info:
        await lifecycle.provision_with_stored_secrets(
            make_request(telegram_bot_token=None), fly_app_name="agents", fly_api_token="tok"
        )
    assert exc_info.value.name == "telegramBotToken"
    assert provider.calls == []
    assert await machine_store.list_machines_by_tenant(db, "t1") == []


# ── Start / stop ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_stop_then_start(lifecycle, provider, make_request, db):
    result = await lifecycle.provision(make_request(), **FLY)

    await lifecycle.stop(result.machine_doc_id, **FLY)
    machine = await machine_store.get_machine(db, result.machine_doc_id)
    assert (machine.status, machine.lifecycle_mode) == ("stopped", "hibernated")

    await lifecycle.start(result.machine_doc_id, **FLY)
    machine = await machine_store.get_machine(db, result.machine_doc_id)
    assert (machine.status, machine.lifecycle_mode) == ("running", "running")
    assert provider.names()[-2:] == ["stop_machine", "start_machine"]


@pytest.mark.asyncio
async def test_start_failure_records_error(lifecycle, provider, make_request, db):
    result = await lifecycle.provision(make_request(), **FLY)
    await lifecycle.stop(result.machine_doc_id, **FLY)
    provider.fail["start_machine"] = ProviderError("Fly API start failed: 503")

    with pytest.raises(ProviderError):
        await lifecycle.start(result.machine_doc_id, **FLY)
    machine = await machine_store.get_machine(db, result.machine_doc_id)
    assert machine.status == "error"
    assert "503" in machine.last_error


@pytest.mark.asyncio
async def test_stop_failure_records_error(lifecycle, provider, make_request, db):
    result = await lifecycle.provision(make_request(), **FLY)
    provider.fail["stop_machine"] = ProviderError("Fly API stop failed: 500")

    with pytest.raises(ProviderError):
        await lifecycle.stop(result.machine_doc_id, **FLY)
    machine = await machine_store.get_machine(db, result.machine_doc_id)
    assert machine.status == "error"
    assert "stop failed" in machine.last_error


@pytest.mark.asyncio
async def test_start_requires_remote_machine(lifecycle, db):
    pending = await machine_store.insert_machine(db, user_id="u1", tenant_id="t1")
    with pytest.raises(MachineNotReady):
        await lifecycle.start(pending.id, **FLY)
    with pytest.raises(MachineNotFound):
        await lifecycle.stop(9999, **FLY)


# ── Deprovision ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_deprovision_is_idempotent(lifecycle, provider, make_request, db):
    result = await lifecycle.provision(make_request(), **FLY)

    await lifecycle.deprovision(result.machine_doc_id, **FLY)
    assert provider.names()[-2:] == ["delete_machine", "delete_volume"]
    machine = await machine_store.get_machine(db, result.machine_doc_id)
    assert machine.status == "deleted"

    calls_before = len(provider.calls)
    await lifecycle.deprovision(result.machine_doc_id, **FLY)
    await lifecycle.deprovision(424242, **FLY)
    assert len(provider.calls) == calls_before


@pytest.mark.asyncio
async def test_deprovision_attempts_volume_even_if_machine_delete_fails(lifecycle, provider, make_request, db):
    result = await lifecycle.provision(make_request(), **FLY)
    provider.fail["delete_machine"] = ProviderError("Fly API delete failed: 500")

    with pytest.raises(ProviderError):
        await lifecycle.deprovision(result.machine_doc_id, **FLY)
    assert provider.names()[-2:] == ["delete_machine", "delete_volume"]
    machine = await machine_store.get_machine(db, result.machine_doc_id)
    assert machine.status == "error"


# ── Snapshots ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_snapshot_writes_manifest_and_backlink(lifecycle, make_request, db):
    result = await lifecycle.provision(make_request(), **FLY)
    snap = await lifecycle.create_snapshot(result.machine_doc_id, **FLY)

    row = await snapshot_store.get_snapshot(db, snap.snapshot_id)
    assert row.agent_key == "t1:u1"
    assert row.status == "created"
    assert row.manifest["source_machine_id"] == result.machine_id
    assert row.manifest["backup_scope"] == "openclaw-state-plus-manifest"
    blob = json.loads(await lifecycle.blobs.read(row.blob_handle))
    assert blob["machine_doc_id"] == result.machine_doc_id

    machine = await machine_store.get_machine(db, result.machine_doc_id)
    assert machine.latest_snapshot_id == snap.snapshot_id


@pytest.mark.asyncio
async def test_create_snapshot_requires_volume(lifecycle, db):
    pending = await machine_store.insert_machine(db, user_id="u1", tenant_id="t1")
    with pytest.raises(MachineNotReady):
        await lifecycle.create_snapshot(pending.id, **FLY)


@pytest.mark.asyncio
async def test_create_snapshot_rejects_reclaimed_machines(lifecycle, provider, make_request, db):
    hibernated = await lifecycle.provision(make_request(), **FLY)
    await lifecycle.hibernate(hibernated.machine_doc_id, **FLY)
    deleted = await lifecycle.provision(make_request(), **FLY)
    await lifecycle.deprovision(deleted.machine_doc_id, **FLY)
    snapshots_taken = provider.names().count("create_volume_snapshot")

    with pytest.raises(MachineNotReady):
        await lifecycle.create_snapshot(hibernated.machine_doc_id, **FLY)
    with pytest.raises(MachineNotReady):
        await lifecycle.create_snapshot(deleted.machine_doc_id, **FLY)
    assert provider.names().count("create_volume_snapshot") == snapshots_taken
    machine = await machine_store.get_machine(db, hibernated.machine_doc_id)
    assert machine.status == "hibernated"


# ── Ensure / recreate ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_ensure_modes(lifecycle, provider, make_request, db):
    req = make_request(force_default_model=False)

    created = await lifecycle.ensure_user_agent(req, fly_app_name="agents", fly_api_token="tok")
    assert created.mode == EnsureMode.PROVISIONED_NEW

    again = await lifecycle.ensure_user_agent(req, fly_app_name="agents", fly_api_token="tok")
    assert again.mode == EnsureMode.EXISTING_RUNNING
    assert again.machine_doc_id == created.machine_doc_id

    await lifecycle.stop(created.machine_doc_id, **FLY)
    started = await lifecycle.ensure_user_agent(req, fly_app_name="agents", fly_api_token="tok")
    assert started.mode == EnsureMode.STARTED_EXISTING
    assert started.machine_doc_id == created.machine_doc_id

    await lifecycle.hibernate(created.machine_doc_id, **FLY)
    restored = await lifecycle.ensure_user_agent(
        req.model_copy(update={"restore_from_latest_snapshot": False}),
        fly_app_name="agents",
        fly_api_token="tok",
    )
    assert restored.mode == EnsureMode.RESTORED_FROM_SNAPSHOT
    assert restored.machine_doc_id != created.machine_doc_id
    create_volume_calls = [c for c in provider.calls if c[0] == "create_volume"]
    assert create_volume_calls[-1][1] is not None


@pytest.mark.asyncio
async def test_recreate_returns_running_machine(lifecycle, provider, make_request):
    first = await lifecycle.provision(make_request(), **FLY)
    calls_before = len(provider.calls)
    again = await lifecycle.recreate_from_latest_snapshot(make_request(), **FLY)
    assert again.machine_doc_id == first.machine_doc_id
    assert len(provider.calls) == calls_before


# ── Telegram pairing ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_pairing_success_refreshes_activity(lifecycle, provider, make_request, db):
    result = await lifecycle.provision(make_request(), **FLY)
    before = (await machine_store.get_machine(db, result.machine_doc_id)).last_activity_at

    outcome = await lifecycle.approve_telegram_pairing(result.machine_doc_id, " ABC123 ", **FLY)
    assert outcome.ok is True
    assert provider.calls[-1][2][-1].endswith("pairing approve telegram 'ABC123'")
    machine = await machine_store.get_machine(db, result.machine_doc_id)
    assert machine.last_activity_at >= before


@pytest.mark.asyncio
async def test_pairing_exit_failure_leaves_activity_unchanged(lifecycle, provider, make_request, db):
    result = await lifecycle.provision(make_request(), **FLY)
    before = await machine_store.get_machine(db, result.machine_doc_id)
    activity, wake = before.last_activity_at, before.last_wake_at

    provider.exec_results = [ExecResult(exit_code=1, stderr="bad code")]
    with pytest.raises(ProviderError) as exc_info:
        await lifecycle.approve_telegram_pairing(result.machine_doc_id, "XYZ", **FLY)
    assert "exit code 1" in str(exc_info.value)
    assert "bad code" in str(exc_info.value)

    after = await machine_store.get_machine(db, result.machine_doc_id)
    assert (after.last_activity_at, after.last_wake_at) == (activity, wake)
    assert after.status == "running"


@pytest.mark.asyncio
async def test_pairing_requires_code(lifecycle, provider):
    with pytest.raises(ValidationError):
        await lifecycle.approve_telegram_pairing(1, "   ", **FLY)
    assert provider.calls == []

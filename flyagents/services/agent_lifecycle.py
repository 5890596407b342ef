"""Agent machine lifecycle — provision, start/stop, snapshot, hibernate, deprovision.

Each operation is a multi-step sequence of Fly API calls and record-store
patches. The machine record is written *before* any remote resource exists,
and every provider failure in a state-changing flow is persisted on the record
(``status="error"`` + ``last_error``) before the exception propagates, so a
failed flow is never left looking like it is still in progress.

Two variants exist for most actions: the plain one takes the Fly API token
explicitly, the ``*_with_stored_secrets`` one resolves credentials per
argument as *supplied value > agent's stored secret > operator setting*.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from flyagents.adapters.base import ComputeProvider, MachineSpec
from flyagents.config import settings
from flyagents.errors import MachineNotFound, MachineNotReady, ProviderError, ValidationError
from flyagents.models.machine import AgentMachine
from flyagents.schemas.lifecycle import (
    EnsureMode,
    EnsureResult,
    LifecycleMode,
    MachineStatus,
    PairingResult,
    ProvisionRequest,
    ProvisionResult,
)
from flyagents.schemas.secret import StoredSecrets
from flyagents.schemas.snapshot import SnapshotManifest, SnapshotResult
from flyagents.services import machine_store, snapshot_store
from flyagents.services.blob_store import FileBlobStore
from flyagents.services.secret_service import agent_key_for, load_agent_secrets
from flyagents.utils.clock import utcnow
from flyagents.utils.crypto import SecretsVault, optional_secret, resolve_secret

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[str, str], ComputeProvider]  # (fly_api_token, fly_app_name)

DISABLED_MODEL_IDS = {"gpt-5-mini"}
VOLUME_MOUNT_PATH = "/data"
OPENCLAW_HOME = "/data/openclaw"
OPENCLAW_STARTUP_TIMEOUT_SEC = "240"
SNAPSHOT_NOTE_ON_DEMAND = "Captured on demand"
SNAPSHOT_NOTE_IDLE_SWEEP = "Captured from idle sweeper before machine hibernation"


# ── Helpers ──────────────────────────────────────────────────────────


def shell_single_quote(value: str) -> str:
    return "'" + value.replace("'", "'\"'\"'") + "'"


def _required(name: str, value: str | None) -> str:
    normalized = optional_secret(value)
    if not normalized:
        raise ValidationError(f"Missing required argument: {name}")
    return normalized


def parse_allowed_skills_json(raw: str | None) -> list[str] | None:
    if not raw or not raw.strip():
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError("ALLOWED_SKILLS_JSON must be valid JSON") from exc
    if not isinstance(parsed, list) or any(not isinstance(skill, str) for skill in parsed):
        raise ValidationError("ALLOWED_SKILLS_JSON must be a JSON array of strings")
    return parsed


def assert_allowed_model(model: str) -> None:
    model_id = model.strip().lower().split("/")[-1]
    if model_id in DISABLED_MODEL_IDS:
        raise ValidationError(
            f"LLM_MODEL={model_id} is currently disabled due to a known reasoning-model bug"
        )


def _base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while True:
        number, rem = divmod(number, 36)
        out = digits[rem] + out
        if number == 0:
            return out


def volume_name_for(user_id: str) -> str:
    """Fly volume names: lowercase alnum/underscore, at most 30 chars."""
    slug = re.sub(r"[^a-z0-9_]", "_", user_id.lower())[:10]
    stamp = _base36(int(utcnow().timestamp() * 1000))
    return f"agent_{slug}_{stamp}"[:30]


def _exec_failure(action: str, exit_code: int | None, stderr: str) -> ProviderError:
    message = f"{action} failed with exit code {exit_code}"
    if stderr:
        message += f": {stderr}"
    return ProviderError(message, detail=stderr)


@dataclass(frozen=True)
class ProvisionConfig:
    """A ProvisionRequest after validation and defaulting."""

    user_id: str
    tenant_id: str
    image: str
    region: str
    memory_mb: int
    bridge_url: str
    llm_api_key: str
    openai_api_key: str
    llm_model: str
    telegram_bot_token: str
    service_id: str
    service_key: str
    openclaw_gateway_token: str
    app_key: str
    allowed_skills: list[str]
    restore_from_latest_snapshot: bool
    force_default_model: bool

    @property
    def agent_key(self) -> str:
        return agent_key_for(self.user_id, self.tenant_id)

    def machine_env(self) -> dict[str, str]:
        return {
            "USER_ID": self.user_id,
            "TENANT_ID": self.tenant_id,
            "LLM_MODEL": self.llm_model,
            "LLM_API_KEY": self.llm_api_key,
            "OPENAI_API_KEY": self.openai_api_key,
            "TELEGRAM_BOT_TOKEN": self.telegram_bot_token,
            "AGENT_BRIDGE_URL": self.bridge_url,
            "OPENCLAW_SERVICE_ID": self.service_id,
            "OPENCLAW_SERVICE_KEY": self.service_key,
            "OPENCLAW_GATEWAY_TOKEN": self.openclaw_gateway_token,
            "OPENCLAW_APP_KEY": self.app_key,
            "OPENCLAW_STATE_DIR": f"{OPENCLAW_HOME}/state",
            "OPENCLAW_CONFIG_PATH": f"{OPENCLAW_HOME}/config.json",
            "OPENCLAW_HOME": OPENCLAW_HOME,
            "OPENCLAW_STARTUP_TIMEOUT_SEC": OPENCLAW_STARTUP_TIMEOUT_SEC,
            "ALLOWED_SKILLS_JSON": json.dumps(self.allowed_skills),
        }


def normalize_provision_request(req: ProvisionRequest) -> ProvisionConfig:
    """Validate + default a request. Raises ValidationError; touches nothing."""
    user_id = _required("userId", req.user_id)
    tenant_id = _required("tenantId", req.tenant_id)
    allowed_skills = (
        parse_allowed_skills_json(req.allowed_skills_json)
        or req.allowed_skills
        or list(settings.default_allowed_skills)
    )
    llm_api_key = _required("llmApiKey", req.llm_api_key)
    llm_model = optional_secret(req.llm_model) or settings.default_llm_model
    assert_allowed_model(llm_model)

    return ProvisionConfig(
        user_id=user_id,
        tenant_id=tenant_id,
        image=optional_secret(req.image) or settings.default_image,
        region=optional_secret(req.region) or settings.default_region,
        memory_mb=req.memory_mb or settings.default_memory_mb,
        bridge_url=_required("bridgeUrl", req.bridge_url),
        llm_api_key=llm_api_key,
        openai_api_key=optional_secret(req.openai_api_key) or llm_api_key,
        llm_model=llm_model,
        telegram_bot_token=_required("telegramBotToken", req.telegram_bot_token),
        service_id=_required("serviceId", req.service_id),
        service_key=_required("serviceKey", req.service_key),
        openclaw_gateway_token=_required("openclawGatewayToken", req.openclaw_gateway_token),
        app_key=optional_secret(req.app_key) or settings.default_app_key,
        allowed_skills=list(allowed_skills),
        restore_from_latest_snapshot=req.restore_from_latest_snapshot,
        force_default_model=req.force_default_model,
    )


# ── Lifecycle service ────────────────────────────────────────────────


class AgentLifecycle:
    """Lifecycle state machine for agent machines, bound to one DB session."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        provider_factory: ProviderFactory,
        blobs: FileBlobStore,
        vault: SecretsVault,
        secrets_encryption_key: str | None = None,
        model_set_retry_attempts: int | None = None,
        model_set_retry_delay_s: float | None = None,
    ) -> None:
        self.db = db
        self.provider_factory = provider_factory
        self.blobs = blobs
        self.vault = vault
        self.secrets_encryption_key = secrets_encryption_key or settings.secrets_encryption_key
        self.model_set_retry_attempts = max(
            1, model_set_retry_attempts or settings.model_set_retry_attempts
        )
        self.model_set_retry_delay_s = (
            settings.model_set_retry_delay_s
            if model_set_retry_delay_s is None
            else model_set_retry_delay_s
        )

    # ── Record helpers ───────────────────────────────────────────────

    async def _require_machine(self, machine_doc_id: int) -> AgentMachine:
        machine = await machine_store.get_machine(self.db, machine_doc_id)
        if not machine:
            raise MachineNotFound(f"Machine record not found: {machine_doc_id}")
        return machine

    @staticmethod
    def _reject_reclaimed(machine: AgentMachine) -> None:
        if machine.status in (MachineStatus.DELETED, MachineStatus.HIBERNATED):
            raise MachineNotReady(
                f"Machine {machine.id} is {machine.status}; its remote resources have been reclaimed"
            )

    @classmethod
    def _require_remote_machine(cls, machine: AgentMachine) -> str:
        cls._reject_reclaimed(machine)
        if not machine.machine_id:
            raise MachineNotReady("Machine id not available")
        return machine.machine_id

    async def record_failure(
        self, machine_doc_id: int, exc: BaseException, *, set_status: bool = True
    ) -> None:
        """Persist a failure on the record. Never masks the caller's exception."""
        message = str(exc) or exc.__class__.__name__
        try:
            await self.db.rollback()
            updates: dict = {"last_error": message}
            if set_status:
                updates["status"] = MachineStatus.ERROR.value
            await machine_store.patch_machine(self.db, machine_doc_id, **updates)
        except Exception:
            logger.exception("Could not record failure on machine %s", machine_doc_id)
        else:
            logger.warning("Machine %s failed: %s", machine_doc_id, message)

    # ── Secret resolution ────────────────────────────────────────────

    async def load_stored_secrets(
        self, tenant_id: str, user_id: str, secrets_encryption_key: str | None = None
    ) -> StoredSecrets:
        stored = await load_agent_secrets(
            self.db,
            self.vault,
            secrets_encryption_key or self.secrets_encryption_key,
            tenant_id,
            user_id,
        )
        return stored or StoredSecrets()

    async def resolve_fly_token(
        self,
        tenant_id: str,
        user_id: str,
        *,
        supplied: str | None = None,
        secrets_encryption_key: str | None = None,
    ) -> str:
        stored = await self.load_stored_secrets(tenant_id, user_id, secrets_encryption_key)
        return resolve_secret("flyApiToken", supplied, stored.fly_api_token, settings.fly_api_token)

    @staticmethod
    def apply_stored_secrets(req: ProvisionRequest, stored: StoredSecrets) -> ProvisionRequest:
        return req.model_copy(
            update={
                "llm_api_key": resolve_secret(
                    "llmApiKey", req.llm_api_key, stored.llm_api_key, settings.llm_api_key
                ),
                "openai_api_key": optional_secret(req.openai_api_key, stored.openai_api_key),
                "telegram_bot_token": resolve_secret(
                    "telegramBotToken",
                    req.telegram_bot_token,
                    stored.telegram_bot_token,
                    settings.telegram_bot_token,
                ),
                "openclaw_gateway_token": resolve_secret(
                    "openclawGatewayToken",
                    req.openclaw_gateway_token,
                    stored.openclaw_gateway_token,
                    settings.openclaw_gateway_token,
                ),
                "bridge_url": optional_secret(req.bridge_url, settings.bridge_url),
                "service_id": optional_secret(req.service_id, settings.service_id),
                "service_key": optional_secret(req.service_key, settings.service_key),
            }
        )

    async def _machine_fly_token(
        self, machine_doc_id: int, supplied: str | None, secrets_encryption_key: str | None
    ) -> str:
        machine = await self._require_machine(machine_doc_id)
        return await self.resolve_fly_token(
            machine.tenant_id,
            machine.user_id,
            supplied=supplied,
            secrets_encryption_key=secrets_encryption_key,
        )

    # ── Provision ────────────────────────────────────────────────────

    async def provision(
        self, req: ProvisionRequest, *, fly_api_token: str, fly_app_name: str
    ) -> ProvisionResult:
        config = normalize_provision_request(req)
        provider = self.provider_factory(fly_api_token, fly_app_name)
        return await self._provision(provider, config)

    async def provision_with_stored_secrets(
        self,
        req: ProvisionRequest,
        *,
        fly_app_name: str,
        secrets_encryption_key: str | None = None,
        fly_api_token: str | None = None,
    ) -> ProvisionResult:
        stored = await self.load_stored_secrets(req.tenant_id, req.user_id, secrets_encryption_key)
        token = resolve_secret("flyApiToken", fly_api_token, stored.fly_api_token, settings.fly_api_token)
        config = normalize_provision_request(self.apply_stored_secrets(req, stored))
        provider = self.provider_factory(token, fly_app_name)
        return await self._provision(provider, config)

    async def _provision(self, provider: ComputeProvider, config: ProvisionConfig) -> ProvisionResult:
        record = await machine_store.insert_machine(
            self.db,
            user_id=config.user_id,
            tenant_id=config.tenant_id,
            allowed_skills=config.allowed_skills,
            memory_mb=config.memory_mb,
            region=config.region,
            image=config.image,
            llm_model=config.llm_model,
            app_key=config.app_key,
            bridge_url=config.bridge_url,
            service_id=config.service_id,
            service_key=config.service_key,
            last_activity_at=utcnow(),
            lifecycle_mode=LifecycleMode.RUNNING.value,
        )
        machine_doc_id = record.id
        logger.info("Provisioning machine %s for agent %s", machine_doc_id, config.agent_key)

        try:
            latest = (
                await snapshot_store.get_latest_snapshot(self.db, config.agent_key)
                if config.restore_from_latest_snapshot
                else None
            )
            restore_snapshot_id = latest.fly_volume_snapshot_id if latest else None

            volume = await provider.create_volume(
                name=volume_name_for(config.user_id),
                region=config.region,
                size_gb=settings.default_volume_size_gb,
                snapshot_id=restore_snapshot_id,
            )
            restored_snapshot_id = None
            if latest is not None and restore_snapshot_id:
                restored = volume.restored_from is not None
                restored_snapshot_id = latest.id if restored else None
                await snapshot_store.record_restore_outcome(
                    self.db,
                    latest.id,
                    restored=restored,
                    info={
                        "machine_doc_id": machine_doc_id,
                        "volume_id": volume.id,
                        "at": utcnow().isoformat(),
                        "error": volume.restore_error,
                    },
                )

            machine = await provider.create_machine(
                MachineSpec(
                    image=config.image,
                    region=config.region,
                    memory_mb=config.memory_mb,
                    volume_id=volume.id,
                    env=config.machine_env(),
                    mount_path=VOLUME_MOUNT_PATH,
                )
            )

            if config.force_default_model:
                await self.force_default_model(provider, machine.id, config.llm_model)

            now = utcnow()
            await machine_store.patch_machine(
                self.db,
                machine_doc_id,
                status=MachineStatus.RUNNING.value,
                machine_id=machine.id,
                fly_volume_id=volume.id,
                last_wake_at=now,
                last_activity_at=now,
                lifecycle_mode=LifecycleMode.RUNNING.value,
                latest_snapshot_id=restored_snapshot_id,
            )
        except BaseException as exc:
            # Cancellation included: a provision never stays in provisioning
            await self.record_failure(machine_doc_id, exc)
            raise

        logger.info(
            "Machine %s running (fly machine %s, volume %s)", machine_doc_id, machine.id, volume.id
        )
        return ProvisionResult(machine_doc_id=machine_doc_id, machine_id=machine.id, volume_id=volume.id)

    async def force_default_model(
        self, provider: ComputeProvider, machine_id: str, llm_model: str
    ) -> None:
        """Run ``openclaw models set`` until the freshly booted machine accepts it.

        A fixed number of attempts at a fixed delay; exhausting them is a hard failure.
        """
        command = [
            "sh",
            "-lc",
            f"cd /app && node ./openclaw.mjs models set {shell_single_quote(llm_model)}",
        ]
        last_error: ProviderError | None = None
        for attempt in range(1, self.model_set_retry_attempts + 1):
            try:
                result = await provider.exec_command(machine_id, command)
                if not result.ok:
                    raise _exec_failure("models set", result.exit_code, result.stderr)
                return
            except ProviderError as exc:
                last_error = exc
                logger.debug("models set attempt %d on %s failed: %s", attempt, machine_id, exc)
                if attempt < self.model_set_retry_attempts:
                    await asyncio.sleep(self.model_set_retry_delay_s)

        raise ProviderError(
            f"Unable to force model {llm_model} on machine {machine_id}: {last_error}"
        )

    # ── Get-or-create ────────────────────────────────────────────────

    async def ensure_user_agent(
        self,
        req: ProvisionRequest,
        *,
        fly_app_name: str,
        secrets_encryption_key: str | None = None,
        fly_api_token: str | None = None,
    ) -> EnsureResult:
        latest = await machine_store.get_latest_machine_for_identity(self.db, req.user_id, req.tenant_id)

        if latest and latest.status == MachineStatus.RUNNING and latest.machine_id:
            return EnsureResult(
                mode=EnsureMode.EXISTING_RUNNING,
                machine_doc_id=latest.id,
                machine_id=latest.machine_id,
                volume_id=latest.fly_volume_id or "",
            )

        if latest and latest.status == MachineStatus.STOPPED and latest.machine_id:
            machine_doc_id = latest.id
            await self.start_with_stored_secrets(
                machine_doc_id,
                fly_app_name=fly_app_name,
                secrets_encryption_key=secrets_encryption_key,
                fly_api_token=fly_api_token,
            )
            started = await self._require_machine(machine_doc_id)
            return EnsureResult(
                mode=EnsureMode.STARTED_EXISTING,
                machine_doc_id=machine_doc_id,
                machine_id=started.machine_id or "",
                volume_id=started.fly_volume_id or "",
            )

        # Hibernated machines have no remote machine left; bring the state back from the snapshot
        hibernated = bool(latest and latest.status == MachineStatus.HIBERNATED)
        if hibernated:
            req = req.model_copy(update={"restore_from_latest_snapshot": True})
        provisioned = await self.provision_with_stored_secrets(
            req,
            fly_app_name=fly_app_name,
            secrets_encryption_key=secrets_encryption_key,
            fly_api_token=fly_api_token,
        )
        return EnsureResult(
            mode=EnsureMode.RESTORED_FROM_SNAPSHOT if hibernated else EnsureMode.PROVISIONED_NEW,
            **provisioned.model_dump(),
        )

    # ── Recreate ─────────────────────────────────────────────────────

    async def _running_for_identity(self, user_id: str, tenant_id: str) -> ProvisionResult | None:
        latest = await machine_store.get_latest_machine_for_identity(self.db, user_id, tenant_id)
        if latest and latest.status == MachineStatus.RUNNING and latest.machine_id:
            return ProvisionResult(
                machine_doc_id=latest.id,
                machine_id=latest.machine_id,
                volume_id=latest.fly_volume_id or "",
            )
        return None

    async def recreate_from_latest_snapshot(
        self, req: ProvisionRequest, *, fly_api_token: str, fly_app_name: str
    ) -> ProvisionResult:
        existing = await self._running_for_identity(req.user_id, req.tenant_id)
        if existing:
            return existing
        return await self.provision(
            req.model_copy(update={"restore_from_latest_snapshot": True}),
            fly_api_token=fly_api_token,
            fly_app_name=fly_app_name,
        )

    async def recreate_from_latest_snapshot_with_stored_secrets(
        self,
        req: ProvisionRequest,
        *,
        fly_app_name: str,
        secrets_encryption_key: str | None = None,
        fly_api_token: str | None = None,
    ) -> ProvisionResult:
        existing = await self._running_for_identity(req.user_id, req.tenant_id)
        if existing:
            return existing
        return await self.provision_with_stored_secrets(
            req.model_copy(update={"restore_from_latest_snapshot": True}),
            fly_app_name=fly_app_name,
            secrets_encryption_key=secrets_encryption_key,
            fly_api_token=fly_api_token,
        )

    # ── Start / stop ─────────────────────────────────────────────────

    async def start(self, machine_doc_id: int, *, fly_api_token: str, fly_app_name: str) -> None:
        provider = self.provider_factory(fly_api_token, fly_app_name)
        machine = await self._require_machine(machine_doc_id)
        remote_id = self._require_remote_machine(machine)
        try:
            await provider.start_machine(remote_id)
        except ProviderError as exc:
            await self.record_failure(machine_doc_id, exc)
            raise
        now = utcnow()
        await machine_store.patch_machine(
            self.db,
            machine_doc_id,
            status=MachineStatus.RUNNING.value,
            lifecycle_mode=LifecycleMode.RUNNING.value,
            last_wake_at=now,
            last_activity_at=now,
            last_error=None,
        )
        logger.info("Started machine %s (%s)", machine_doc_id, remote_id)

    async def stop(self, machine_doc_id: int, *, fly_api_token: str, fly_app_name: str) -> None:
        provider = self.provider_factory(fly_api_token, fly_app_name)
        machine = await self._require_machine(machine_doc_id)
        remote_id = self._require_remote_machine(machine)
        try:
            await provider.stop_machine(remote_id)
        except ProviderError as exc:
            await self.record_failure(machine_doc_id, exc)
            raise
        await machine_store.patch_machine(
            self.db,
            machine_doc_id,
            status=MachineStatus.STOPPED.value,
            lifecycle_mode=LifecycleMode.HIBERNATED.value,
        )
        logger.info("Stopped machine %s (%s)", machine_doc_id, remote_id)

    async def start_with_stored_secrets(
        self,
        machine_doc_id: int,
        *,
        fly_app_name: str,
        secrets_encryption_key: str | None = None,
        fly_api_token: str | None = None,
    ) -> None:
        token = await self._machine_fly_token(machine_doc_id, fly_api_token, secrets_encryption_key)
        await self.start(machine_doc_id, fly_api_token=token, fly_app_name=fly_app_name)

    async def stop_with_stored_secrets(
        self,
        machine_doc_id: int,
        *,
        fly_app_name: str,
        secrets_encryption_key: str | None = None,
        fly_api_token: str | None = None,
    ) -> None:
        token = await self._machine_fly_token(machine_doc_id, fly_api_token, secrets_encryption_key)
        await self.stop(machine_doc_id, fly_api_token=token, fly_app_name=fly_app_name)

    # ── Teardown ─────────────────────────────────────────────────────

    @staticmethod
    async def _delete_remote(provider: ComputeProvider, machine: AgentMachine) -> list[str]:
        """Delete machine, then volume; both are attempted. Returns the failures."""
        failures: list[str] = []
        if machine.machine_id:
            try:
                await provider.delete_machine(machine.machine_id)
            except ProviderError as exc:
                failures.append(str(exc))
        if machine.fly_volume_id:
            try:
                await provider.delete_volume(machine.fly_volume_id)
            except ProviderError as exc:
                failures.append(str(exc))
        return failures

    async def deprovision(self, machine_doc_id: int, *, fly_api_token: str, fly_app_name: str) -> None:
        machine = await machine_store.get_machine(self.db, machine_doc_id)
        if not machine or machine.status == MachineStatus.DELETED:
            logger.info("Deprovision of machine %s: nothing to do", machine_doc_id)
            return
        provider = self.provider_factory(fly_api_token, fly_app_name)

        failures = await self._delete_remote(provider, machine)
        if failures:
            exc = ProviderError("; ".join(failures))
            await self.record_failure(machine_doc_id, exc)
            raise exc

        await machine_store.patch_machine(
            self.db, machine_doc_id, status=MachineStatus.DELETED.value
        )
        logger.info("Deprovisioned machine %s", machine_doc_id)

    async def deprovision_with_stored_secrets(
        self,
        machine_doc_id: int,
        *,
        fly_app_name: str,
        secrets_encryption_key: str | None = None,
        fly_api_token: str | None = None,
    ) -> None:
        machine = await machine_store.get_machine(self.db, machine_doc_id)
        if not machine or machine.status == MachineStatus.DELETED:
            logger.info("Deprovision of machine %s: nothing to do", machine_doc_id)
            return
        token = await self.resolve_fly_token(
            machine.tenant_id,
            machine.user_id,
            supplied=fly_api_token,
            secrets_encryption_key=secrets_encryption_key,
        )
        await self.deprovision(machine_doc_id, fly_api_token=token, fly_app_name=fly_app_name)

    # ── Snapshots ────────────────────────────────────────────────────

    async def create_snapshot(
        self,
        machine_doc_id: int,
        *,
        fly_api_token: str,
        fly_app_name: str,
        note: str = SNAPSHOT_NOTE_ON_DEMAND,
    ) -> SnapshotResult:
        provider = self.provider_factory(fly_api_token, fly_app_name)
        machine = await self._require_machine(machine_doc_id)
        self._reject_reclaimed(machine)
        if not machine.fly_volume_id:
            raise MachineNotReady("Cannot snapshot machine without volume")

        try:
            remote = await provider.create_volume_snapshot(machine.fly_volume_id)
        except ProviderError as exc:
            # The machine itself is untouched; keep its status and remember the error
            await self.record_failure(machine_doc_id, exc, set_status=False)
            raise

        manifest = SnapshotManifest(
            source_machine_id=machine.machine_id,
            source_volume_id=machine.fly_volume_id,
            image=machine.image or None,
            region=machine.region,
            llm_model=machine.llm_model or None,
            backup_created_at=utcnow(),
            notes=note,
        ).model_dump(mode="json")
        blob_handle = await self.blobs.store_json(
            {"machine_doc_id": machine_doc_id, "manifest": manifest}
        )
        snapshot = await snapshot_store.insert_snapshot(
            self.db,
            agent_key=agent_key_for(machine.user_id, machine.tenant_id),
            tenant_id=machine.tenant_id,
            user_id=machine.user_id,
            machine_doc_id=machine_doc_id,
            blob_handle=blob_handle,
            fly_volume_snapshot_id=remote.id,
            manifest=manifest,
        )
        await machine_store.patch_machine(self.db, machine_doc_id, latest_snapshot_id=snapshot.id)
        logger.info(
            "Snapshot %s captured for machine %s (fly snapshot %s)",
            snapshot.id,
            machine_doc_id,
            remote.id,
        )
        return SnapshotResult(snapshot_id=snapshot.id, fly_volume_snapshot_id=remote.id)

    async def create_snapshot_with_stored_secrets(
        self,
        machine_doc_id: int,
        *,
        fly_app_name: str,
        secrets_encryption_key: str | None = None,
        fly_api_token: str | None = None,
    ) -> SnapshotResult:
        token = await self._machine_fly_token(machine_doc_id, fly_api_token, secrets_encryption_key)
        return await self.create_snapshot(machine_doc_id, fly_api_token=token, fly_app_name=fly_app_name)

    async def hibernate(self, machine_doc_id: int, *, fly_api_token: str, fly_app_name: str) -> SnapshotResult:
        """Snapshot, then reclaim the remote machine and volume."""
        snapshot = await self.create_snapshot(
            machine_doc_id,
            fly_api_token=fly_api_token,
            fly_app_name=fly_app_name,
            note=SNAPSHOT_NOTE_IDLE_SWEEP,
        )
        machine = await self._require_machine(machine_doc_id)
        provider = self.provider_factory(fly_api_token, fly_app_name)
        failures = await self._delete_remote(provider, machine)
        if failures:
            raise ProviderError("; ".join(failures))

        now = utcnow()
        await machine_store.patch_machine(
            self.db,
            machine_doc_id,
            status=MachineStatus.HIBERNATED.value,
            lifecycle_mode=LifecycleMode.HIBERNATED.value,
            latest_snapshot_id=snapshot.snapshot_id,
            last_wake_at=now,
            last_activity_at=now,
        )
        logger.info("Hibernated machine %s (snapshot %s)", machine_doc_id, snapshot.snapshot_id)
        return snapshot

    # ── Record-only mutations ────────────────────────────────────────

    async def update_allowed_skills(self, machine_doc_id: int, allowed_skills: list[str]) -> AgentMachine:
        return await machine_store.update_allowed_skills(self.db, machine_doc_id, allowed_skills)

    async def touch_activity(self, machine_doc_id: int) -> AgentMachine:
        return await machine_store.touch_activity(self.db, machine_doc_id)

    # ── Telegram pairing ─────────────────────────────────────────────

    async def approve_telegram_pairing(
        self,
        machine_doc_id: int,
        pairing_code: str,
        *,
        fly_api_token: str,
        fly_app_name: str,
    ) -> PairingResult:
        code = (pairing_code or "").strip()
        if not code:
            raise ValidationError("TELEGRAM_PAIRING_CODE is required")
        provider = self.provider_factory(fly_api_token, fly_app_name)
        machine = await self._require_machine(machine_doc_id)
        remote_id = self._require_remote_machine(machine)

        command = [
            "sh",
            "-lc",
            f"cd /app && node ./openclaw.mjs pairing approve telegram {shell_single_quote(code)}",
        ]
        try:
            result = await provider.exec_command(remote_id, command)
            if not result.ok:
                raise _exec_failure("pairing approve", result.exit_code, result.stderr)
        except ProviderError as exc:
            await self.record_failure(machine_doc_id, exc, set_status=False)
            raise

        now = utcnow()
        await machine_store.patch_machine(
            self.db,
            machine_doc_id,
            last_wake_at=now,
            last_activity_at=now,
            lifecycle_mode=LifecycleMode.RUNNING.value,
        )
        logger.info("Approved Telegram pairing on machine %s", machine_doc_id)
        return PairingResult(
            ok=True, exit_code=result.exit_code, stdout=result.stdout, stderr=result.stderr
        )

    async def approve_telegram_pairing_with_stored_secrets(
        self,
        machine_doc_id: int,
        pairing_code: str,
        *,
        fly_app_name: str,
        secrets_encryption_key: str | None = None,
        fly_api_token: str | None = None,
    ) -> PairingResult:
        if not (pairing_code or "").strip():
            raise ValidationError("TELEGRAM_PAIRING_CODE is required")
        token = await self._machine_fly_token(machine_doc_id, fly_api_token, secrets_encryption_key)
        return await self.approve_telegram_pairing(
            machine_doc_id, pairing_code, fly_api_token=token, fly_app_name=fly_app_name
        )

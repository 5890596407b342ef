"""Pydantic schemas for agent machine lifecycle management."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class MachineStatus(StrEnum):
    """Recorded state of an agent machine."""

    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPED = "stopped"
    HIBERNATED = "hibernated"  # remote machine + volume reclaimed, snapshot kept
    ERROR = "error"
    DELETED = "deleted"


class LifecycleMode(StrEnum):
    RUNNING = "running"
    HIBERNATED = "hibernated"


class EnsureMode(StrEnum):
    EXISTING_RUNNING = "existing_running"
    STARTED_EXISTING = "started_existing"
    RESTORED_FROM_SNAPSHOT = "restored_from_snapshot"
    PROVISIONED_NEW = "provisioned_new"


# ── Provisioning ─────────────────────────────────────────────────────


class ProvisionRequest(BaseModel):
    """Identity + machine config + agent credentials.

    Credential fields left unset fall back to the agent's stored secrets
    (stored-secrets variants) and then to operator-wide settings.
    """

    user_id: str
    tenant_id: str
    image: str | None = None
    region: str | None = None
    memory_mb: int | None = Field(None, ge=256)
    bridge_url: str | None = None
    llm_api_key: str | None = None
    openai_api_key: str | None = None
    llm_model: str | None = None
    telegram_bot_token: str | None = None
    service_id: str | None = None
    service_key: str | None = None
    openclaw_gateway_token: str | None = None
    app_key: str | None = None
    allowed_skills_json: str | None = None
    allowed_skills: list[str] | None = None
    restore_from_latest_snapshot: bool = True
    force_default_model: bool = True


class ProvisionResult(BaseModel):
    machine_doc_id: int
    machine_id: str
    volume_id: str


class EnsureResult(ProvisionResult):
    mode: EnsureMode


# ── Telegram pairing ─────────────────────────────────────────────────


class PairingRequest(BaseModel):
    pairing_code: str


class PairingResult(BaseModel):
    ok: bool = True
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""


# ── Idle sweep ───────────────────────────────────────────────────────


class SweepRequest(BaseModel):
    idle_minutes: int = Field(30, ge=1)
    limit: int | None = Field(None, ge=1)
    dry_run: bool = False


class SweepResult(BaseModel):
    scanned: int = 0
    hibernated: int = 0
    errors: int = 0
    dry_run: bool = False
    candidates: list[int] = Field(default_factory=list)  # machine doc ids considered

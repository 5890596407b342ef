"""Agent machine endpoints: records, lifecycle actions, snapshots and the idle sweep."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from flyagents.database import get_db
from flyagents.deps import ANONYMOUS, assert_owner, fly_app_name, get_lifecycle, get_subject
from flyagents.errors import MachineNotFound, Unauthorized
from flyagents.models.machine import AgentMachine
from flyagents.schemas.lifecycle import (
    EnsureResult,
    PairingRequest,
    PairingResult,
    ProvisionRequest,
    ProvisionResult,
    SweepRequest,
    SweepResult,
)
from flyagents.schemas.machine import AllowedSkillsUpdate, MachineResponse
from flyagents.schemas.snapshot import SnapshotResponse, SnapshotResult
from flyagents.services import machine_store, snapshot_store
from flyagents.services.agent_lifecycle import AgentLifecycle
from flyagents.services.idle_sweeper import sweep_idle_and_snapshot
from flyagents.services.secret_service import agent_key_for

router = APIRouter()


async def _owned_machine(db: AsyncSession, machine_doc_id: int, subject: str) -> AgentMachine:
    machine = await machine_store.get_machine(db, machine_doc_id)
    if not machine:
        raise MachineNotFound(f"Machine record not found: {machine_doc_id}")
    assert_owner(subject, machine.user_id)
    return machine


# ── Records ──────────────────────────────────────────────────────────


@router.get("/", response_model=list[MachineResponse])
async def list_machines(
    tenant_id: str,
    db: AsyncSession = Depends(get_db),
    subject: str = Depends(get_subject),
):
    machines = await machine_store.list_machines_by_tenant(db, tenant_id)
    if subject != ANONYMOUS:
        machines = [m for m in machines if m.user_id == subject]
    return machines


@router.get("/snapshots", response_model=list[SnapshotResponse])
async def list_snapshots(
    tenant_id: str,
    user_id: str,
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
    subject: str = Depends(get_subject),
):
    assert_owner(subject, user_id)
    return await snapshot_store.list_snapshots(db, agent_key_for(user_id, tenant_id), limit=limit)


@router.get("/snapshots/latest", response_model=SnapshotResponse)
async def latest_snapshot(
    tenant_id: str,
    user_id: str,
    db: AsyncSession = Depends(get_db),
    subject: str = Depends(get_subject),
):
    assert_owner(subject, user_id)
    snapshot = await snapshot_store.get_latest_snapshot(db, agent_key_for(user_id, tenant_id))
    if not snapshot:
        raise HTTPException(status_code=404, detail="Snapshot not found")
    return snapshot


@router.get("/{machine_doc_id}", response_model=MachineResponse)
async def get_machine(
    machine_doc_id: int,
    db: AsyncSession = Depends(get_db),
    subject: str = Depends(get_subject),
):
    return await _owned_machine(db, machine_doc_id, subject)


@router.put("/{machine_doc_id}/skills", response_model=MachineResponse)
async def update_allowed_skills(
    machine_doc_id: int,
    data: AllowedSkillsUpdate,
    lifecycle: AgentLifecycle = Depends(get_lifecycle),
    subject: str = Depends(get_subject),
):
    await _owned_machine(lifecycle.db, machine_doc_id, subject)
    return await lifecycle.update_allowed_skills(machine_doc_id, data.allowed_skills)


@router.post("/{machine_doc_id}/touch", response_model=MachineResponse)
async def touch_activity(
    machine_doc_id: int,
    lifecycle: AgentLifecycle = Depends(get_lifecycle),
    subject: str = Depends(get_subject),
):
    await _owned_machine(lifecycle.db, machine_doc_id, subject)
    return await lifecycle.touch_activity(machine_doc_id)


# ── Provisioning ─────────────────────────────────────────────────────


@router.post("/provision", response_model=ProvisionResult, status_code=201)
async def provision(
    req: ProvisionRequest,
    lifecycle: AgentLifecycle = Depends(get_lifecycle),
    subject: str = Depends(get_subject),
):
    assert_owner(subject, req.user_id)
    return await lifecycle.provision_with_stored_secrets(req, fly_app_name=fly_app_name())


@router.post("/ensure", response_model=EnsureResult)
async def ensure_user_agent(
    req: ProvisionRequest,
    lifecycle: AgentLifecycle = Depends(get_lifecycle),
    subject: str = Depends(get_subject),
):
    assert_owner(subject, req.user_id)
    return await lifecycle.ensure_user_agent(req, fly_app_name=fly_app_name())


@router.post("/recreate", response_model=ProvisionResult)
async def recreate_from_latest_snapshot(
    req: ProvisionRequest,
    lifecycle: AgentLifecycle = Depends(get_lifecycle),
    subject: str = Depends(get_subject),
):
    assert_owner(subject, req.user_id)
    return await lifecycle.recreate_from_latest_snapshot_with_stored_secrets(
        req, fly_app_name=fly_app_name()
    )


# ── Actions on one machine ───────────────────────────────────────────


@router.post("/{machine_doc_id}/start")
async def start_machine(
    machine_doc_id: int,
    lifecycle: AgentLifecycle = Depends(get_lifecycle),
    subject: str = Depends(get_subject),
):
    await _owned_machine(lifecycle.db, machine_doc_id, subject)
    await lifecycle.start_with_stored_secrets(machine_doc_id, fly_app_name=fly_app_name())
    return {"ok": True}


@router.post("/{machine_doc_id}/stop")
async def stop_machine(
    machine_doc_id: int,
    lifecycle: AgentLifecycle = Depends(get_lifecycle),
    subject: str = Depends(get_subject),
):
    await _owned_machine(lifecycle.db, machine_doc_id, subject)
    await lifecycle.stop_with_stored_secrets(machine_doc_id, fly_app_name=fly_app_name())
    return {"ok": True}


@router.delete("/{machine_doc_id}", status_code=204)
async def deprovision(
    machine_doc_id: int,
    lifecycle: AgentLifecycle = Depends(get_lifecycle),
    subject: str = Depends(get_subject),
):
    machine = await machine_store.get_machine(lifecycle.db, machine_doc_id)
    if machine:
        assert_owner(subject, machine.user_id)
    await lifecycle.deprovision_with_stored_secrets(machine_doc_id, fly_app_name=fly_app_name())


@router.post("/{machine_doc_id}/snapshots", response_model=SnapshotResult, status_code=201)
async def create_snapshot(
    machine_doc_id: int,
    lifecycle: AgentLifecycle = Depends(get_lifecycle),
    subject: str = Depends(get_subject),
):
    await _owned_machine(lifecycle.db, machine_doc_id, subject)
    return await lifecycle.create_snapshot_with_stored_secrets(
        machine_doc_id, fly_app_name=fly_app_name()
    )


@router.post("/{machine_doc_id}/telegram-pairing", response_model=PairingResult)
async def approve_telegram_pairing(
    machine_doc_id: int,
    data: PairingRequest,
    lifecycle: AgentLifecycle = Depends(get_lifecycle),
    subject: str = Depends(get_subject),
):
    await _owned_machine(lifecycle.db, machine_doc_id, subject)
    return await lifecycle.approve_telegram_pairing_with_stored_secrets(
        machine_doc_id, data.pairing_code, fly_app_name=fly_app_name()
    )


# ── Idle sweep (operator) ────────────────────────────────────────────


@router.post("/sweep", response_model=SweepResult)
async def sweep(
    data: SweepRequest,
    lifecycle: AgentLifecycle = Depends(get_lifecycle),
    subject: str = Depends(get_subject),
):
    if subject != ANONYMOUS:
        raise Unauthorized("Idle sweep is an operator action")
    return await sweep_idle_and_snapshot(
        lifecycle,
        fly_app_name=fly_app_name(),
        idle_minutes=data.idle_minutes,
        limit=data.limit,
        dry_run=data.dry_run,
    )

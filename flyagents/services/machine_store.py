"""Machine record store: CRUD plus the indexed queries over agent machine records.

Every write commits its own transaction, so a concurrent reader sees either the
pre- or the post-state of a patch.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, func, literal, select
from sqlalchemy.ext.asyncio import AsyncSession

from flyagents.errors import MachineNotFound, ValidationError
from flyagents.models.machine import LIFECYCLE_MODES, MACHINE_STATUSES, AgentMachine
from flyagents.utils.clock import EPOCH, utcnow

logger = logging.getLogger(__name__)

_IMMUTABLE_FIELDS = {"id", "user_id", "tenant_id", "created_at", "updated_at"}
_PATCHABLE_FIELDS = set(AgentMachine.__table__.columns.keys()) - _IMMUTABLE_FIELDS


def effective_activity():
    """SQL expression: last activity, else last wake, else the epoch (maximally stale)."""
    return func.coalesce(
        AgentMachine.last_activity_at,
        AgentMachine.last_wake_at,
        literal(EPOCH, DateTime),
    )


def _check_values(fields: dict[str, Any]) -> None:
    status = fields.get("status")
    if status is not None and status not in MACHINE_STATUSES:
        raise ValidationError(f"Invalid machine status: {status}")
    mode = fields.get("lifecycle_mode")
    if mode is not None and mode not in LIFECYCLE_MODES:
        raise ValidationError(f"Invalid lifecycle mode: {mode}")


async def insert_machine(db: AsyncSession, *, user_id: str, tenant_id: str, **fields: Any) -> AgentMachine:
    """Create a record. New records always start in ``provisioning``."""
    status = fields.pop("status", "provisioning")
    if status != "provisioning":
        raise ValidationError("New machine records must start in status 'provisioning'")
    unknown = set(fields) - _PATCHABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown machine fields: {sorted(unknown)}")
    _check_values(fields)

    machine = AgentMachine(user_id=user_id, tenant_id=tenant_id, status=status, **fields)
    db.add(machine)
    await db.commit()
    await db.refresh(machine)
    logger.info("Inserted machine record %s for %s:%s", machine.id, tenant_id, user_id)
    return machine


async def patch_machine(db: AsyncSession, machine_doc_id: int, **updates: Any) -> AgentMachine:
    """Update only the given fields; everything else is left untouched."""
    unknown = set(updates) - _PATCHABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown machine fields: {sorted(unknown)}")
    _check_values(updates)

    machine = await db.get(AgentMachine, machine_doc_id)
    if not machine:
        raise MachineNotFound(f"Machine record not found: {machine_doc_id}")
    for field, value in updates.items():
        setattr(machine, field, value)
    await db.commit()
    await db.refresh(machine)
    return machine


async def get_machine(db: AsyncSession, machine_doc_id: int) -> AgentMachine | None:
    return await db.get(AgentMachine, machine_doc_id)


async def list_machines_by_tenant(db: AsyncSession, tenant_id: str) -> list[AgentMachine]:
    stmt = (
        select(AgentMachine)
        .where(AgentMachine.tenant_id == tenant_id)
        .order_by(AgentMachine.id.desc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_latest_machine_for_identity(
    db: AsyncSession, user_id: str, tenant_id: str
) -> AgentMachine | None:
    """Most recently created record for the pair; older records are never considered live."""
    stmt = (
        select(AgentMachine)
        .where(AgentMachine.user_id == user_id, AgentMachine.tenant_id == tenant_id)
        .order_by(AgentMachine.id.desc())
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def list_stale_running_machines(
    db: AsyncSession, cutoff: datetime, limit: int | None = None
) -> list[AgentMachine]:
    """Running machines with both remote ids whose effective activity is at or before ``cutoff``."""
    activity = effective_activity()
    stmt = (
        select(AgentMachine)
        .where(
            AgentMachine.status == "running",
            AgentMachine.machine_id.is_not(None),
            AgentMachine.fly_volume_id.is_not(None),
            activity <= cutoff,
        )
        .order_by(activity.asc(), AgentMachine.id.asc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def update_allowed_skills(db: AsyncSession, machine_doc_id: int, allowed_skills: list[str]) -> AgentMachine:
    if any(not isinstance(skill, str) for skill in allowed_skills):
        raise ValidationError("allowed_skills must be a list of strings")
    now = utcnow()
    return await patch_machine(
        db,
        machine_doc_id,
        allowed_skills=list(allowed_skills),
        last_wake_at=now,
        last_activity_at=now,
    )


async def touch_activity(db: AsyncSession, machine_doc_id: int) -> AgentMachine:
    now = utcnow()
    return await patch_machine(db, machine_doc_id, last_activity_at=now, last_wake_at=now)

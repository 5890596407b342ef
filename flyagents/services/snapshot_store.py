"""Point-in-time backup descriptors, looked up by agent key."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flyagents.models.snapshot import AgentSnapshot


async def insert_snapshot(
    db: AsyncSession,
    *,
    agent_key: str,
    tenant_id: str,
    user_id: str,
    manifest: dict[str, Any],
    machine_doc_id: int | None = None,
    blob_handle: str | None = None,
    fly_volume_snapshot_id: str | None = None,
) -> AgentSnapshot:
    snapshot = AgentSnapshot(
        agent_key=agent_key,
        tenant_id=tenant_id,
        user_id=user_id,
        machine_doc_id=machine_doc_id,
        status="created",
        blob_handle=blob_handle,
        fly_volume_snapshot_id=fly_volume_snapshot_id,
        manifest=manifest,
    )
    db.add(snapshot)
    await db.commit()
    await db.refresh(snapshot)
    return snapshot


async def get_snapshot(db: AsyncSession, snapshot_id: int) -> AgentSnapshot | None:
    return await db.get(AgentSnapshot, snapshot_id)


async def get_latest_snapshot(db: AsyncSession, agent_key: str) -> AgentSnapshot | None:
    stmt = (
        select(AgentSnapshot)
        .where(AgentSnapshot.agent_key == agent_key)
        .order_by(AgentSnapshot.id.desc())
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def list_snapshots(db: AsyncSession, agent_key: str, limit: int = 50) -> list[AgentSnapshot]:
    stmt = (
        select(AgentSnapshot)
        .where(AgentSnapshot.agent_key == agent_key)
        .order_by(AgentSnapshot.id.desc())
        .limit(limit)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def record_restore_outcome(
    db: AsyncSession, snapshot_id: int, *, restored: bool, info: dict[str, Any]
) -> AgentSnapshot | None:
    """The only mutation a snapshot ever sees."""
    snapshot = await db.get(AgentSnapshot, snapshot_id)
    if not snapshot:
        return None
    snapshot.status = "restored" if restored else "failed"
    snapshot.restore_info = info
    await db.commit()
    await db.refresh(snapshot)
    return snapshot

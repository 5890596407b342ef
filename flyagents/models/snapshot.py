"""AgentSnapshot ORM model — immutable backup descriptor for an agent's volume."""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from flyagents.database import Base

SNAPSHOT_STATUSES = ("created", "restored", "failed")


class AgentSnapshot(Base):
    __tablename__ = "agent_snapshots"
    __table_args__ = (Index("ix_agent_snapshots_agent_key", "agent_key", "id"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    agent_key: Mapped[str] = mapped_column(String(256))  # tenantId:userId
    machine_doc_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tenant_id: Mapped[str] = mapped_column(String(128))
    user_id: Mapped[str] = mapped_column(String(128))
    status: Mapped[str] = mapped_column(String(16), default="created")  # created|restored|failed
    blob_handle: Mapped[str | None] = mapped_column(String(128), nullable=True)
    fly_volume_snapshot_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    manifest: Mapped[dict] = mapped_column(JSON, default=dict)
    restore_info: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

"""AgentMachine ORM model — one Fly machine lease serving an agent."""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from flyagents.database import Base

MACHINE_STATUSES = ("provisioning", "running", "stopped", "hibernated", "error", "deleted")
LIFECYCLE_MODES = ("running", "hibernated")


class AgentMachine(Base):
    __tablename__ = "agent_machines"
    __table_args__ = (
        Index("ix_agent_machines_tenant", "tenant_id"),
        Index("ix_agent_machines_user_tenant", "user_id", "tenant_id"),
        Index("ix_agent_machines_machine_id", "machine_id"),
        Index("ix_agent_machines_status_activity", "status", "last_activity_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128))
    tenant_id: Mapped[str] = mapped_column(String(128))
    machine_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    fly_volume_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="provisioning")
    lifecycle_mode: Mapped[str] = mapped_column(String(16), default="running")

    allowed_skills: Mapped[list[str]] = mapped_column(JSON, default=list)
    memory_mb: Mapped[int] = mapped_column(Integer, default=2048)
    region: Mapped[str] = mapped_column(String(16), default="iad")
    image: Mapped[str] = mapped_column(String(256), default="")
    llm_model: Mapped[str] = mapped_column(String(128), default="")
    app_key: Mapped[str] = mapped_column(String(64), default="")
    bridge_url: Mapped[str] = mapped_column(String(512), default="")
    service_id: Mapped[str] = mapped_column(String(128), default="")
    service_key: Mapped[str] = mapped_column(Text, default="")

    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_wake_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    latest_snapshot_id: Mapped[int | None] = mapped_column(Integer, nullable=True)  # back-reference only
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

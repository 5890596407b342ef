"""AgentVmSecrets ORM model — per-agent credential bundle, AES-GCM encrypted at rest."""

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from flyagents.database import Base

SECRET_FIELDS = (
    "fly_api_token",
    "llm_api_key",
    "openai_api_key",
    "telegram_bot_token",
    "openclaw_gateway_token",
)


class AgentVmSecrets(Base):
    __tablename__ = "agent_vm_secrets"

    agent_key: Mapped[str] = mapped_column(String(256), primary_key=True)  # tenantId:userId
    tenant_id: Mapped[str] = mapped_column(String(128))
    user_id: Mapped[str] = mapped_column(String(128))
    fly_api_token_enc: Mapped[str | None] = mapped_column(Text, nullable=True)
    llm_api_key_enc: Mapped[str | None] = mapped_column(Text, nullable=True)
    openai_api_key_enc: Mapped[str | None] = mapped_column(Text, nullable=True)
    telegram_bot_token_enc: Mapped[str | None] = mapped_column(Text, nullable=True)
    openclaw_gateway_token_enc: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime)

"""Agent machine request/response schemas."""

from datetime import datetime

from pydantic import BaseModel


class AllowedSkillsUpdate(BaseModel):
    allowed_skills: list[str]


class MachineResponse(BaseModel):
    id: int
    user_id: str
    tenant_id: str
    machine_id: str | None
    fly_volume_id: str | None
    status: str
    lifecycle_mode: str
    allowed_skills: list[str]
    memory_mb: int
    region: str
    image: str
    llm_model: str
    app_key: str
    bridge_url: str
    service_id: str
    last_activity_at: datetime | None
    last_wake_at: datetime | None
    latest_snapshot_id: int | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime
    # service_key is NEVER returned

    model_config = {"from_attributes": True}

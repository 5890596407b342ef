"""Snapshot schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class SnapshotManifest(BaseModel):
    source_machine_id: str | None = None
    source_volume_id: str | None = None
    image: str | None = None
    region: str | None = None
    llm_model: str | None = None
    backup_scope: str = "openclaw-state-plus-manifest"
    backup_created_at: datetime
    notes: str = ""


class SnapshotResult(BaseModel):
    snapshot_id: int
    fly_volume_snapshot_id: str | None = None


class SnapshotResponse(BaseModel):
    id: int
    agent_key: str
    machine_doc_id: int | None
    tenant_id: str
    user_id: str
    status: str
    blob_handle: str | None
    fly_volume_snapshot_id: str | None
    manifest: dict[str, Any]
    restore_info: dict[str, Any] | None
    created_at: datetime

    model_config = {"from_attributes": True}

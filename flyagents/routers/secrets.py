"""Per-agent credential endpoints. Values go in, only presence flags come out."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from flyagents.config import settings
from flyagents.database import get_db
from flyagents.deps import assert_owner, get_subject, vault
from flyagents.schemas.secret import AgentSecretsMeta, AgentSecretsUpdate
from flyagents.services import secret_service

router = APIRouter()


@router.get("/{tenant_id}/{user_id}", response_model=AgentSecretsMeta)
async def get_secrets_meta(
    tenant_id: str,
    user_id: str,
    db: AsyncSession = Depends(get_db),
    subject: str = Depends(get_subject),
):
    assert_owner(subject, user_id)
    meta = await secret_service.get_secrets_meta(db, tenant_id, user_id)
    if not meta:
        raise HTTPException(status_code=404, detail="No secrets stored")
    return meta


@router.put("/{tenant_id}/{user_id}", response_model=AgentSecretsMeta)
async def upsert_secrets(
    tenant_id: str,
    user_id: str,
    data: AgentSecretsUpdate,
    db: AsyncSession = Depends(get_db),
    subject: str = Depends(get_subject),
):
    assert_owner(subject, user_id)
    return await secret_service.upsert_agent_secrets(
        db, vault, settings.secrets_encryption_key, tenant_id, user_id, data
    )


@router.delete("/{tenant_id}/{user_id}", status_code=204)
async def clear_secrets(
    tenant_id: str,
    user_id: str,
    db: AsyncSession = Depends(get_db),
    subject: str = Depends(get_subject),
):
    assert_owner(subject, user_id)
    cleared = await secret_service.clear_agent_secrets(db, tenant_id, user_id)
    if not cleared:
        raise HTTPException(status_code=404, detail="No secrets stored")

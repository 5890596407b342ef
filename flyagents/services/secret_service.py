"""Secret service — per-agent encrypted credential bundle."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from flyagents.models.secret import SECRET_FIELDS, AgentVmSecrets
from flyagents.schemas.secret import AgentSecretsMeta, AgentSecretsUpdate, StoredSecrets
from flyagents.utils.clock import utcnow
from flyagents.utils.crypto import SecretsVault, optional_secret


def agent_key_for(user_id: str, tenant_id: str) -> str:
    return f"{tenant_id}:{user_id}"


def _meta(record: AgentVmSecrets) -> AgentSecretsMeta:
    return AgentSecretsMeta(
        tenant_id=record.tenant_id,
        user_id=record.user_id,
        updated_at=record.updated_at,
        **{f"has_{field}": bool(getattr(record, f"{field}_enc")) for field in SECRET_FIELDS},
    )


async def get_secrets_meta(db: AsyncSession, tenant_id: str, user_id: str) -> AgentSecretsMeta | None:
    record = await db.get(AgentVmSecrets, agent_key_for(user_id, tenant_id))
    if not record:
        return None
    return _meta(record)


async def upsert_agent_secrets(
    db: AsyncSession,
    vault: SecretsVault,
    secrets_encryption_key: str,
    tenant_id: str,
    user_id: str,
    data: AgentSecretsUpdate,
) -> AgentSecretsMeta:
    agent_key = agent_key_for(user_id, tenant_id)
    record = await db.get(AgentVmSecrets, agent_key)
    if not record:
        record = AgentVmSecrets(agent_key=agent_key, tenant_id=tenant_id, user_id=user_id)
        db.add(record)

    for field in SECRET_FIELDS:
        value = getattr(data, field)
        if value is None:
            continue  # keep prior ciphertext
        plaintext = optional_secret(value)
        setattr(
            record,
            f"{field}_enc",
            vault.encrypt(plaintext, secrets_encryption_key) if plaintext else None,
        )

    record.updated_at = utcnow()
    await db.commit()
    await db.refresh(record)
    return _meta(record)


async def clear_agent_secrets(db: AsyncSession, tenant_id: str, user_id: str) -> bool:
    record = await db.get(AgentVmSecrets, agent_key_for(user_id, tenant_id))
    if not record:
        return False

    await db.delete(record)
    await db.commit()
    return True


async def load_agent_secrets(
    db: AsyncSession,
    vault: SecretsVault,
    secrets_encryption_key: str,
    tenant_id: str,
    user_id: str,
) -> StoredSecrets | None:
    """Decrypt the agent's bundle (internal use only, never exposed via the API)."""
    record = await db.get(AgentVmSecrets, agent_key_for(user_id, tenant_id))
    if not record:
        return None
    decrypted = {}
    for field in SECRET_FIELDS:
        ciphertext = getattr(record, f"{field}_enc")
        if ciphertext:
            decrypted[field] = vault.decrypt(ciphertext, secrets_encryption_key)
    return StoredSecrets(**decrypted)

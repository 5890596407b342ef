"""FastAPI dependencies — caller identity, ownership, and the lifecycle service."""

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from flyagents.config import settings
from flyagents.database import get_db
from flyagents.errors import Unauthorized
from flyagents.services.agent_lifecycle import AgentLifecycle
from flyagents.services.blob_store import FileBlobStore
from flyagents.utils.crypto import KeyCache, SecretsVault, resolve_secret

ANONYMOUS = "anonymous"

vault = SecretsVault(KeyCache())


async def get_subject(x_auth_subject: str | None = Header(None)) -> str:
    """Authenticated user id, as forwarded by the auth proxy in front of the API."""
    subject = (x_auth_subject or "").strip()
    return subject or ANONYMOUS


def assert_owner(subject: str, user_id: str) -> None:
    if subject != ANONYMOUS and subject != user_id:
        raise Unauthorized("Unauthorized")


def fly_app_name() -> str:
    return resolve_secret("flyAppName", settings.fly_app_name, None)


def get_blob_store() -> FileBlobStore:
    return FileBlobStore(settings.blob_dir)


async def get_lifecycle(
    request: Request,
    db: AsyncSession = Depends(get_db),
    blobs: FileBlobStore = Depends(get_blob_store),
) -> AgentLifecycle:
    return AgentLifecycle(
        db,
        provider_factory=request.app.state.provider_factory,
        blobs=blobs,
        vault=vault,
    )

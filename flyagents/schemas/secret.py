"""Agent secret request/response schemas."""

from datetime import datetime

from pydantic import BaseModel


class AgentSecretsUpdate(BaseModel):
    """Plaintext values, encrypted before storage.

    ``None`` keeps the stored value, an empty string clears it.
    """

    fly_api_token: str | None = None
    llm_api_key: str | None = None
    openai_api_key: str | None = None
    telegram_bot_token: str | None = None
    openclaw_gateway_token: str | None = None


class AgentSecretsMeta(BaseModel):
    tenant_id: str
    user_id: str
    updated_at: datetime
    has_fly_api_token: bool = False
    has_llm_api_key: bool = False
    has_openai_api_key: bool = False
    has_telegram_bot_token: bool = False
    has_openclaw_gateway_token: bool = False
    # values are NEVER returned


class StoredSecrets(BaseModel):
    """Decrypted bundle (internal use only, never exposed via the API)."""

    fly_api_token: str | None = None
    llm_api_key: str | None = None
    openai_api_key: str | None = None
    telegram_bot_token: str | None = None
    openclaw_gateway_token: str | None = None

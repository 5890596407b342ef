"""flyagents configuration — loaded from environment / .env file."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="FLYAGENTS_", extra="ignore")

    env: str = "development"
    database_url: str = "sqlite+aiosqlite:///./flyagents.db"

    # Snapshot manifests are written here (relative to project root)
    blob_dir: Path = Path("userdata") / "blobs"

    # Operator-supplied secret used to derive the credential encryption key
    secrets_encryption_key: str = ""

    # Fly Machines API
    fly_api_base_url: str = "https://api.machines.dev/v1"
    fly_api_token: str = ""
    fly_app_name: str = ""
    fly_http_timeout_s: float = 60.0

    # Machine defaults
    default_image: str = "registry.fly.io/linkhub-agents:openclaw-okr-v1"
    default_region: str = "iad"
    default_memory_mb: int = 2048
    default_volume_size_gb: int = 1
    default_llm_model: str = "openai/gpt-4.1-mini"
    default_app_key: str = "linkhub-w4"
    default_allowed_skills: list[str] = ["linkhub-bridge"]

    # Operator-wide credentials, used only when neither the caller nor the
    # agent's stored secrets provide a value
    bridge_url: str = ""
    service_id: str = ""
    service_key: str = ""
    telegram_bot_token: str = ""
    openclaw_gateway_token: str = ""
    llm_api_key: str = ""

    # `openclaw models set` is retried while the new machine boots
    model_set_retry_attempts: int = 30
    model_set_retry_delay_s: float = 5.0

    # Idle sweep
    idle_minutes: int = 30
    sweep_limit: int | None = None


settings = Settings()

"""FastAPI application entrypoint."""

import logging
import os
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from flyagents.adapters.fly import fly_provider_factory
from flyagents.config import settings
from flyagents.database import init_db
from flyagents.errors import FlyAgentsError
from flyagents.routers import machines, secrets

# ── Logging setup ────────────────────────────────────────────────────
_log_level = os.environ.get("FLYAGENTS_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=_log_level,
    format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
# Request lines for every Fly API call are noise outside debugging
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await init_db()
    http_client = httpx.AsyncClient(timeout=settings.fly_http_timeout_s)
    app.state.provider_factory = fly_provider_factory(http_client)
    if not settings.fly_app_name:
        logger.warning("FLYAGENTS_FLY_APP_NAME is not set; lifecycle actions will fail")
    if not settings.secrets_encryption_key:
        logger.warning("FLYAGENTS_SECRETS_ENCRYPTION_KEY is not set; stored secrets are unavailable")

    yield

    # Shutdown
    await http_client.aclose()


app = FastAPI(
    title="flyagents",
    description="Per-user agent machines on Fly.io",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(FlyAgentsError)
async def flyagents_error_handler(request: Request, exc: FlyAgentsError):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


# Mount routers
app.include_router(machines.router, prefix="/api/machines", tags=["machines"])
app.include_router(secrets.router, prefix="/api/secrets", tags=["secrets"])


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": "flyagents",
        "fly": {
            "app": settings.fly_app_name or None,
            "api": settings.fly_api_base_url,
        },
    }

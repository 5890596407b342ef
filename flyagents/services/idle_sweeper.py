"""Idle sweeper: snapshot, then reclaim, running machines nobody has used lately."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from flyagents.config import settings
from flyagents.schemas.lifecycle import SweepResult
from flyagents.services import machine_store
from flyagents.services.agent_lifecycle import AgentLifecycle
from flyagents.utils.clock import utcnow

logger = logging.getLogger(__name__)


async def sweep_idle_and_snapshot(
    lifecycle: AgentLifecycle,
    *,
    fly_app_name: str,
    idle_minutes: int | None = None,
    limit: int | None = None,
    dry_run: bool = False,
    fly_api_token: str | None = None,
    secrets_encryption_key: str | None = None,
    now: datetime | None = None,
) -> SweepResult:
    """Hibernate every stale running machine; one failure never aborts the batch."""
    idle = idle_minutes or settings.idle_minutes
    cutoff = (now or utcnow()) - timedelta(minutes=idle)
    stale = await machine_store.list_stale_running_machines(
        lifecycle.db, cutoff, limit if limit is not None else settings.sweep_limit
    )
    # Plain tuples: a rollback after a failed item expires the ORM instances
    targets = [(m.id, m.tenant_id, m.user_id) for m in stale]

    result = SweepResult(
        scanned=len(targets), dry_run=dry_run, candidates=[doc_id for doc_id, _, _ in targets]
    )
    if dry_run:
        logger.info("Idle sweep (dry run): %d candidates idle since %s", len(targets), cutoff)
        return result

    for machine_doc_id, tenant_id, user_id in targets:
        try:
            token = await lifecycle.resolve_fly_token(
                tenant_id,
                user_id,
                supplied=fly_api_token,
                secrets_encryption_key=secrets_encryption_key,
            )
            await lifecycle.hibernate(machine_doc_id, fly_api_token=token, fly_app_name=fly_app_name)
            result.hibernated += 1
        except Exception as exc:
            result.errors += 1
            await lifecycle.record_failure(machine_doc_id, exc)

    logger.info(
        "Idle sweep: scanned=%d hibernated=%d errors=%d",
        result.scanned,
        result.hibernated,
        result.errors,
    )
    return result

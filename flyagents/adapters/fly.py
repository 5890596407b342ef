"""Fly Machines HTTP adapter.

Maps each lifecycle step to one call against https://api.machines.dev/v1:
volumes, machines (create/start/stop/delete), volume snapshots and exec.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

import httpx

from flyagents.adapters.base import (
    ComputeProvider,
    ExecResult,
    FlyMachine,
    FlyVolume,
    FlyVolumeSnapshot,
    MachineSpec,
)
from flyagents.config import settings
from flyagents.errors import MissingSecret, ProviderError, ValidationError

logger = logging.getLogger(__name__)

# ── Machine config constants ─────────────────────────────────────────
PUBLIC_PORT = 443
CHECK_INTERVAL = "15s"
CHECK_TIMEOUT = "5s"
CHECK_GRACE_PERIOD = "240s"


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _snapshot_id(payload: Any) -> str | None:
    """Fly returns the snapshot either flat (``{"id"}``) or nested (``{"snapshot": {"id"}}``)."""
    if not isinstance(payload, dict):
        return None
    flat = _str_or_none(payload.get("id"))
    if flat:
        return flat
    nested = payload.get("snapshot")
    if isinstance(nested, dict):
        return _str_or_none(nested.get("id"))
    return None


def build_machine_config(spec: MachineSpec) -> dict[str, Any]:
    return {
        "image": spec.image,
        "guest": {
            "cpu_kind": spec.cpu_kind,
            "cpus": spec.cpus,
            "memory_mb": spec.memory_mb,
        },
        "restart": {"policy": "always"},
        "env": dict(spec.env),
        "mounts": [{"volume": spec.volume_id, "path": spec.mount_path}],
        "services": [
            {
                "protocol": "tcp",
                "internal_port": spec.internal_port,
                "ports": [{"port": PUBLIC_PORT, "handlers": ["tls", "http"]}],
                "autostart": True,
                "autostop": False,
                "checks": [
                    {
                        "type": "tcp",
                        "interval": CHECK_INTERVAL,
                        "timeout": CHECK_TIMEOUT,
                        "grace_period": CHECK_GRACE_PERIOD,
                    }
                ],
            }
        ],
    }


class FlyMachinesClient(ComputeProvider):
    """Async Fly Machines client bound to one app and API token."""

    def __init__(
        self,
        *,
        api_token: str,
        app_name: str,
        client: httpx.AsyncClient,
        base_url: str | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self.api_token = (api_token or "").strip()
        if not self.api_token:
            raise MissingSecret("flyApiToken")
        self.app_name = (app_name or "").strip()
        if not self.app_name:
            raise ValidationError("Missing required argument: flyAppName")
        self.base_url = (base_url or settings.fly_api_base_url).rstrip("/")
        self.timeout_s = timeout_s if timeout_s is not None else settings.fly_http_timeout_s
        self._client = client

    # ── Transport ────────────────────────────────────────────────────

    async def _request(self, method: str, endpoint: str, body: Any = None) -> Any:
        """Send one request; non-2xx is a ProviderError, 204 is an empty result."""
        try:
            resp = await self._client.request(
                method,
                f"{self.base_url}{endpoint}",
                headers={
                    "Authorization": f"Bearer {self.api_token}",
                    "Content-Type": "application/json",
                },
                json=body,
                timeout=self.timeout_s,
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f"Fly API {endpoint} request failed: {exc}") from exc

        if not resp.is_success:
            raise ProviderError(
                f"Fly API {endpoint} failed: {resp.text}",
                remote_status=resp.status_code,
                detail=resp.text,
            )
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderError(f"Fly API {endpoint} returned invalid JSON", detail=resp.text) from exc

    def _app(self, path: str) -> str:
        return f"/apps/{self.app_name}{path}"

    # ── Volumes ──────────────────────────────────────────────────────

    async def _post_volume(self, body: dict[str, Any]) -> FlyVolume | None:
        data = await self._request("POST", self._app("/volumes"), body)
        volume_id = _str_or_none(data.get("id")) if isinstance(data, dict) else None
        if not volume_id:
            return None
        return FlyVolume(
            id=volume_id,
            name=str(data.get("name") or body["name"]),
            region=str(data.get("region") or body["region"]),
        )

    async def create_volume(
        self, *, name: str, region: str, size_gb: int, snapshot_id: str | None = None
    ) -> FlyVolume:
        body = {"name": name, "region": region, "size_gb": size_gb}
        restore_error: str | None = None

        if snapshot_id:
            try:
                volume = await self._post_volume({**body, "snapshot_id": snapshot_id})
            except ProviderError as exc:
                volume = None
                restore_error = str(exc)
            else:
                if volume is None:
                    restore_error = "Fly API returned no volume id for snapshot restore"
            if volume is not None:
                logger.info("Restored volume %s from snapshot %s", volume.id, snapshot_id)
                return replace(volume, restored_from=snapshot_id)
            logger.warning(
                "Restore from snapshot %s failed, creating empty volume: %s",
                snapshot_id,
                restore_error,
            )

        volume = await self._post_volume(body)
        if volume is None:
            raise ProviderError(f"Fly API {self._app('/volumes')} returned no volume id")
        return replace(volume, restore_error=restore_error)

    async def delete_volume(self, volume_id: str) -> None:
        try:
            await self._request("DELETE", self._app(f"/volumes/{volume_id}"))
        except ProviderError as exc:
            if exc.remote_status != 404:
                raise
            logger.info("Volume %s already deleted", volume_id)

    async def create_volume_snapshot(self, volume_id: str) -> FlyVolumeSnapshot:
        data = await self._request("POST", self._app(f"/volumes/{volume_id}/snapshots"), {})
        return FlyVolumeSnapshot(id=_snapshot_id(data))

    # ── Machines ─────────────────────────────────────────────────────

    async def create_machine(self, spec: MachineSpec) -> FlyMachine:
        data = await self._request(
            "POST", self._app("/machines"), {"config": build_machine_config(spec)}
        )
        machine_id = _str_or_none(data.get("id")) if isinstance(data, dict) else None
        if not machine_id:
            raise ProviderError(f"Fly API {self._app('/machines')} returned no machine id")
        return FlyMachine(
            id=machine_id,
            state=str(data.get("state") or ""),
            region=str(data.get("region") or spec.region),
        )

    async def start_machine(self, machine_id: str) -> None:
        await self._request("POST", self._app(f"/machines/{machine_id}/start"))

    async def stop_machine(self, machine_id: str) -> None:
        await self._request("POST", self._app(f"/machines/{machine_id}/stop"))

    async def delete_machine(self, machine_id: str) -> None:
        try:
            await self._request("DELETE", self._app(f"/machines/{machine_id}"))
        except ProviderError as exc:
            if exc.remote_status != 404:
                raise
            logger.info("Machine %s already deleted", machine_id)

    async def exec_command(self, machine_id: str, command: list[str]) -> ExecResult:
        data = await self._request(
            "POST", self._app(f"/machines/{machine_id}/exec"), {"command": command}
        )
        if not isinstance(data, dict):
            return ExecResult(exit_code=None)
        exit_code = data.get("exit_code")
        return ExecResult(
            exit_code=exit_code if isinstance(exit_code, int) else None,
            stdout=str(data.get("stdout") or ""),
            stderr=str(data.get("stderr") or ""),
        )


def fly_provider_factory(client: httpx.AsyncClient):
    """Bind a shared HTTP client; returns ``(api_token, app_name) -> FlyMachinesClient``."""

    def factory(api_token: str, app_name: str) -> FlyMachinesClient:
        return FlyMachinesClient(api_token=api_token, app_name=app_name, client=client)

    return factory

"""Abstract base class for compute providers.

Swap Fly Machines for another VM provider by implementing this interface.
Responses are normalized into the tagged results below at the adapter
boundary, so the lifecycle service never inspects raw payloads.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass(frozen=True)
class FlyVolume:
    id: str
    name: str = ""
    region: str = ""
    restored_from: str | None = None  # remote snapshot id the volume was created from
    restore_error: str | None = None  # set when a snapshot restore fell back to an empty volume


@dataclass(frozen=True)
class FlyMachine:
    id: str
    state: str = ""
    region: str = ""


@dataclass(frozen=True)
class FlyVolumeSnapshot:
    id: str | None


@dataclass(frozen=True)
class ExecResult:
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code is None or self.exit_code == 0


@dataclass(frozen=True)
class MachineSpec:
    image: str
    region: str
    memory_mb: int
    volume_id: str
    env: dict[str, str] = field(default_factory=dict)
    mount_path: str = "/data"
    internal_port: int = 3000
    cpu_kind: str = "shared"
    cpus: int = 1


class ComputeProvider(ABC):
    """Contract that any VM provider must satisfy."""

    @abstractmethod
    async def create_volume(
        self, *, name: str, region: str, size_gb: int, snapshot_id: str | None = None
    ) -> FlyVolume:
        """Create a volume, restoring from ``snapshot_id`` when possible.

        A failed restore falls back to an empty volume and reports the failure
        through ``FlyVolume.restore_error``.
        """

    @abstractmethod
    async def create_machine(self, spec: MachineSpec) -> FlyMachine:
        """Create (and boot) a machine bound to ``spec.volume_id``."""

    @abstractmethod
    async def start_machine(self, machine_id: str) -> None: ...

    @abstractmethod
    async def stop_machine(self, machine_id: str) -> None: ...

    @abstractmethod
    async def delete_machine(self, machine_id: str) -> None:
        """Delete a machine. Already-deleted machines are not an error."""

    @abstractmethod
    async def delete_volume(self, volume_id: str) -> None:
        """Delete a volume. Already-deleted volumes are not an error."""

    @abstractmethod
    async def create_volume_snapshot(self, volume_id: str) -> FlyVolumeSnapshot: ...

    @abstractmethod
    async def exec_command(self, machine_id: str, command: list[str]) -> ExecResult:
        """Run a command on the machine and return its exit code and output."""

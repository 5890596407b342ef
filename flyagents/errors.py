"""Error taxonomy shared by the stores, the Fly adapter and the lifecycle service.

Each class carries the HTTP status the API layer answers with; the services
themselves never deal in status codes.
"""

from __future__ import annotations


class FlyAgentsError(RuntimeError):
    """Base class for errors with a human-readable message."""

    status_code = 500


class ValidationError(FlyAgentsError):
    """Missing or invalid argument. Raised before any remote call or record write."""

    status_code = 400


class MachineNotFound(FlyAgentsError):
    status_code = 404


class MachineNotReady(FlyAgentsError):
    """The operation needs a remote machine id that has not been assigned yet."""

    status_code = 409


class Unauthorized(FlyAgentsError):
    status_code = 403


class ProviderError(FlyAgentsError):
    """Non-success response from the Fly Machines API (or a failed exec on a machine)."""

    status_code = 502

    def __init__(self, message: str, *, remote_status: int | None = None, detail: str = "") -> None:
        super().__init__(message)
        self.remote_status = remote_status
        self.detail = detail


class SecretResolutionError(FlyAgentsError):
    status_code = 400


class MissingSecret(SecretResolutionError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Missing required secret: {name}")
        self.name = name


class VaultError(FlyAgentsError):
    status_code = 400


class InvalidFormat(VaultError):
    pass


class DecryptionFailed(VaultError):
    pass

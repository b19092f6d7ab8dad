"""Exception hierarchy for hub, cloud and command-routing failures."""

from __future__ import annotations


class PowerViewError(Exception):
    """Base class for every error raised by the bridge."""


class HubError(PowerViewError):
    """A hub call failed.

    Args:
        message: human-readable description
        hub: address of the hub that was called
        status: HTTP status, when the hub answered at all

    """

    def __init__(self, message: str, hub: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.hub: str | None = hub
        self.status: int | None = status


class HubUnreachableError(HubError):
    """Timeout, refused connection or unparsable reply. Retried on the next poll or command."""


class NotPrimaryGatewayError(HubError):
    """The hub is a secondary gateway in a multi-gateway home and will not serve the listing."""


class ShadeNotFoundError(HubError):
    """The hub does not know the requested shade id."""

    def __init__(self, shade_id: int, hub: str | None = None) -> None:
        super().__init__(f"shade {shade_id} not found", hub=hub, status=404)
        self.shade_id: int = shade_id


class PositionControlUnsupportedError(HubError):
    """Neither the hub nor the cloud service accepted a direct position write."""


class ControlResolutionError(PowerViewError):
    """A command could not be mapped to a hub call (unknown device, missing scene link)."""

    def __init__(self, ref: int, reason: str) -> None:
        super().__init__(f"device {ref}: {reason}")
        self.ref: int = ref
        self.reason: str = reason


class CloudAuthenticationError(PowerViewError):
    """PowerView cloud login failed or no token is available."""

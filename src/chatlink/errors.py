from __future__ import annotations

"""Exception taxonomy for the chat gateway."""

from typing import Optional


class GatewayError(Exception):
    """Base class for gateway failures that stay local to one identity key."""


class NotReadyError(GatewayError):
    def __init__(self, key: str, state: Optional[str] = None) -> None:
        super().__init__(f"Connection {key} is not ready (state={state or 'absent'})")
        self.key = key
        self.state = state


class SendError(GatewayError):
    pass


class RelayError(GatewayError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientLaunchError(GatewayError):
    """Resource exhaustion or a closed automation target during initial launch."""


class LaunchFailedError(GatewayError):
    pass


class IdentityAlreadyBound(GatewayError):
    def __init__(self, external_identity: str) -> None:
        super().__init__(f"External identity {external_identity} is already bound")
        self.external_identity = external_identity


class ActivationCodeCollision(GatewayError):
    pass


class ExtractionError(GatewayError):
    """The AI delegate failed; callers treat this like a non-match."""

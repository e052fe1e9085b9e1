"""Exceptions raised by goalsync components.

Only the persistence layer can fail at runtime. Gateways translate their
backend's failures into the classes below so the reconciliation policy can
treat every backend the same way.
"""

from typing import Optional


class GoalSyncError(Exception):
    """Base class for all goalsync errors."""

    def __init__(self, message: str = "An unspecified goalsync error occurred."):
        super().__init__(message)


class GatewayError(GoalSyncError):
    """Raised when a call to the remote store fails."""

    def __init__(self, message: str = "Remote store error."):
        super().__init__(message)


class TransportError(GatewayError):
    """Raised when the remote store is unreachable or the connection drops."""

    def __init__(self, message: str = "Remote store unavailable."):
        super().__init__(message)


class NotFoundError(GatewayError):
    """Raised when a write targets an objective or item the store does not have."""

    def __init__(self, target: str, message: str = "Not found."):
        self.target = target
        super().__init__(f"{message} Target: '{target}'")


class RemoteCommandError(GatewayError):
    """Raised when the remote store rejects a command."""

    def __init__(self, command: str, error: Optional[dict] = None):
        self.command = command
        self.error = error or {}
        detail = self.error.get("message", "Unknown error")
        super().__init__(f"Command '{command}' failed: {detail}")


class AuthenticationError(GatewayError):
    """Raised when the remote store no longer accepts our credentials."""

    def __init__(self, message: str = "Authentication failed."):
        super().__init__(message)

"""
Reconciler error hierarchy.

All errors raised by the client, poller and dispatcher derive from
ReconcilerError so callers can catch them in one place.

Usage:
    from nodectl.errors import NetworkFailure, PreconditionFailed

    try:
        dispatcher.activate("N1")
    except PreconditionFailed as e:
        logger.info(f"Activate not available: {e.message}")
"""

from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "AuthFailure",
    "ConfigurationError",
    "NetworkFailure",
    "NotFound",
    "PreconditionFailed",
    "ReconcilerError",
    "ServerRejected",
]


class ReconcilerError(Exception):
    """Base exception for all reconciler errors.

    Attributes:
        code: Machine-readable error code
        message: Human-readable error description
        context: Additional context for debugging
    """
    code: str = "RECONCILER_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"[{self.code}] {self.message} ({ctx})"
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
        }


class NetworkFailure(ReconcilerError):
    """Transport-level failure: connection refused, timeout, 5xx.

    Transient. A poll that fails this way leaves the last snapshot in place.
    """
    code: str = "NETWORK_FAILURE"


class NotFound(ReconcilerError):
    """The node no longer exists on the controller. Terminal for tracking."""
    code: str = "NOT_FOUND"


class AuthFailure(ReconcilerError):
    code: str = "AUTH_FAILURE"


class PreconditionFailed(ReconcilerError):
    """Client-side gate check failed. Never reaches the network.

    Attributes:
        command: Name of the rejected command
        status: Status the gate evaluated against
    """
    code: str = "PRECONDITION_FAILED"

    def __init__(
        self,
        message: str,
        command: str,
        status: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context=context)
        self.command = command
        self.status = status
        self.context["command"] = command
        if status is not None:
            self.context["status"] = status


class ServerRejected(ReconcilerError):
    """The controller returned an error for a well-formed request.

    Attributes:
        status_code: HTTP status returned by the controller
        error_code: Controller error code (e.g. FABRIC_E_NODE_IS_UP), if any
    """
    code: str = "SERVER_REJECTED"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context=context)
        self.status_code = status_code
        self.error_code = error_code
        if status_code is not None:
            self.context["status_code"] = status_code
        if error_code:
            self.context["error_code"] = error_code


class ConfigurationError(ReconcilerError):
    code: str = "CONFIGURATION_ERROR"

"""
Error Taxonomy for the Probe.

Every failure the probe can observe is one of these exceptions. Session errors
carry a `retryable` flag so the Probe Loop can decide between "try again",
"skip this cycle" and "give up" without inspecting transport-specific errors.
"""
from typing import Any, Dict, Optional


class ProbeError(Exception):
    """
    Base exception for all probe errors.

    Attributes:
        code: Error code following the probe:<area>/<reason> pattern
        message: Human-readable error message
        details: Optional additional context
    """

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ConfigError(ProbeError):
    """Raised when a configuration value cannot be used."""

    def __init__(self, key: str, reason: str):
        super().__init__(code="probe:config/invalid", message=f"Invalid config '{key}': {reason}",
                         details={"key": key})
        self.key = key


class MalformedHeartbeat(ProbeError):
    """Raised when a received body is not a heartbeat payload."""

    def __init__(self, body: bytes, reason: str):
        super().__init__(code="probe:payload/malformed", message=f"Malformed heartbeat: {reason}",
                         details={"body": body[:64].decode('utf-8', errors='replace')})
        self.body = body


# --- Session (transport) errors ---

class SessionError(ProbeError):
    """Base class for failures reported by a Session."""
    retryable: bool = True

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(code=code, message=message, details=details)


class AuthFailure(SessionError):
    """Connecting or authenticating against the broker failed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, retryable: bool = True):
        super().__init__(code="probe:session/auth_failure", message=message, details=details)
        self.retryable = retryable


class SubscriptionError(SessionError):
    """The broker refused or failed the subscription."""

    def __init__(self, topic: str, message: str):
        super().__init__(code="probe:session/subscription", message=message, details={"topic": topic})
        self.topic = topic


class PublishError(SessionError):
    """A heartbeat could not be handed to the broker."""

    def __init__(self, topic: str, message: str):
        super().__init__(code="probe:session/publish", message=message, details={"topic": topic})
        self.topic = topic


class ReadTimeout(SessionError):
    """No message arrived within the read timeout. The broker may merely be slow."""

    def __init__(self, timeout: float):
        super().__init__(code="probe:session/read_timeout",
                         message=f"No message received within {timeout:.1f}s",
                         details={"timeout": timeout})
        self.timeout = timeout


class ConnectionLost(SessionError):
    """The connection to the broker is gone and must be re-established."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(code="probe:session/connection_lost", message=message, details=details)

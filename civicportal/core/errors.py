from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from civicportal.core.events import redact


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class PortalError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": redact(self.context or {}),
        }


class ConfigError(PortalError):
    def __init__(self, user_message: str = "Configuration error.", **ctx: Any):
        super().__init__("config_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


# ---- storage: logged and dropped ----
class StorageError(PortalError):
    def __init__(self, user_message: str = "Session storage error.", **ctx: Any):
        super().__init__("storage_error", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class StorageQuotaError(StorageError):
    def __init__(self, user_message: str = "Session storage is full.", **ctx: Any):
        PortalError.__init__(self, "storage_quota_exceeded", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


# ---- identity: end the session ----
class IdentityError(PortalError):
    def __init__(self, user_message: str = "Unable to confirm your sign-in.", **ctx: Any):
        super().__init__("identity_error", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class SessionInvalidError(PortalError):
    def __init__(self, user_message: str = "Your session is no longer valid. Please log in again.", **ctx: Any):
        super().__init__("session_invalid", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class DeviceMismatchError(PortalError):
    def __init__(self, user_message: str = "Session detected from a different device.", **ctx: Any):
        super().__init__("device_mismatch", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


# ---- profile fetch: login continues without a profile ----
class ProfileUnavailableError(PortalError):
    def __init__(self, user_message: str = "Profile unavailable.", **ctx: Any):
        super().__init__("profile_unavailable", user_message, severity=Severity.INFO, recoverable=True, context=ctx)

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from civicportal.core.identity.models import UserProfile
from civicportal.core.session.fingerprint import DeviceFingerprint


class SessionState(str, Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    ACTIVE = "ACTIVE"
    WARNING = "WARNING"
    EXPIRED = "EXPIRED"
    INVALID = "INVALID"
    DEVICE_MISMATCH = "DEVICE_MISMATCH"
    LOGGED_OUT = "LOGGED_OUT"



class EndReason(str, Enum):
    timeout = "timeout"
    invalid = "invalid"
    device_mismatch = "device_mismatch"
    user_action = "user_action"


# Terminal state entered before teardown; user_action goes straight to LOGGED_OUT.
END_STATES = {
    EndReason.timeout: SessionState.EXPIRED,
    EndReason.invalid: SessionState.INVALID,
    EndReason.device_mismatch: SessionState.DEVICE_MISMATCH,
}


class SessionSnapshot(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    state: SessionState
    principal_id: Optional[str] = None
    profile: Optional[UserProfile] = None
    fingerprint: Optional[DeviceFingerprint] = None
    login_time: Optional[float] = None
    session_start: Optional[float] = None
    last_activity: Optional[float] = None
    seconds_until_expiry: int = 0
    session_duration_seconds: int = 0
    warning_seconds_remaining: Optional[int] = None

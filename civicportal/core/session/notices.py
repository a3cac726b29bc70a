from __future__ import annotations

from civicportal.core.session.models import EndReason

_END_NOTICES = {
    EndReason.timeout: "Your session has expired due to inactivity. Please log in again.",
    EndReason.invalid: "Your session is no longer valid. Please log in again.",
    EndReason.device_mismatch: "Session detected from a different device. For security, you have been logged out.",
    EndReason.user_action: "You have been logged out.",
}


def end_notice(reason: EndReason) -> str:
    return _END_NOTICES[EndReason(reason)]


def format_countdown(seconds: int) -> str:
    """300 -> '5:00'."""
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"


def warning_notice(seconds_remaining: int) -> str:
    return (
        f"Your session will expire in {format_countdown(seconds_remaining)} due to inactivity. "
        "Move the mouse, press a key, or choose 'Stay logged in' to continue."
    )

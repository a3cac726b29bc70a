from __future__ import annotations

"""
Device fingerprint: a small set of environment attributes recorded at login
and compared on later checks. Only user_agent, platform and time_zone are
binding; the rest is informational.
"""

import hashlib
import locale
import logging
import os
import platform as _platform
import shutil
import sys
import time
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


RENDERING_SIGNATURE_LENGTH = 50


class DeviceFingerprint(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    user_agent: str = Field(default="", validation_alias=AliasChoices("user_agent", "userAgent"))
    platform: str = ""
    time_zone: str = Field(default="", validation_alias=AliasChoices("time_zone", "timezone", "timeZone"))
    screen_resolution: str = Field(default="", validation_alias=AliasChoices("screen_resolution", "screenResolution"))
    language_tag: str = Field(default="", validation_alias=AliasChoices("language_tag", "language", "languageTag"))
    rendering_signature: str = Field(
        default="",
        validation_alias=AliasChoices("rendering_signature", "canvasFingerprint", "renderingSignature"),
    )


FIELDS = (
    "user_agent",
    "platform",
    "time_zone",
    "screen_resolution",
    "language_tag",
    "rendering_signature",
)
BINDING_FIELDS = ("user_agent", "platform", "time_zone")


class EnvironmentProbe(Protocol):
    def user_agent(self) -> str: ...
    def platform(self) -> str: ...
    def time_zone(self) -> str: ...
    def screen_resolution(self) -> str: ...
    def language_tag(self) -> str: ...
    def rendering_signature(self) -> str: ...


class LocalEnvironmentProbe:
    """Reads attributes of the running process's environment."""

    def __init__(self, *, client_name: str = "civicportal", client_version: str = "0.1.0"):
        self.client_name = client_name
        self.client_version = client_version

    def user_agent(self) -> str:
        impl = _platform.python_implementation()
        return f"{self.client_name}/{self.client_version} ({_platform.system()} {_platform.release()}) {impl}/{_platform.python_version()}"

    def platform(self) -> str:
        return sys.platform

    def time_zone(self) -> str:
        tz = os.environ.get("TZ")
        if tz:
            return tz
        offset_min = -(time.altzone if time.localtime().tm_isdst > 0 else time.timezone) // 60
        sign = "-" if offset_min < 0 else "+"
        hours, minutes = divmod(abs(offset_min), 60)
        return f"UTC{sign}{hours:02d}:{minutes:02d}"

    def screen_resolution(self) -> str:
        size = shutil.get_terminal_size(fallback=(0, 0))
        return f"{size.columns}x{size.lines}"

    def language_tag(self) -> str:
        lang, _enc = locale.getlocale()
        return (lang or "").replace("_", "-")

    def rendering_signature(self) -> str:
        h = hashlib.sha256()
        h.update(_platform.platform().encode("utf-8"))
        h.update(_platform.machine().encode("utf-8"))
        h.update(sys.version.encode("utf-8"))
        h.update((sys.getfilesystemencoding() or "").encode("utf-8"))
        return h.hexdigest()[:RENDERING_SIGNATURE_LENGTH]


class ClientEnvironmentProbe:
    """Attributes reported by a remote client (browser-style keys accepted)."""

    def __init__(self, attributes: Mapping[str, Any]):
        self._fp = DeviceFingerprint.model_validate(dict(attributes))

    def _read(self, field: str) -> str:
        return getattr(self._fp, field)

    def user_agent(self) -> str:
        return self._read("user_agent")

    def platform(self) -> str:
        return self._read("platform")

    def time_zone(self) -> str:
        return self._read("time_zone")

    def screen_resolution(self) -> str:
        return self._read("screen_resolution")

    def language_tag(self) -> str:
        return self._read("language_tag")

    def rendering_signature(self) -> str:
        return self._read("rendering_signature")[:RENDERING_SIGNATURE_LENGTH]


class FingerprintGenerator:
    def __init__(self, probe: Optional[EnvironmentProbe] = None, *, logger=None):
        self.probe = probe or LocalEnvironmentProbe()
        self.logger = logger or logging.getLogger("civicportal.fingerprint")

    def generate(self) -> DeviceFingerprint:
        values: Dict[str, str] = {}
        for name in FIELDS:
            try:
                reader: Callable[[], Any] = getattr(self.probe, name)
                v = reader()
                values[name] = "" if v is None else str(v)
            except Exception as e:  # noqa: BLE001
                self.logger.debug("Fingerprint attribute %s unavailable: %s", name, e)
                values[name] = ""
        return DeviceFingerprint(**values)


def compare(a: Optional[DeviceFingerprint], b: Optional[DeviceFingerprint]) -> bool:
    if a is None or b is None:
        return False
    return all(getattr(a, f) == getattr(b, f) for f in BINDING_FIELDS)

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from civicportal.core.events.bus import EventBusConfig


class SessionTimings(BaseModel):
    """
    Session governance timings, in seconds.

    Production uses DEFAULT_TIMINGS; these values are deliberately absent from
    the config files and the environment. Tests build their own instance.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    inactivity_timeout_seconds: float = Field(default=30 * 60, gt=0)
    warning_lead_seconds: float = Field(default=5 * 60, gt=0)
    validation_interval_seconds: float = Field(default=5 * 60, gt=0)
    max_session_duration_seconds: float = Field(default=24 * 60 * 60, gt=0)
    countdown_tick_seconds: float = Field(default=1, gt=0)

    @model_validator(mode="after")
    def _warning_before_expiry(self) -> "SessionTimings":
        if self.warning_lead_seconds >= self.inactivity_timeout_seconds:
            raise ValueError("warning_lead_seconds must be shorter than inactivity_timeout_seconds")
        return self

    @property
    def warning_after_seconds(self) -> float:
        return self.inactivity_timeout_seconds - self.warning_lead_seconds


DEFAULT_TIMINGS = SessionTimings()


class AppFileConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    config_version: int = Field(default=1, ge=1)
    client_name: str = "civicportal"
    client_version: str = "0.1.0"


class IdentityConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    token_url: str = "https://securetoken.googleapis.com/v1/token"
    revoke_url: Optional[str] = None
    profiles_url: str = "http://127.0.0.1:8080/users"
    api_key_env: str = "PORTAL_API_KEY"
    refresh_token_env: str = "PORTAL_REFRESH_TOKEN"
    request_timeout_seconds: float = Field(default=10.0, gt=0, le=120)


class StoreConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    namespace: str = Field(default="portal.session.", min_length=1)
    max_bytes: int = Field(default=65536, ge=256)


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    log_dir: str = "logs"
    level: str = "INFO"
    events_path: str = "logs/events.jsonl"
    security_path: str = "logs/security.jsonl"


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    app: AppFileConfig
    identity: IdentityConfig
    events: EventBusConfig
    store: StoreConfig
    logging: LoggingConfig

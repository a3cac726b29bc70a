from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["citizen", "worker", "admin"]


class Principal(BaseModel):
    """The signed-in identity as reported by the identity authority."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    principal_id: str = Field(min_length=1)
    email: Optional[str] = None
    display_name: Optional[str] = None


class LoginDevice(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    user_agent: str = Field(default="", alias="userAgent")
    time_zone: str = Field(default="", alias="timezone")


class UserProfile(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    principal_id: str = Field(alias="uid")
    role: Role = "citizen"
    name: str = ""
    email: Optional[str] = None
    last_login: Optional[datetime] = Field(default=None, alias="lastLogin")
    last_login_device: Optional[LoginDevice] = Field(default=None, alias="lastLoginDevice")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")

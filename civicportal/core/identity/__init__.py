from __future__ import annotations

"""
Identity authority and profile store seams.

The session core only talks to these protocols; HTTP implementations live in
civicportal.core.identity.http.
"""

from civicportal.core.identity.interfaces import IdentityAuthority, PrincipalListener, ProfileStore
from civicportal.core.identity.models import LoginDevice, Principal, Role, UserProfile

__all__ = [
    "IdentityAuthority",
    "ProfileStore",
    "PrincipalListener",
    "Principal",
    "UserProfile",
    "LoginDevice",
    "Role",
]

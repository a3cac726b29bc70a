from __future__ import annotations

from typing import Callable, Optional, Protocol

from civicportal.core.identity.models import LoginDevice, Principal, UserProfile

PrincipalListener = Callable[[Optional[Principal]], None]


class IdentityAuthority(Protocol):
    def on_principal_changed(self, listener: PrincipalListener) -> Callable[[], None]: ...

    def current_principal(self) -> Optional[Principal]: ...

    def force_refresh(self) -> bool: ...

    def revoke(self) -> None: ...


class ProfileStore(Protocol):
    def fetch_profile(self, principal_id: str) -> Optional[UserProfile]: ...

    def record_login(self, principal_id: str, *, device: LoginDevice) -> None: ...

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import requests

from civicportal.core.errors import IdentityError, ProfileUnavailableError
from civicportal.core.identity.interfaces import PrincipalListener
from civicportal.core.identity.models import LoginDevice, Principal, UserProfile


class HttpIdentityAuthority:
    """
    Identity authority backed by a secure-token style refresh endpoint.

    Holds the refresh/id tokens in memory only. force_refresh() exchanges the
    refresh token for a fresh id token; a rejected or unreachable exchange
    raises IdentityError.
    """

    def __init__(
        self,
        *,
        token_url: str,
        api_key: str = "",
        revoke_url: Optional[str] = None,
        timeout_seconds: float = 10.0,
        logger=None,
    ):
        self.token_url = token_url
        self.api_key = api_key
        self.revoke_url = revoke_url
        self.timeout_seconds = float(timeout_seconds)
        self.logger = logger or logging.getLogger("civicportal.identity")
        self._lock = threading.Lock()
        self._listeners: List[PrincipalListener] = []
        self._principal: Optional[Principal] = None
        self._refresh_token: Optional[str] = None
        self._id_token: Optional[str] = None
        self._expires_at: float = 0.0

    def on_principal_changed(self, listener: PrincipalListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def current_principal(self) -> Optional[Principal]:
        with self._lock:
            return self._principal

    def id_token(self) -> Optional[str]:
        with self._lock:
            return self._id_token

    def sign_in_with_refresh_token(self, refresh_token: str) -> Principal:
        data = self._exchange(refresh_token)
        uid = str(data.get("user_id") or data.get("uid") or "")
        if not uid:
            raise IdentityError(error="missing_user_id")
        principal = Principal(principal_id=uid)
        with self._lock:
            self._store_tokens_locked(data, refresh_token)
            self._principal = principal
        self.logger.info("Signed in principal %s", principal.principal_id)
        self._notify(principal)
        return principal

    def force_refresh(self) -> bool:
        with self._lock:
            token = self._refresh_token
        if not token:
            return False
        data = self._exchange(token)
        with self._lock:
            if self._refresh_token != token:
                # revoked or replaced while the exchange was in flight
                return False
            self._store_tokens_locked(data, token)
        return True

    def revoke(self) -> None:
        with self._lock:
            token = self._refresh_token
            had_principal = self._principal is not None
            self._principal = None
            self._refresh_token = None
            self._id_token = None
            self._expires_at = 0.0
        if token and self.revoke_url:
            try:
                requests.post(self.revoke_url, json={"token": token}, params=self._params(), timeout=self.timeout_seconds)
            except Exception as e:  # noqa: BLE001
                self.logger.warning("Credential revoke failed: %s", e)
        if had_principal:
            self._notify(None)

    def _params(self) -> Dict[str, str]:
        return {"key": self.api_key} if self.api_key else {}

    def _exchange(self, refresh_token: str) -> Dict[str, Any]:
        try:
            r = requests.post(
                self.token_url,
                params=self._params(),
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            raise IdentityError("Unable to reach the sign-in service.", error=str(e)) from e
        if r.status_code // 100 != 2:
            raise IdentityError(status=r.status_code)
        try:
            data = r.json()
        except ValueError as e:
            raise IdentityError(error="invalid_json") from e
        if not isinstance(data, dict) or not data.get("id_token"):
            raise IdentityError(error="missing_id_token")
        return data

    def _store_tokens_locked(self, data: Dict[str, Any], refresh_token: str) -> None:
        self._id_token = str(data["id_token"])
        self._refresh_token = str(data.get("refresh_token") or refresh_token)
        try:
            self._expires_at = time.time() + float(data.get("expires_in") or 0)
        except (TypeError, ValueError):
            self._expires_at = 0.0

    def _notify(self, principal: Optional[Principal]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for fn in listeners:
            try:
                fn(principal)
            except Exception:  # noqa: BLE001
                self.logger.exception("Principal listener failed")


class HttpProfileStore:
    """Profile documents at {base_url}/{principal_id}."""

    def __init__(
        self,
        *,
        base_url: str,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.time,
        logger=None,
    ):
        self.base_url = base_url
        self.token_provider = token_provider
        self.timeout_seconds = float(timeout_seconds)
        self.clock = clock
        self.logger = logger or logging.getLogger("civicportal.profiles")

    def _url(self, principal_id: str) -> str:
        return f"{self.base_url.rstrip('/')}/{principal_id}"

    def _headers(self) -> Dict[str, str]:
        token = self.token_provider() if self.token_provider else None
        return {"Authorization": f"Bearer {token}"} if token else {}

    def fetch_profile(self, principal_id: str) -> Optional[UserProfile]:
        try:
            r = requests.get(self._url(principal_id), headers=self._headers(), timeout=self.timeout_seconds)
        except requests.RequestException as e:
            raise ProfileUnavailableError(principal_id=principal_id, error=str(e)) from e
        if r.status_code == 404:
            return None
        if r.status_code // 100 != 2:
            raise ProfileUnavailableError(principal_id=principal_id, status=r.status_code)
        data = r.json()
        if not isinstance(data, dict):
            raise ProfileUnavailableError(principal_id=principal_id, error="not_object")
        data.setdefault("uid", principal_id)
        return UserProfile.model_validate(data)

    def record_login(self, principal_id: str, *, device: LoginDevice) -> None:
        body = {
            "lastLogin": datetime.fromtimestamp(float(self.clock()), tz=timezone.utc).isoformat(),
            "lastLoginDevice": device.model_dump(mode="json", by_alias=True),
        }
        r = requests.patch(self._url(principal_id), json=body, headers=self._headers(), timeout=self.timeout_seconds)
        r.raise_for_status()

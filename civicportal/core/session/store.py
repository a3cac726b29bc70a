from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, Iterator, MutableMapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from civicportal.core.errors import StorageError, StorageQuotaError


FINGERPRINT_KEY = "deviceFingerprint"
LOGIN_TIME_KEY = "loginTime"


class SessionStoreEntry(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    value: Any = None
    written_at: float = Field(alias="timestamp")

    def to_raw(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True), ensure_ascii=False)

    @classmethod
    def from_raw(cls, raw: str) -> "SessionStoreEntry":
        return cls.model_validate(json.loads(raw))


class TabScopedStorage(MutableMapping[str, str]):
    """
    String-to-string storage owned by one client session.

    Lives only in memory; discarded with the owning session object.
    """

    def __init__(self):
        self._data: Dict[str, str] = {}

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __setitem__(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError("TabScopedStorage only holds strings")
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._data))

    def __len__(self) -> int:
        return len(self._data)


class SessionStore:
    """
    Namespaced, age-bounded key/value store for session state.

    Writes never raise: serialisation and quota failures are logged and
    dropped. Expiry is lazy; an entry older than max_age_seconds is deleted
    the next time it is read.
    """

    def __init__(
        self,
        backend: Optional[MutableMapping[str, str]] = None,
        *,
        max_age_seconds: float = 24 * 60 * 60,
        namespace: str = "portal.session.",
        max_bytes: int = 65536,
        clock: Callable[[], float] = time.time,
        logger=None,
    ):
        self.backend: MutableMapping[str, str] = backend if backend is not None else TabScopedStorage()
        self.max_age_seconds = float(max_age_seconds)
        self.namespace = namespace
        self.max_bytes = int(max_bytes)
        self.clock = clock
        self.logger = logger or logging.getLogger("civicportal.store")

    def _k(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def set(self, key: str, value: Any) -> None:
        try:
            self._write(key, value)
        except StorageError as e:
            self.logger.warning("Session store write dropped for %s: %s %s", key, e.code, e.context.get("error", ""))

    def _write(self, key: str, value: Any) -> None:
        try:
            raw = SessionStoreEntry(value=value, timestamp=float(self.clock())).to_raw()
        except (TypeError, ValueError) as e:
            raise StorageError(key=key, error=str(e)) from e
        size = len(raw.encode("utf-8"))
        if size > self.max_bytes:
            raise StorageQuotaError(key=key, error=f"{size} > {self.max_bytes} bytes")
        try:
            self.backend[self._k(key)] = raw
        except Exception as e:  # noqa: BLE001
            raise StorageQuotaError(key=key, error=str(e)) from e

    def get(self, key: str) -> Any:
        k = self._k(key)
        try:
            raw = self.backend.get(k)
        except Exception as e:  # noqa: BLE001
            self.logger.warning("Session store read failed for %s: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            entry = SessionStoreEntry.from_raw(raw)
        except (ValueError, TypeError, ValidationError):
            self.logger.debug("Malformed session store entry %s", key)
            return None
        if float(self.clock()) - entry.written_at > self.max_age_seconds:
            self._delete(k)
            return None
        return entry.value

    def remove(self, key: str) -> None:
        self._delete(self._k(key))

    def clear(self) -> None:
        for k in [k for k in list(self.backend.keys()) if k.startswith(self.namespace)]:
            self._delete(k)

    def keys(self) -> list[str]:
        n = len(self.namespace)
        return [k[n:] for k in list(self.backend.keys()) if k.startswith(self.namespace)]

    def _delete(self, raw_key: str) -> None:
        try:
            self.backend.pop(raw_key, None)
        except Exception as e:  # noqa: BLE001
            self.logger.warning("Session store delete failed for %s: %s", raw_key, e)

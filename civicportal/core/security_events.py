from __future__ import annotations

import json
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from civicportal.core.events import redact


@dataclass(frozen=True)
class SecurityAuditLogger:
    """JSONL trail for session-ending security decisions (device mismatch, invalidation)."""

    path: str = os.path.join("logs", "security.jsonl")
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def log(
        self,
        *,
        trace_id: str,
        severity: str,
        event: str,
        principal_id: Optional[str],
        outcome: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "trace_id": trace_id,
            "severity": severity,
            "event": event,
            "principal_id": principal_id,
            "outcome": outcome,
            "details": redact(details or {}),
        }
        line = json.dumps(payload, ensure_ascii=False)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

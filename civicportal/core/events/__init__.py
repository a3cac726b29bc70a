"""
Session event plumbing: JSONL audit logger, event model and the in-process bus.
"""

from civicportal.core.events.trail import EventLogger, redact
from civicportal.core.events.models import BaseEvent, EventSeverity, SourceSubsystem
from civicportal.core.events.bus import EventBus, EventBusConfig, OverflowPolicy

__all__ = [
    "EventLogger",
    "redact",
    "BaseEvent",
    "EventSeverity",
    "SourceSubsystem",
    "EventBus",
    "EventBusConfig",
    "OverflowPolicy",
]

"""Directory change events and their delivery."""

from dirsync.events.bus import EventHandler, EventsService, InMemoryEventBus
from dirsync.events.models import DirectoryEvent, EventParams, EventTopic

__all__ = [
    "DirectoryEvent",
    "EventHandler",
    "EventParams",
    "EventTopic",
    "EventsService",
    "InMemoryEventBus",
]

"""
Event sourcing storage for aiframe.

Streams are append-only sequences of events numbered 0, 1, 2, ... with an
optional snapshot per stream. Replaying a stream means folding the
snapshot state with the events recorded after it.

Invariants:
    - Versions per stream are contiguous and never reused
    - Concurrent appends to one stream never interleave or duplicate versions
"""

from .store import Event, EventMetadata, EventStore, NewEvent, Snapshot

__all__ = [
    "EventStore",
    "NewEvent",
    "Event",
    "EventMetadata",
    "Snapshot",
]

"""
Event store for aiframe.

An append-only log of events grouped into streams, plus one snapshot per
stream to bound replay cost. Works on either Database backend.

Table schema:
    events:
        - id surrogate key
        - stream_id TEXT
        - version INTEGER (0, 1, 2, ... per stream)
        - type TEXT
        - data JSON
        - metadata JSON ({"version", "timestamp", "user_id", ...})
        - created_at TIMESTAMP
        - UNIQUE (stream_id, version)

    snapshots:
        - stream_id TEXT PRIMARY KEY
        - version INTEGER
        - state JSON
        - created_at TIMESTAMP

Invariants:
    - Versions per stream are contiguous from 0 with no gaps
    - The head version is read and the batch inserted in one transaction
      (SERIALIZABLE on PostgreSQL, the single writer lock on SQLite)
    - An append is all-or-nothing
    - Snapshots never modify the event log

How to change safely:
    - Never renumber or delete events; snapshots refer to their versions
    - Concurrent appends surface as ConcurrencyError; retry at the caller
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence

from ..adapters.base import Database, decode_json, encode_json, to_datetime
from ..config import validate_identifier
from ..errors import ConcurrencyError, ConstraintError

logger = logging.getLogger(__name__)

_RESERVED_METADATA = ("version", "timestamp", "user_id")


@dataclass
class NewEvent:
    """An event to append; the store assigns version and timestamp.

    Attributes:
        type: Event type name
        data: Opaque JSON payload
        user_id: Acting user, if any
        metadata: Additional JSON metadata
    """

    type: str
    data: Any
    user_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EventMetadata:
    """Metadata stamped on every stored event.

    Attributes:
        version: Position in the stream, starting at 0
        timestamp: Append time (Unix ms)
        user_id: Acting user, if any
        extra: Caller-supplied metadata
    """

    version: int
    timestamp: int
    user_id: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data["version"] = self.version
        data["timestamp"] = self.timestamp
        if self.user_id is not None:
            data["user_id"] = self.user_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventMetadata:
        return cls(
            version=data["version"],
            timestamp=data["timestamp"],
            user_id=data.get("user_id"),
            extra={k: v for k, v in data.items() if k not in _RESERVED_METADATA},
        )


@dataclass(frozen=True)
class Event:
    """A stored event."""

    stream_id: str
    type: str
    data: Any
    metadata: EventMetadata

    @property
    def version(self) -> int:
        return self.metadata.version


@dataclass
class Snapshot:
    """Materialized stream state at a known event version.

    Attributes:
        version: Last event version folded into ``state``
        state: Opaque JSON state
        timestamp: When the snapshot was stored (set by the store)
        stream_id: Stream the snapshot belongs to (set by the store)
    """

    version: int
    state: Any
    timestamp: Optional[datetime] = None
    stream_id: Optional[str] = None


class EventStore:
    """Append-only, per-stream versioned event log with snapshots.

    Attributes:
        database: Backing engine
        events_ref: Qualified events table
        snapshots_ref: Qualified snapshots table

    Example:
        >>> store = EventStore(SqliteDatabase("events.db"), owns_database=True)
        >>> await store.append("order-1", [NewEvent("created", {"total": 10})])
        >>> [e.version for e in await store.read("order-1")]
        [0]
        >>> await store.close()
    """

    def __init__(
        self,
        database: Database,
        schema: str = "public",
        events_table: str = "events",
        snapshots_table: str = "snapshots",
        owns_database: bool = False,
    ) -> None:
        validate_identifier(schema, "schema")
        validate_identifier(events_table, "events_table")
        validate_identifier(snapshots_table, "snapshots_table")
        self.database = database
        self.schema = schema
        self.events_ref = database.dialect.qualify(schema, events_table)
        self.snapshots_ref = database.dialect.qualify(schema, snapshots_table)
        self.owns_database = owns_database
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create the events and snapshots tables if needed."""
        if self._initialized:
            return
        async with self._init_lock:
            if not self._initialized:
                await self._create_tables()

    async def _create_tables(self) -> None:
        dialect = self.database.dialect
        statements = [
            *dialect.create_schema(self.schema),
            f"""
            CREATE TABLE IF NOT EXISTS {self.events_ref} (
                id {dialect.autoincrement_key},
                stream_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                type TEXT NOT NULL,
                data {dialect.json_type} NOT NULL,
                metadata {dialect.json_type} NOT NULL,
                created_at {dialect.timestamp_type} NOT NULL DEFAULT {dialect.now},
                UNIQUE (stream_id, version)
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS {self.snapshots_ref} (
                stream_id TEXT PRIMARY KEY,
                version INTEGER NOT NULL,
                state {dialect.json_type} NOT NULL,
                created_at {dialect.timestamp_type} NOT NULL DEFAULT {dialect.now}
            )
            """,
        ]
        await self.database.connect()
        async with self.database.transaction() as conn:
            for statement in statements:
                await conn.execute(statement)

        self._initialized = True
        logger.info("Event store ready", extra={"events_table": self.events_ref})

    @staticmethod
    def _validate_stream_id(stream_id: str) -> None:
        if not isinstance(stream_id, str) or not stream_id:
            raise ValueError("stream_id must be a non-empty string")

    async def append(
        self,
        stream_id: str,
        events: Sequence[NewEvent],
        *,
        expected_version: Optional[int] = None,
    ) -> list[Event]:
        """Append events to a stream atomically.

        Each event gets the next consecutive version in list order.

        Args:
            stream_id: Stream identifier
            events: Events to append
            expected_version: Current head the caller expects (-1 for a new
                stream); None skips the check

        Returns:
            The stored events with their metadata

        Raises:
            ValueError: If the stream id, an event type or a payload is invalid
            ConcurrencyError: If expected_version does not match, or a
                concurrent append claimed the same versions
        """
        self._validate_stream_id(stream_id)
        if not events:
            return []

        timestamp = int(time.time() * 1000)
        prepared: list[tuple[NewEvent, str]] = []
        for event in events:
            if not isinstance(event.type, str) or not event.type:
                raise ValueError("Event type must be a non-empty string")
            prepared.append((event, encode_json(event.data)))

        await self.initialize()

        stored: list[Event] = []
        try:
            async with self.database.transaction() as conn:
                head = await conn.fetchval(
                    f"SELECT COALESCE(MAX(version), -1) FROM {self.events_ref} WHERE stream_id = $1",
                    stream_id,
                )
                head = int(head)
                if expected_version is not None and head != expected_version:
                    raise ConcurrencyError(
                        f"Stream {stream_id} is at version {head}, expected {expected_version}",
                        stream_id=stream_id,
                        expected_version=expected_version,
                        actual_version=head,
                    )

                for offset, (event, data_json) in enumerate(prepared):
                    metadata = EventMetadata(
                        version=head + 1 + offset,
                        timestamp=timestamp,
                        user_id=event.user_id,
                        extra={
                            k: v for k, v in event.metadata.items() if k not in _RESERVED_METADATA
                        },
                    )
                    await conn.execute(
                        f"""
                        INSERT INTO {self.events_ref} (stream_id, version, type, data, metadata)
                        VALUES ($1, $2, $3, $4, $5)
                        """,
                        stream_id,
                        metadata.version,
                        event.type,
                        data_json,
                        encode_json(metadata.to_dict()),
                    )
                    stored.append(
                        Event(stream_id=stream_id, type=event.type, data=event.data, metadata=metadata)
                    )
        except ConcurrencyError:
            raise
        except ConstraintError as e:
            # Unique (stream_id, version) violation: another appender won the race.
            raise ConcurrencyError(
                f"Concurrent append to stream {stream_id}: {e.message}",
                stream_id=stream_id,
                expected_version=expected_version,
            ) from e

        logger.debug(
            "Appended events",
            extra={
                "stream_id": stream_id,
                "count": len(stored),
                "from_version": stored[0].version,
                "to_version": stored[-1].version,
            },
        )
        return stored

    async def read(self, stream_id: str, from_version: int = 0) -> list[Event]:
        """Return events with version >= from_version, ascending."""
        self._validate_stream_id(stream_id)
        await self.initialize()
        async with self.database.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT stream_id, type, data, metadata
                FROM {self.events_ref}
                WHERE stream_id = $1 AND version >= $2
                ORDER BY version ASC
                """,
                stream_id,
                max(int(from_version), 0),
            )
        return [
            Event(
                stream_id=row[0],
                type=row[1],
                data=decode_json(row[2]),
                metadata=EventMetadata.from_dict(decode_json(row[3])),
            )
            for row in rows
        ]

    async def current_version(self, stream_id: str) -> int:
        """Return the head version of a stream, or -1 if it has no events."""
        self._validate_stream_id(stream_id)
        await self.initialize()
        async with self.database.acquire() as conn:
            head = await conn.fetchval(
                f"SELECT COALESCE(MAX(version), -1) FROM {self.events_ref} WHERE stream_id = $1",
                stream_id,
            )
        return int(head)

    async def get_snapshot(self, stream_id: str) -> Optional[Snapshot]:
        """Return the stream's snapshot, or None."""
        self._validate_stream_id(stream_id)
        await self.initialize()
        async with self.database.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT version, state, created_at FROM {self.snapshots_ref} WHERE stream_id = $1",
                stream_id,
            )
        if row is None:
            return None
        return Snapshot(
            version=int(row[0]),
            state=decode_json(row[1]),
            timestamp=to_datetime(row[2]),
            stream_id=stream_id,
        )

    async def save_snapshot(self, stream_id: str, snapshot: Snapshot) -> None:
        """Store (replace) the stream's snapshot.

        Raises:
            ValueError: If the state is not JSON-serializable
            ConstraintError: If the version is negative or beyond the stream head
        """
        self._validate_stream_id(stream_id)
        if isinstance(snapshot.version, bool) or not isinstance(snapshot.version, int):
            raise ValueError("Snapshot version must be an integer")
        if snapshot.version < 0:
            raise ConstraintError(
                f"Snapshot version must be >= 0, got {snapshot.version}", constraint="version"
            )
        state_json = encode_json(snapshot.state)

        head = await self.current_version(stream_id)
        if snapshot.version > head:
            raise ConstraintError(
                f"Snapshot version {snapshot.version} is beyond stream {stream_id} head {head}",
                constraint="version",
            )

        async with self.database.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {self.snapshots_ref} (stream_id, version, state)
                VALUES ($1, $2, $3)
                ON CONFLICT (stream_id)
                DO UPDATE SET version = excluded.version,
                              state = excluded.state,
                              created_at = {self.database.dialect.now}
                """,
                stream_id,
                snapshot.version,
                state_json,
            )
        logger.debug(
            "Saved snapshot", extra={"stream_id": stream_id, "version": snapshot.version}
        )

    async def load_stream(self, stream_id: str) -> tuple[Optional[Snapshot], list[Event]]:
        """Return the snapshot and the events recorded after it, for replay."""
        snapshot = await self.get_snapshot(stream_id)
        from_version = snapshot.version + 1 if snapshot is not None else 0
        return snapshot, await self.read(stream_id, from_version)

    async def close(self) -> None:
        """Close the database if this store owns it."""
        if self.owns_database:
            await self.database.close()
        self._initialized = False

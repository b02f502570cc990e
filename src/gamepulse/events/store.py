"""Append-only event store.

Ingestion appends validated events; aggregators read unprocessed batches and
flip the processing metadata. Payload and type are never updated after the
insert, and nothing here deletes events (retention is the partition
manager's job).
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gamepulse.config import Settings
from gamepulse.db.models import Event
from gamepulse.errors import PartitionMissingError, ValidationError
from gamepulse.events.allowlist import HOLDING_EVENT_TYPE, EventTypeRegistry, get_registry
from gamepulse.events.dedup import DeduplicationFilter
from gamepulse.events.partitions import partition_for, require_partition
from gamepulse.events.schemas import EventIn, parse_event
from gamepulse.week_utils import ensure_utc, utcnow, week_start

logger = structlog.get_logger()

MAX_ERROR_LENGTH = 2000
# Positive partition lookups are cached per process for this long.
PARTITION_CACHE_SECONDS = 300.0


@dataclass
class BatchAppendResult:
    stored: list[Event] = field(default_factory=list)
    duplicates: int = 0
    rejected: list[tuple[int, str]] = field(default_factory=list)


class EventStore:
    """Ingestion side of the event store."""

    def __init__(
        self,
        registry: EventTypeRegistry,
        unknown_event_policy: str = "reject",
        dedup: DeduplicationFilter | None = None,
    ) -> None:
        if unknown_event_policy not in ("reject", "hold"):
            msg = f"unknown_event_policy must be 'reject' or 'hold', got {unknown_event_policy!r}"
            raise ValueError(msg)
        self.registry = registry
        self.unknown_event_policy = unknown_event_policy
        self.dedup = dedup
        self._partitions_seen: dict[str, float] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> EventStore:
        return cls(
            registry=get_registry(settings.allowlist_path),
            unknown_event_policy=settings.unknown_event_policy,
            dedup=DeduplicationFilter(settings.dedup_window_seconds, settings.dedup_max_entries),
        )

    def _resolve_type(self, event_type: str, payload: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        if self.registry.is_allowed(event_type):
            return event_type, payload
        if self.unknown_event_policy == "hold":
            return HOLDING_EVENT_TYPE, {**payload, "original_event_type": event_type}
        msg = f"event_type {event_type!r} is not in allow-list v{self.registry.version}"
        raise ValidationError(msg)

    async def _check_partition(self, db: AsyncSession, received_at: datetime, now: datetime) -> None:
        part = partition_for(received_at)
        clock = time.monotonic()
        expires = self._partitions_seen.get(part.name)
        if expires is not None and expires > clock:
            return
        if not await require_partition(db, received_at):
            logger.error("event_partition_missing", partition=part.name, received_at=received_at.isoformat())
            raise PartitionMissingError(received_at)
        # Past weeks may be retired at any time; only current and future weeks are cached.
        if part.start >= week_start(now):
            self._partitions_seen[part.name] = clock + PARTITION_CACHE_SECONDS

    def _forget(self, keys: Iterable[tuple[str, str]]) -> None:
        if self.dedup is None:
            return
        for user_id, client_event_id in keys:
            self.dedup.forget(user_id, client_event_id)

    async def _build(
        self,
        db: AsyncSession,
        raw: dict[str, Any] | EventIn,
        now: datetime,
        dedup_keys: list[tuple[str, str]],
    ) -> Event | None:
        """Validated, unsaved event, or None for a client retransmit.

        Dedup keys recorded here are appended to ``dedup_keys`` so the caller
        can release them if its transaction does not commit.
        """
        parsed = parse_event(raw)
        event_type, payload = self._resolve_type(parsed.event_type, dict(parsed.payload))
        received_at = ensure_utc(parsed.received_at or now)

        client_event_id = payload.get("client_event_id")
        if self.dedup is not None and isinstance(client_event_id, str) and client_event_id:
            if self.dedup.is_duplicate(parsed.user_id, client_event_id):
                logger.debug("event_duplicate_dropped", user_id=parsed.user_id, client_event_id=client_event_id)
                return None
            dedup_keys.append((parsed.user_id, client_event_id))

        await self._check_partition(db, received_at, now)
        return Event(
            id=str(uuid.uuid4()),
            event_type=event_type,
            user_id=parsed.user_id,
            payload=payload,
            received_at=received_at,
            processed_at=None,
            processing_attempts=0,
        )

    async def append(
        self,
        db: AsyncSession,
        raw: dict[str, Any] | EventIn,
        now: datetime | None = None,
    ) -> Event | None:
        """Validate and store one event.

        Returns the stored row, or None when a client retransmit was dropped.
        Raises ValidationError / SchemaError for bad events and
        PartitionMissingError when no partition is ready for the timestamp.
        """
        dedup_keys: list[tuple[str, str]] = []
        try:
            event = await self._build(db, raw, ensure_utc(now or utcnow()), dedup_keys)
            if event is None:
                return None
            db.add(event)
            await db.commit()
        except Exception:
            self._forget(dedup_keys)
            await db.rollback()
            raise
        return event

    async def append_batch(
        self,
        db: AsyncSession,
        raws: Sequence[dict[str, Any] | EventIn],
        now: datetime | None = None,
    ) -> BatchAppendResult:
        """Store a batch in one transaction.

        Invalid events are rejected individually and reported by index; a
        missing partition fails the whole batch, and none of its events count
        as seen for retransmit dedup.
        """
        now = ensure_utc(now or utcnow())
        result = BatchAppendResult()
        dedup_keys: list[tuple[str, str]] = []
        try:
            for idx, raw in enumerate(raws):
                try:
                    event = await self._build(db, raw, now, dedup_keys)
                except ValidationError as exc:
                    result.rejected.append((idx, str(exc)))
                    continue
                if event is None:
                    result.duplicates += 1
                    continue
                db.add(event)
                result.stored.append(event)
            await db.commit()
        except Exception:
            self._forget(dedup_keys)
            await db.rollback()
            raise
        if result.rejected:
            logger.warning("event_batch_rejections", rejected=len(result.rejected), stored=len(result.stored))
        return result


# ---------------------------------------------------------------------------
# Processing side
# ---------------------------------------------------------------------------


async def fetch_unprocessed(
    db: AsyncSession,
    event_type: str | Iterable[str],
    limit: int,
    max_attempts: int = 5,
) -> list[Event]:
    """Oldest unprocessed events of the given type(s), bounded by ``limit``.

    Events that exhausted ``max_attempts`` are left for ``list_failed``.
    On PostgreSQL the rows are locked with SKIP LOCKED so a concurrent
    claimer gets a disjoint batch.
    """
    types = [event_type] if isinstance(event_type, str) else list(event_type)
    stmt = (
        select(Event)
        .where(
            Event.event_type.in_(types),
            Event.processed_at.is_(None),
            Event.processing_attempts < max_attempts,
        )
        .order_by(Event.received_at, Event.id)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def mark_processed(db: AsyncSession, ids: Sequence[str], now: datetime | None = None) -> int:
    """Set processed_at on still-unprocessed events. Does not commit."""
    if not ids:
        return 0
    result = await db.execute(
        update(Event)
        .where(Event.id.in_(list(ids)), Event.processed_at.is_(None))
        .values(processed_at=ensure_utc(now or utcnow()))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def mark_failed(db: AsyncSession, event_id: str, error: str) -> None:
    """Record a failed processing attempt. The event stays in place. Does not commit."""
    await db.execute(
        update(Event)
        .where(Event.id == event_id)
        .values(
            processing_attempts=Event.processing_attempts + 1,
            processing_error=error[:MAX_ERROR_LENGTH],
        )
        .execution_options(synchronize_session=False)
    )


async def list_failed(db: AsyncSession, max_attempts: int = 5, limit: int = 100) -> list[Event]:
    """Events that reached ``max_attempts`` without being processed."""
    result = await db.execute(
        select(Event)
        .where(Event.processed_at.is_(None), Event.processing_attempts >= max_attempts)
        .order_by(Event.received_at, Event.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def retry_failed(db: AsyncSession, ids: Sequence[str]) -> int:
    """Reset attempts on failed events so the next cycle picks them up again."""
    if not ids:
        return 0
    result = await db.execute(
        update(Event)
        .where(Event.id.in_(list(ids)), Event.processed_at.is_(None))
        .values(processing_attempts=0, processing_error=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0

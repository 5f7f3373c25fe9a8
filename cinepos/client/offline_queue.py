"""Durable client-side queue of orders taken while offline.

Entries live in a local SQLite file (one row per order) and are committed
before ``enqueue`` returns, so a crash or restart loses nothing. Draining is
strictly FIFO: a retryable failure (5xx, unreachable) stops the drain and
schedules a backoff so later entries never overtake earlier ones; a 4xx marks
the entry failed for the user to resolve and the drain moves on. The server
deduplicates by idempotency key, so replays are safe.
"""
import asyncio
import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import JSON, DateTime, Integer, String, Text, create_engine, delete, select
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from cinepos.client.api import ApiClient, Unreachable
from cinepos.client.config import ClientSettings
from cinepos.errors import OrderError, PaymentMethodNotAllowed, ValidationFailed

log = logging.getLogger(__name__)

QUEUED, SYNCING, SYNCED, FAILED = "queued", "syncing", "synced", "failed"
OFFLINE_SOURCE = "offline-pos"
CASH_METHODS = {"cash", "cod"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _utc(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class QueueBase(DeclarativeBase):
    pass


class QueueEntry(QueueBase):
    __tablename__ = "queue_entry"
    position: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)  # FIFO order
    queue_id: Mapped[str] = mapped_column(String(36), unique=True)
    theater_id: Mapped[str] = mapped_column(String(36), index=True)
    idempotency_key: Mapped[str] = mapped_column(String(80), unique=True)
    payload: Mapped[dict] = mapped_column(JSON)
    enqueued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(10), default=QUEUED)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def as_dict(self) -> dict:
        return {
            "queueId": self.queue_id,
            "theaterId": self.theater_id,
            "idempotencyKey": self.idempotency_key,
            "orderPayload": self.payload,
            "enqueuedAt": _utc(self.enqueued_at).isoformat(),
            "attempts": self.attempts,
            "lastError": self.last_error,
            "status": self.status,
        }


@dataclass
class DrainResult:
    synced: list[str] = field(default_factory=list)       # idempotency keys, in replay order
    failed: list[str] = field(default_factory=list)
    responses: dict[str, dict] = field(default_factory=dict)
    retry_in: float | None = None                          # seconds until the stalled head may retry


class OfflineQueue:
    def __init__(
        self,
        api: ApiClient,
        settings: ClientSettings | None = None,
        db_path: str | None = None,
        rng: Callable[[], float] = random.random,
    ):
        self.api = api
        self.settings = settings or api.settings
        path = db_path or self.settings.QUEUE_DB_PATH
        url = "sqlite://" if path == ":memory:" else f"sqlite:///{path}"
        self._engine = create_engine(url)
        QueueBase.metadata.create_all(self._engine)
        self._session = sessionmaker(bind=self._engine, expire_on_commit=False)
        self._rng = rng
        self._drain_lock = asyncio.Lock()

    def close(self):
        self._engine.dispose()

    # --- writes -----------------------------------------------------------

    def enqueue(self, payload: dict) -> dict:
        """Persist an order taken offline. Cash only; anything else never reaches the server."""
        method = str(payload.get("paymentMethod") or "").lower()
        if method not in CASH_METHODS:
            raise PaymentMethodNotAllowed("offline orders must be paid in cash", method=method or None)
        theater_id = payload.get("theaterId")
        if not theater_id:
            raise ValidationFailed("theaterId is required")
        if not payload.get("items"):
            raise ValidationFailed("items must not be empty")

        body = dict(payload)
        body.setdefault("source", OFFLINE_SOURCE)
        body["idempotencyKey"] = body.get("idempotencyKey") or str(uuid.uuid4())
        entry = QueueEntry(
            queue_id=str(uuid.uuid4()),
            theater_id=theater_id,
            idempotency_key=body["idempotencyKey"],
            payload=body,
            enqueued_at=_now(),
            attempts=0,
            status=QUEUED,
        )
        with self._session() as db:
            db.add(entry)
            db.commit()
        log.info("queued offline order %s (key %s)", entry.queue_id, entry.idempotency_key)
        return entry.as_dict()

    def retry(self, queue_id: str) -> dict:
        """Put a failed entry back at its original position."""
        with self._session() as db:
            e = self._get(db, queue_id)
            e.status, e.next_attempt_at = QUEUED, None
            db.commit()
            return e.as_dict()

    def discard(self, queue_id: str):
        with self._session() as db:
            db.execute(delete(QueueEntry).where(QueueEntry.queue_id == queue_id))
            db.commit()

    # --- reads ------------------------------------------------------------

    def _get(self, db: Session, queue_id: str) -> QueueEntry:
        e = db.scalar(select(QueueEntry).where(QueueEntry.queue_id == queue_id))
        if e is None:
            raise KeyError(queue_id)
        return e

    def entries(self, theater_id: str | None = None, status: str | None = None) -> list[dict]:
        q = select(QueueEntry).order_by(QueueEntry.position)
        if theater_id:
            q = q.where(QueueEntry.theater_id == theater_id)
        if status:
            q = q.where(QueueEntry.status == status)
        with self._session() as db:
            return [e.as_dict() for e in db.scalars(q).all()]

    def __len__(self) -> int:
        return len(self.entries(status=QUEUED))

    # --- drain ------------------------------------------------------------

    def backoff(self, attempts: int) -> float:
        """Seconds before retry number ``attempts`` (1-based): 2, 4, 8 ... capped, +-jitter."""
        s = self.settings
        base = min(s.RETRY_CAP_SEC, s.RETRY_INITIAL_SEC * (s.RETRY_FACTOR ** max(attempts - 1, 0)))
        return base * (1 + s.RETRY_JITTER * (2 * self._rng() - 1))

    async def drain(self, now: datetime | None = None) -> DrainResult:
        """Replay queued entries oldest first until the queue is empty or the head must wait."""
        async with self._drain_lock:
            return await self._drain(now)

    async def _drain(self, now: datetime | None) -> DrainResult:
        result = DrainResult()
        with self._session() as db:
            # entries stuck in "syncing" after a crash are simply queued again
            for e in db.scalars(select(QueueEntry).where(QueueEntry.status == SYNCING)).all():
                e.status = QUEUED
            db.commit()

            heads = db.scalars(
                select(QueueEntry).where(QueueEntry.status == QUEUED).order_by(QueueEntry.position)
            ).all()
            for e in heads:
                at = now or _now()
                due = _utc(e.next_attempt_at)
                if due and due > at:
                    result.retry_in = (due - at).total_seconds()
                    break
                e.status = SYNCING
                db.commit()
                try:
                    body = await self.api.accept_order(e.payload)
                except Unreachable as err:
                    self._schedule_retry(db, e, str(err), at, result)
                    break
                except OrderError as err:
                    status = getattr(err, "http_status", err.status_code)
                    payload = getattr(err, "payload", None) or {}
                    if payload.get("idempotencyKey") == e.idempotency_key:
                        self._synced(db, e, payload, result)
                    elif 400 <= status < 500:
                        e.status, e.last_error = FAILED, f"{err.kind}: {err.message}"
                        e.attempts += 1
                        db.commit()
                        result.failed.append(e.idempotency_key)
                        log.warning("offline order %s rejected: %s", e.idempotency_key, e.last_error)
                    else:
                        self._schedule_retry(db, e, f"{err.kind}: {err.message}", at, result)
                        break
                else:
                    self._synced(db, e, body, result)
        if result.synced or result.failed:
            log.info("queue drain: %d synced, %d failed", len(result.synced), len(result.failed))
        return result

    def _synced(self, db: Session, e: QueueEntry, body: dict, result: DrainResult):
        result.synced.append(e.idempotency_key)
        result.responses[e.idempotency_key] = body
        # acknowledged by the server; nothing left to keep
        db.delete(e)
        db.commit()

    def _schedule_retry(self, db: Session, e: QueueEntry, error: str, at: datetime, result: DrainResult):
        e.attempts += 1
        delay = self.backoff(e.attempts)
        e.status, e.last_error = QUEUED, error
        e.next_attempt_at = at + timedelta(seconds=delay)
        db.commit()
        result.retry_in = delay
        log.info("offline order %s will retry in %.1fs (%s)", e.idempotency_key, delay, error)


class ConnectivityWatcher:
    """Polls ``/healthz``; drains the queue on every offline -> online edge and while retries are due."""

    def __init__(self, api: ApiClient, queue: OfflineQueue, settings: ClientSettings | None = None):
        self.api = api
        self.queue = queue
        self.settings = settings or api.settings
        self.online = False
        self.listeners: list[Callable[[bool], None]] = []

    async def check(self) -> DrainResult | None:
        was = self.online
        self.online = await self.api.health()
        if self.online != was:
            log.info("connectivity: %s", "online" if self.online else "offline")
            for fn in self.listeners:
                fn(self.online)
        if self.online and len(self.queue):
            return await self.queue.drain()
        return None

    async def run(self, stop: asyncio.Event):
        while not stop.is_set():
            res = await self.check()
            wait = self.settings.CONNECTIVITY_POLL_SEC
            if res and res.retry_in is not None:
                wait = min(wait, max(res.retry_in, 0.05))
            try:
                await asyncio.wait_for(stop.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass

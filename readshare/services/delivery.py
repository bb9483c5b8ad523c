"""Outbound delivery queue: claiming, resolving and the polling worker.

Rows move ``pending -> processing -> sent | failed`` (or back to ``pending``
for another attempt). Every transition is a compare-and-set update on the
expected current status, so a row claimed by one worker cannot be claimed by
another, and a late answer from a worker whose claim was already reaped is
ignored.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from readshare.models.notification import DeliveryStatus, QueuedDelivery
from readshare.services.sinks import NotificationSink, SinkError, build_sink
from readshare.utils.audit import log_audit
from readshare.utils.time import utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
MAX_ERROR_LENGTH = 500


def claim_batch(
    db: Session,
    limit: int,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    now: datetime | None = None,
) -> list[QueuedDelivery]:
    """Atomically move up to ``limit`` due rows from pending to processing.

    Only rows this call actually transitioned are returned; candidates that a
    concurrent claimer took first are skipped.
    """

    if limit <= 0:
        return []
    now = now or utcnow()
    candidates = db.scalars(
        select(QueuedDelivery.id)
        .where(
            QueuedDelivery.status == DeliveryStatus.PENDING,
            QueuedDelivery.attempts < max_attempts,
            or_(QueuedDelivery.next_attempt_at.is_(None), QueuedDelivery.next_attempt_at <= now),
        )
        .order_by(QueuedDelivery.created_at.asc(), QueuedDelivery.id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    ).all()

    claimed_ids: list[str] = []
    for delivery_id in candidates:
        result = db.execute(
            update(QueuedDelivery)
            .where(
                QueuedDelivery.id == delivery_id,
                QueuedDelivery.status == DeliveryStatus.PENDING,
            )
            .values(
                status=DeliveryStatus.PROCESSING,
                attempts=QueuedDelivery.attempts + 1,
                processed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed_ids.append(delivery_id)
    db.commit()

    if not claimed_ids:
        return []
    rows = db.scalars(
        select(QueuedDelivery)
        .where(QueuedDelivery.id.in_(claimed_ids))
        .order_by(QueuedDelivery.created_at.asc(), QueuedDelivery.id.asc())
        .execution_options(populate_existing=True)
    ).all()
    logger.info("Delivery batch claimed", extra={"claimed": len(rows), "candidates": len(candidates)})
    return list(rows)


def mark_sent(db: Session, delivery_id: str, *, now: datetime | None = None) -> bool:
    """Resolve a processing row as sent; False when it is no longer ours."""

    now = now or utcnow()
    result = db.execute(
        update(QueuedDelivery)
        .where(QueuedDelivery.id == delivery_id, QueuedDelivery.status == DeliveryStatus.PROCESSING)
        .values(status=DeliveryStatus.SENT, processed_at=now, updated_at=now, last_error=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def mark_attempt_failed(
    db: Session,
    delivery_id: str,
    error: str,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    retry_backoff_seconds: int = 0,
    now: datetime | None = None,
) -> DeliveryStatus | None:
    """Record a failed attempt: back to pending, or failed once attempts run out.

    Returns the new status, or ``None`` when the row was not processing.
    """

    now = now or utcnow()
    attempts = db.scalars(
        select(QueuedDelivery.attempts).where(
            QueuedDelivery.id == delivery_id,
            QueuedDelivery.status == DeliveryStatus.PROCESSING,
        )
    ).first()
    if attempts is None:
        db.commit()
        return None

    exhausted = attempts >= max_attempts
    target = DeliveryStatus.FAILED if exhausted else DeliveryStatus.PENDING
    next_attempt_at = None
    if not exhausted and retry_backoff_seconds:
        next_attempt_at = now + timedelta(seconds=retry_backoff_seconds * attempts)

    result = db.execute(
        update(QueuedDelivery)
        .where(QueuedDelivery.id == delivery_id, QueuedDelivery.status == DeliveryStatus.PROCESSING)
        .values(
            status=target,
            processed_at=now,
            updated_at=now,
            next_attempt_at=next_attempt_at,
            last_error=error[:MAX_ERROR_LENGTH],
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.commit()
        return None

    if exhausted:
        log_audit(
            db,
            actor="system:delivery-worker",
            action="DELIVERY_FAILED",
            entity="QueuedDelivery",
            entity_id=delivery_id,
            data={"attempts": attempts, "error": error[:MAX_ERROR_LENGTH]},
        )
        logger.warning(
            "Delivery permanently failed",
            extra={"delivery_id": delivery_id, "attempts": attempts, "error": error[:MAX_ERROR_LENGTH]},
        )
    db.commit()
    return target


def release_stale_claims(
    db: Session,
    *,
    visibility_timeout_seconds: int,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    now: datetime | None = None,
) -> dict[str, int]:
    """Return rows stuck in processing (crashed worker) to pending or failed."""

    now = now or utcnow()
    cutoff = now - timedelta(seconds=visibility_timeout_seconds)
    stale = (
        QueuedDelivery.status == DeliveryStatus.PROCESSING,
        QueuedDelivery.processed_at < cutoff,
    )

    exhausted_ids = db.scalars(
        select(QueuedDelivery.id).where(*stale, QueuedDelivery.attempts >= max_attempts)
    ).all()
    failed = 0
    for delivery_id in exhausted_ids:
        result = db.execute(
            update(QueuedDelivery)
            .where(QueuedDelivery.id == delivery_id, *stale)
            .values(
                status=DeliveryStatus.FAILED,
                updated_at=now,
                last_error="visibility timeout expired",
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            failed += 1
            log_audit(
                db,
                actor="system:delivery-reaper",
                action="DELIVERY_FAILED",
                entity="QueuedDelivery",
                entity_id=delivery_id,
                data={"reason": "visibility timeout expired"},
            )

    requeued = db.execute(
        update(QueuedDelivery)
        .where(*stale, QueuedDelivery.attempts < max_attempts)
        .values(status=DeliveryStatus.PENDING, updated_at=now, last_error="visibility timeout expired")
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()

    if failed or requeued:
        logger.warning("Stale delivery claims released", extra={"requeued": requeued, "failed": failed})
    return {"requeued": requeued, "failed": failed}


def list_deliveries(
    db: Session,
    *,
    status: DeliveryStatus | None = None,
    recipient_user_id: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[QueuedDelivery], int]:
    filters = []
    if status is not None:
        filters.append(QueuedDelivery.status == status)
    if recipient_user_id is not None:
        filters.append(QueuedDelivery.recipient_user_id == recipient_user_id)

    total = db.scalar(select(func.count()).select_from(QueuedDelivery).where(*filters)) or 0
    rows = db.scalars(
        select(QueuedDelivery)
        .where(*filters)
        .order_by(QueuedDelivery.created_at.desc(), QueuedDelivery.id.desc())
        .offset(offset)
        .limit(limit)
    ).all()
    return list(rows), int(total)


def queue_stats(db: Session) -> dict[str, int]:
    """Row count per delivery status, every status present."""

    counts = {status.value: 0 for status in DeliveryStatus}
    for status, count in db.execute(
        select(QueuedDelivery.status, func.count()).group_by(QueuedDelivery.status)
    ).all():
        counts[DeliveryStatus(status).value] = int(count)
    return counts


@dataclass
class DeliveryRunResult:
    claimed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class DeliveryWorker:
    """Claims batches and hands each row to the sink under a timeout.

    Any number of workers may run against the same table; claiming is what
    keeps them apart. Database work stays on the calling thread, only the
    sink call runs in an executor. A running sink call cannot be cancelled,
    so each pass gets its own executor and abandons it afterwards: a hung
    sink leaks its thread but never starves later passes.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        sink: NotificationSink,
        *,
        batch_size: int = 10,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sink_timeout_seconds: float = 10.0,
        retry_backoff_seconds: int = 0,
    ) -> None:
        self._session_factory = session_factory
        self.sink = sink
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.sink_timeout_seconds = sink_timeout_seconds
        self.retry_backoff_seconds = retry_backoff_seconds

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        session_factory: Callable[[], Session],
        sink: NotificationSink | None = None,
    ) -> "DeliveryWorker":
        return cls(
            session_factory,
            sink or build_sink(settings),
            batch_size=settings.DELIVERY_BATCH_SIZE,
            max_attempts=settings.DELIVERY_MAX_ATTEMPTS,
            sink_timeout_seconds=settings.SINK_TIMEOUT_SECONDS,
            retry_backoff_seconds=settings.DELIVERY_RETRY_BACKOFF_SECONDS,
        )

    def _deliver(self, executor: ThreadPoolExecutor, delivery: QueuedDelivery) -> str | None:
        """Send one row; the error text on failure, ``None`` on success."""

        data = dict(delivery.data or {})
        tag = delivery.tag or f"{delivery.kind.value}-{delivery.recipient_user_id}"
        future = executor.submit(
            self.sink.send, delivery.recipient_user_id, delivery.title, delivery.body, data, tag
        )
        try:
            future.result(timeout=self.sink_timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            return f"sink timed out after {self.sink_timeout_seconds:g}s"
        except SinkError as exc:
            return str(exc) or type(exc).__name__
        except Exception as exc:  # noqa: BLE001 - a broken sink fails the attempt, not the batch
            logger.exception("Notification sink raised", extra={"delivery_id": delivery.id})
            return f"{type(exc).__name__}: {exc}"
        return None

    def run_once(self, limit: int | None = None) -> DeliveryRunResult:
        result = DeliveryRunResult()
        with self._session_factory() as db:
            batch = claim_batch(db, limit or self.batch_size, max_attempts=self.max_attempts)
        result.claimed = len(batch)
        if not batch:
            return result

        executor = ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix="delivery-sink")
        try:
            self._resolve_batch(executor, batch, result)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        logger.info("Delivery run finished", extra=result.as_dict())
        return result

    def _resolve_batch(
        self, executor: ThreadPoolExecutor, batch: list[QueuedDelivery], result: DeliveryRunResult
    ) -> None:
        for delivery in batch:
            error = self._deliver(executor, delivery)
            with self._session_factory() as db:
                if error is None:
                    if mark_sent(db, delivery.id):
                        result.sent += 1
                    continue
                status = mark_attempt_failed(
                    db,
                    delivery.id,
                    error,
                    max_attempts=self.max_attempts,
                    retry_backoff_seconds=self.retry_backoff_seconds,
                )
            if status is DeliveryStatus.FAILED:
                result.failed += 1
            elif status is DeliveryStatus.PENDING:
                result.retried += 1
                logger.info(
                    "Delivery attempt failed, will retry",
                    extra={"delivery_id": delivery.id, "attempts": delivery.attempts, "error": error},
                )

    def close(self) -> None:
        close = getattr(self.sink, "close", None)
        if callable(close):
            close()


__all__ = [
    "claim_batch",
    "mark_sent",
    "mark_attempt_failed",
    "release_stale_claims",
    "list_deliveries",
    "queue_stats",
    "DeliveryRunResult",
    "DeliveryWorker",
]

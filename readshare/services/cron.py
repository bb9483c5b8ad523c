"""Background jobs scheduled by the app lifespan."""
from __future__ import annotations

import logging

from readshare import db
from readshare.config import get_settings
from readshare.core.runtime_state import record_delivery_run
from readshare.services.delivery import DeliveryRunResult, DeliveryWorker, release_stale_claims
from readshare.services.scheduler_lock import holds_scheduler_lock, refresh_scheduler_lock
from readshare.utils.time import utcnow

logger = logging.getLogger(__name__)

_worker: DeliveryWorker | None = None


def get_delivery_worker() -> DeliveryWorker:
    global _worker
    if _worker is None:
        _worker = DeliveryWorker.from_settings(get_settings(), db.get_sessionmaker())
    return _worker


def set_delivery_worker(worker: DeliveryWorker | None) -> None:
    global _worker
    _worker = worker


def process_delivery_queue_once() -> DeliveryRunResult:
    """One worker pass; safe to run on every instance at once."""

    result = get_delivery_worker().run_once()
    record_delivery_run({**result.as_dict(), "finished_at": utcnow().isoformat()})
    return result


def release_stale_deliveries_once() -> dict[str, int]:
    """Reap abandoned claims; only the lock holder does this."""

    if not holds_scheduler_lock():
        return {"requeued": 0, "failed": 0}
    settings = get_settings()
    session = db.get_sessionmaker()()
    try:
        return release_stale_claims(
            session,
            visibility_timeout_seconds=settings.DELIVERY_VISIBILITY_TIMEOUT_SECONDS,
            max_attempts=settings.DELIVERY_MAX_ATTEMPTS,
        )
    finally:
        session.close()


def heartbeat_scheduler_lock() -> None:
    if not refresh_scheduler_lock():
        logger.warning("Scheduler lock no longer held by this instance")

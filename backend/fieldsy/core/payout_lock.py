"""
Cross-process mutex around a single booking's payout.

Celery workers and admin-triggered retries can race on the same booking.
Persisted ``payout_status`` is what makes payouts idempotent; this redis
lock narrows the window between reading that status and moving money.
It fails open: if redis is unreachable the payout proceeds unguarded.
"""

from __future__ import annotations

from contextlib import contextmanager
import logging
import threading
import time
from typing import Iterator, Optional

from redis import Redis

from ..monitoring.prometheus_metrics import prometheus_metrics
from .config import settings

logger = logging.getLogger(__name__)

_SYNC_REDIS: Optional[Redis] = None
_SYNC_REDIS_LOCK = threading.Lock()


def _lock_key(booking_id: str) -> str:
    return f"fieldsy:lock:payout:{booking_id}"


def _get_sync_redis() -> Optional[Redis]:
    global _SYNC_REDIS
    if _SYNC_REDIS is not None:
        return _SYNC_REDIS
    with _SYNC_REDIS_LOCK:
        if _SYNC_REDIS is not None:
            return _SYNC_REDIS
        try:
            client = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=1,
            )
            client.ping()
        except Exception as exc:
            logger.warning("payout_lock_redis_unavailable: %s", exc)
            return None
        _SYNC_REDIS = client
        return _SYNC_REDIS


def acquire_payout_lock(booking_id: str, ttl_s: Optional[int] = None) -> bool:
    if not settings.payout_lock_enabled:
        return True
    client = _get_sync_redis()
    if client is None:
        prometheus_metrics.record_payout_mutex("acquire", "redis_unavailable")
        return True
    try:
        acquired = bool(
            client.set(
                _lock_key(booking_id),
                str(time.time()),
                nx=True,
                ex=ttl_s or settings.payout_lock_ttl_seconds,
            )
        )
    except Exception as exc:
        prometheus_metrics.record_payout_mutex("acquire", "error")
        logger.warning(
            "payout_lock_acquire_failed",
            extra={"booking_id": booking_id, "error": str(exc), "error_type": type(exc).__name__},
        )
        return True
    prometheus_metrics.record_payout_mutex("acquire", "success" if acquired else "blocked")
    return acquired


def release_payout_lock(booking_id: str) -> None:
    if not settings.payout_lock_enabled:
        return
    client = _get_sync_redis()
    if client is None:
        return
    try:
        client.delete(_lock_key(booking_id))
        prometheus_metrics.record_payout_mutex("release", "success")
    except Exception as exc:
        prometheus_metrics.record_payout_mutex("release", "error")
        logger.warning(
            "payout_lock_release_failed",
            extra={"booking_id": booking_id, "error": str(exc), "error_type": type(exc).__name__},
        )


@contextmanager
def payout_lock_sync(booking_id: str, ttl_s: Optional[int] = None) -> Iterator[bool]:
    acquired = acquire_payout_lock(booking_id, ttl_s=ttl_s)
    try:
        yield acquired
    finally:
        if acquired:
            release_payout_lock(booking_id)

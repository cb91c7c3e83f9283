"""Per-sender admission control (core domain).

Decision order for ``check``:
1) Permanent block list
2) Unknown sender (no record yet)
3) Temporary/indefinite block, auto-cleared once ``blocked_until`` passes
4) Hourly window
5) Daily window

Store failures during ``check`` fail open: a broken rate-limit table should
not silence every campaign.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from core.config import RateLimitConfig
from core.errors import StoreError
from core.models import RateLimitDecision, RateLimitReason
from core.ports import RateLimitStore

LOGGER = logging.getLogger(__name__)

HOUR_WINDOW = timedelta(hours=1)
DAY_WINDOW = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RateLimiter:
    def __init__(
        self,
        store: RateLimitStore,
        config: RateLimitConfig,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._config = config
        self._clock = clock

    def check(self, sender_id: str) -> RateLimitDecision:
        """Return whether ``sender_id`` may trigger a campaign right now."""

        try:
            return self._check(sender_id)
        except StoreError:
            LOGGER.exception("Rate limit check failed for %s; allowing", sender_id)
            return RateLimitDecision(allowed=True, reason=RateLimitReason.ERROR_CHECK)

    def _check(self, sender_id: str) -> RateLimitDecision:
        if self._store.is_permanently_blocked(sender_id):
            LOGGER.warning("Sender permanently blocked: %s", sender_id)
            return RateLimitDecision(allowed=False, reason=RateLimitReason.BLOCKED_PERMANENT)

        record = self._store.get_record(sender_id)
        if record is None:
            LOGGER.info("New sender %s: allowed", sender_id)
            return RateLimitDecision(allowed=True, reason=RateLimitReason.NEW_USER)

        now = self._clock()
        if record.is_blocked:
            if record.blocked_until is not None and now > record.blocked_until:
                self._store.clear_block(sender_id)
                LOGGER.info("Sender %s automatically unblocked", sender_id)
                return RateLimitDecision(allowed=True, reason=RateLimitReason.UNBLOCKED)
            LOGGER.warning("Sender blocked until %s: %s", record.blocked_until or "further notice", sender_id)
            return RateLimitDecision(allowed=False, reason=RateLimitReason.BLOCKED_TEMPORARY)

        last = record.last_trigger_at
        if last is not None:
            if last > now - HOUR_WINDOW and record.hour_count >= self._config.hour:
                LOGGER.warning(
                    "Hourly limit reached for %s (%s/%s)", sender_id, record.hour_count, self._config.hour
                )
                return RateLimitDecision(allowed=False, reason=RateLimitReason.RATE_LIMIT_HOUR)
            if last > now - DAY_WINDOW and record.day_count >= self._config.day:
                LOGGER.warning(
                    "Daily limit reached for %s (%s/%s)", sender_id, record.day_count, self._config.day
                )
                return RateLimitDecision(allowed=False, reason=RateLimitReason.RATE_LIMIT_DAY)

        LOGGER.info(
            "Sender %s allowed (hour=%s, day=%s)", sender_id, record.hour_count, record.day_count
        )
        return RateLimitDecision(allowed=True, reason=RateLimitReason.OK)

    def update(self, sender_id: str) -> None:
        """Count one more trigger for ``sender_id``."""

        now = self._clock()
        self._store.upsert_on_trigger(
            sender_id,
            now=now,
            hour_cutoff=now - HOUR_WINDOW,
            day_cutoff=now - DAY_WINDOW,
        )
        LOGGER.info("Rate limit counters updated for %s", sender_id)

    def block(self, sender_id: str, reason: Optional[str], hours: Optional[float] = None) -> None:
        """Block a sender for ``hours`` (or indefinitely when None)."""

        until = self._clock() + timedelta(hours=hours) if hours is not None else None
        self._store.set_block(sender_id, reason, until)
        LOGGER.warning("Sender %s blocked until %s: %s", sender_id, until or "further notice", reason)

    def unblock(self, sender_id: str) -> None:
        self._store.clear_block(sender_id)
        LOGGER.info("Sender %s unblocked", sender_id)

    def block_permanently(self, sender_id: str, reason: Optional[str]) -> None:
        self._store.add_permanent_block(sender_id, reason)
        LOGGER.warning("Sender %s added to the permanent block list: %s", sender_id, reason)

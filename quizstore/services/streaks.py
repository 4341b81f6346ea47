"""
Streak service

A streak counts consecutive active windows (days by default). The record is
written with an engine TTL, but the TTL is only cleanup: every read compares
expires_on with the clock and deletes a dead record itself.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from quizstore.core.config import settings
from quizstore.core.exceptions import ConflictException
from quizstore.db.kv import KvEntry, KvStore, with_conflict_retry
from quizstore.db.redis import get_kv
from quizstore.schemas.streaks import Streak
from quizstore.utils.clock import utcnow

logger = logging.getLogger(__name__)

STREAKS = "streaks"


class StreakStore:
    """Per-user streaks with lazy expiry"""

    def __init__(self, kv: KvStore, clock: Callable[[], datetime] = utcnow):
        self.kv = kv
        self.clock = clock
        self.window = timedelta(hours=settings.STREAK_WINDOW_HOURS)
        self.lifetime = self.window * settings.STREAK_WINDOWS

    @classmethod
    async def make(cls, kv: Optional[KvStore] = None) -> "StreakStore":
        return cls(kv or await get_kv())

    async def _read(self, user_id: str) -> Tuple[KvEntry, Optional[Streak]]:
        entry = await self.kv.get((STREAKS, user_id))
        if not entry.exists:
            return entry, None

        streak = Streak.model_validate(entry.value)
        if self.clock() <= streak.expires_on:
            return entry, streak

        result = await self.kv.atomic().check(entry.key, entry.versionstamp).delete(entry.key).commit()
        if not result.ok:
            raise ConflictException(details={"user_id": user_id})
        logger.warning(f"Streak for {user_id} expired on {streak.expires_on.isoformat()}, deleted")
        return KvEntry(entry.key), None

    @with_conflict_retry()
    async def get(self, user_id: str) -> Optional[Streak]:
        """Live streak, or None; an expired record is deleted on the way"""
        _, streak = await self._read(user_id)
        return streak

    @with_conflict_retry()
    async def update(self, user_id: str) -> Streak:
        """
        Register activity

        Starts a streak when there is none, extends it once at least one
        window has passed since it was last extended, and otherwise returns
        it unchanged.
        """
        entry, streak = await self._read(user_id)
        now = self.clock()

        if streak is None:
            streak = Streak(
                user_id=user_id,
                days=1,
                start_date=now,
                last_activity=now,
                expires_on=now + self.lifetime,
            )
        elif now >= streak.expires_on - (self.lifetime - self.window):
            streak = streak.model_copy(
                update={
                    "days": streak.days + 1,
                    "last_activity": now,
                    "expires_on": now + self.lifetime,
                }
            )
        else:
            logger.debug(f"Streak for {user_id} already counted this window")
            return streak

        ttl_ms = int(self.lifetime.total_seconds() * 1000)
        result = await (
            self.kv.atomic()
            .check(entry.key, entry.versionstamp)
            .set(entry.key, streak.model_dump(mode="json"), expire_in=ttl_ms)
            .commit()
        )
        if not result.ok:
            raise ConflictException(details={"user_id": user_id})

        logger.debug(f"Streak for {user_id} is now {streak.days} days")
        return streak

    async def delete(self, user_id: str) -> None:
        await self.kv.delete((STREAKS, user_id))

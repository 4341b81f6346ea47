"""
User service with its score leaderboard

The leaderboard is a secondary index whose key embeds the score, so a
reverse prefix scan returns entries highest score first. A score change is a
delete of the old index key plus an insert of the new one, committed together
with the user record.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Union

from quizstore.core.config import settings
from quizstore.core.exceptions import ConflictException, DuplicateException, NotFoundException
from quizstore.db.kv import KvEntry, KvStore, with_conflict_retry
from quizstore.db.redis import get_kv
from quizstore.schemas.users import (
    CategoryStats,
    LeaderboardEntry,
    User,
    UserStats,
    UserStatsUpdate,
    UserUpdate,
)
from quizstore.utils.clock import utcnow
from quizstore.utils.validators import validate_model

logger = logging.getLogger(__name__)

USERS = "users"
LEADERBOARD = ("leaderboard", "questions_correct")


def leaderboard_key(questions_correct: int, user_id: str):
    return (*LEADERBOARD, questions_correct, user_id)


class UserStore:
    """Users, their answer statistics and the leaderboard index"""

    def __init__(self, kv: KvStore, clock: Callable[[], datetime] = utcnow):
        self.kv = kv
        self.clock = clock

    @classmethod
    async def make(cls, kv: Optional[KvStore] = None) -> "UserStore":
        return cls(kv or await get_kv())

    async def create_user(self, user: Union[User, dict]) -> User:
        """
        Create a user; exactly one of several concurrent creations wins

        Raises:
            DuplicateException: a user with this id already exists
        """
        user = validate_model(User, user)
        user.created_at = self.clock()
        key = (USERS, user.user_id)

        result = await (
            self.kv.atomic()
            .check(key, None)
            .set(key, user.model_dump(mode="json"))
            .commit()
        )
        if not result.ok:
            raise DuplicateException("User", details={"user_id": user.user_id})

        logger.info(f"Created user {user.user_id}")
        return user

    async def _get_entry(self, user_id: str) -> KvEntry:
        entry = await self.kv.get((USERS, user_id))
        if not entry.exists:
            raise NotFoundException("User", details={"user_id": user_id})
        return entry

    async def get_user(self, user_id: str) -> User:
        entry = await self._get_entry(user_id)
        return User.model_validate(entry.value)

    async def list_users(self) -> List[User]:
        return [User.model_validate(entry.value) async for entry in self.kv.list((USERS,))]

    @with_conflict_retry()
    async def update_user(
        self,
        update: Union[UserUpdate, dict],
        category: Optional[str] = None,
        is_correct: Optional[bool] = None,
    ) -> User:
        """
        Merge a partial update into the stored user and re-index its score

        Scalars in ``update.stats`` overwrite the stored ones and entries of
        ``update.stats.categories`` overwrite by category name. ``category``
        additionally counts one answer in that category (a correct one when
        ``is_correct``); do not pass both for the same event.

        The commit is tied to the versionstamp that was read, so a concurrent
        update makes it conflict and the merge is redone on fresh data.

        Raises:
            NotFoundException: unknown user
            ValidationException: merged stats are inconsistent
        """
        update = validate_model(UserUpdate, update)
        entry = await self._get_entry(update.user_id)
        current = User.model_validate(entry.value)
        merged = self._merge(current, update, category, is_correct)
        return await self._save(entry, current, merged)

    @with_conflict_retry()
    async def record_answer(self, user_id: str, category: Optional[str] = None, is_correct: bool = False) -> User:
        """Count one answer on top of whatever is stored at commit time"""
        entry = await self._get_entry(user_id)
        current = User.model_validate(entry.value)
        increment = UserUpdate(
            user_id=user_id,
            stats=UserStatsUpdate(
                questions_answered=current.stats.questions_answered + 1,
                questions_correct=current.stats.questions_correct + int(is_correct),
            ),
        )
        merged = self._merge(current, increment, category, is_correct)
        return await self._save(entry, current, merged)

    @staticmethod
    def _merge(
        current: User,
        update: UserUpdate,
        category: Optional[str],
        is_correct: Optional[bool],
    ) -> User:
        stats = current.stats.model_dump()
        if update.stats:
            stats.update(update.stats.model_dump(exclude_none=True, exclude={"categories"}))
            for name, counts in (update.stats.categories or {}).items():
                stats["categories"][name] = counts.model_dump()

        if category:
            counts = stats["categories"].setdefault(category, CategoryStats().model_dump())
            counts["questions_answered"] += 1
            if is_correct:
                counts["questions_correct"] += 1

        changes = {"stats": validate_model(UserStats, stats)}
        if update.display_name is not None:
            changes["display_name"] = update.display_name
        return current.model_copy(update=changes)

    async def _save(self, entry: KvEntry, current: User, merged: User) -> User:
        old_score = current.stats.questions_correct
        new_score = merged.stats.questions_correct
        leaderboard_entry = LeaderboardEntry(
            user_id=merged.user_id,
            display_name=merged.display_name,
            questions_correct=new_score,
        )

        op = (
            self.kv.atomic()
            .check(entry.key, entry.versionstamp)
            .set(entry.key, merged.model_dump(mode="json"))
        )
        if old_score != new_score:
            op.delete(leaderboard_key(old_score, merged.user_id))
        op.set(leaderboard_key(new_score, merged.user_id), leaderboard_entry.model_dump())

        result = await op.commit()
        if not result.ok:
            raise ConflictException(details={"user_id": merged.user_id})

        logger.debug(f"Updated user {merged.user_id}, score {old_score} -> {new_score}")
        return merged

    @with_conflict_retry()
    async def delete_user(self, user_id: str) -> None:
        """Remove a user and its leaderboard entry"""
        entry = await self._get_entry(user_id)
        user = User.model_validate(entry.value)
        result = await (
            self.kv.atomic()
            .check(entry.key, entry.versionstamp)
            .delete(entry.key)
            .delete(leaderboard_key(user.stats.questions_correct, user_id))
            .commit()
        )
        if not result.ok:
            raise ConflictException(details={"user_id": user_id})
        logger.info(f"Deleted user {user_id}")

    async def list_leaderboard(self, limit: Optional[int] = None) -> List[LeaderboardEntry]:
        """Leaderboard entries, highest score first"""
        if limit is None:
            limit = settings.LEADERBOARD_LIMIT
        entries = self.kv.list(LEADERBOARD, reverse=True, limit=limit)
        return [LeaderboardEntry.model_validate(entry.value) async for entry in entries]

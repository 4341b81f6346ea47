"""
Attempt service

Each attempt is written twice, once ordered by time per user and once grouped
by question per user, in the same commit.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from quizstore.core.exceptions import (
    ConflictException,
    DuplicateException,
    NotFoundException,
    ValidationException,
)
from quizstore.db.kv import KvStore, with_conflict_retry
from quizstore.db.redis import get_kv
from quizstore.schemas.attempts import Attempt, normalize_attempt_id
from quizstore.utils.clock import to_key_timestamp, utcnow
from quizstore.utils.validators import validate_model

logger = logging.getLogger(__name__)

BY_ATTEMPT_ID = ("attempts", "by_attempt_id")
BY_QUESTION_ID = ("attempts", "by_question_id")

DEFAULT_LOOKBACK = timedelta(days=30)


def attempt_key_id(attempt_id: Union[str, datetime]) -> str:
    """attempt_id as stored by add_attempt"""
    try:
        return normalize_attempt_id(attempt_id)
    except ValueError as e:
        raise ValidationException(str(e), details={"attempt_id": str(attempt_id)}) from e


class AttemptStore:
    def __init__(self, kv: KvStore, clock: Callable[[], datetime] = utcnow):
        self.kv = kv
        self.clock = clock

    @classmethod
    async def make(cls, kv: Optional[KvStore] = None) -> "AttemptStore":
        return cls(kv or await get_kv())

    async def add_attempt(self, attempt: Union[Attempt, dict]) -> Attempt:
        """
        Raises:
            ValidationException: attempt_id is not an ISO timestamp
            DuplicateException: the user already has an attempt with this id
        """
        attempt = validate_model(Attempt, attempt)
        data = attempt.model_dump(mode="json")
        key = (*BY_ATTEMPT_ID, attempt.user_id, attempt.attempt_id)

        result = await (
            self.kv.atomic()
            .check(key, None)
            .set(key, data)
            .set((*BY_QUESTION_ID, attempt.user_id, attempt.question_id, attempt.attempt_id), data)
            .commit()
        )
        if not result.ok:
            raise DuplicateException("Attempt", details={"attempt_id": attempt.attempt_id})
        return attempt

    async def list_by_user_id(self, user_id: str) -> List[Attempt]:
        """All attempts of a user, oldest first"""
        return [
            Attempt.model_validate(entry.value)
            async for entry in self.kv.list((*BY_ATTEMPT_ID, user_id))
        ]

    async def list_with_lookback_window(
        self, user_id: str, lookback: timedelta = DEFAULT_LOOKBACK
    ) -> List[Attempt]:
        """Attempts submitted within ``lookback`` of now, oldest first"""
        since = to_key_timestamp(self.clock() - lookback)
        entries = self.kv.list((*BY_ATTEMPT_ID, user_id), start=(*BY_ATTEMPT_ID, user_id, since))
        return [Attempt.model_validate(entry.value) async for entry in entries]

    async def list_by_question_id(self, user_id: str, question_id: str) -> List[Attempt]:
        return [
            Attempt.model_validate(entry.value)
            async for entry in self.kv.list((*BY_QUESTION_ID, user_id, question_id))
        ]

    async def get_attempt(self, user_id: str, attempt_id: Union[str, datetime]) -> Attempt:
        attempt_id = attempt_key_id(attempt_id)
        entry = await self.kv.get((*BY_ATTEMPT_ID, user_id, attempt_id))
        if not entry.exists:
            raise NotFoundException("Attempt", details={"user_id": user_id, "attempt_id": attempt_id})
        return Attempt.model_validate(entry.value)

    @with_conflict_retry()
    async def delete_attempt(self, user_id: str, attempt_id: Union[str, datetime]) -> None:
        """Remove both copies of an attempt"""
        attempt_id = attempt_key_id(attempt_id)
        entry = await self.kv.get((*BY_ATTEMPT_ID, user_id, attempt_id))
        if not entry.exists:
            raise NotFoundException("Attempt", details={"user_id": user_id, "attempt_id": attempt_id})
        attempt = Attempt.model_validate(entry.value)

        result = await (
            self.kv.atomic()
            .check(entry.key, entry.versionstamp)
            .delete(entry.key)
            .delete((*BY_QUESTION_ID, user_id, attempt.question_id, attempt_id))
            .commit()
        )
        if not result.ok:
            raise ConflictException(details={"attempt_id": attempt_id})

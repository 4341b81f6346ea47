"""
Content-addressed question store

A question's id is derived from the hash of its normalized text, so the same
text always lands on the same key and duplicate submissions are caught by the
existence check of the insert itself. Editing the text re-derives the id: the
record moves to its new key and every report filed against the old id moves
with it, in one commit.
"""

import hashlib
import logging
import random
import unicodedata
import uuid
from datetime import datetime
from typing import Any, Callable, List, Optional, Union

from quizstore.core.config import settings
from quizstore.core.exceptions import ConflictException, DuplicateException, NotFoundException
from quizstore.core.logging import log_execution_time
from quizstore.db.kv import KvEntry, KvStore, with_conflict_retry
from quizstore.db.redis import get_kv
from quizstore.schemas.questions import (
    Question,
    QuestionDraft,
    QuestionReplace,
    QuestionReport,
    Thumbs,
)
from quizstore.utils.clock import utcnow
from quizstore.utils.validators import validate_model

logger = logging.getLogger(__name__)

QUESTIONS = "questions"
QUESTIONS_BY_CATEGORY = "questions_by_category"
REPORTS = "question_reports"
REPORT_COUNTS = "question_report_counts"

# random picks retried when the chosen key vanished between listing and reading
RANDOM_PICK_ATTEMPTS = 3


def normalize_question_text(text: str) -> str:
    """Unicode-normalize, collapse whitespace and casefold"""
    text = unicodedata.normalize("NFKC", text)
    return " ".join(text.split()).casefold()


def content_hash(text: str) -> str:
    """SHA-256 hex digest of the normalized question text"""
    return hashlib.sha256(normalize_question_text(text).encode("utf-8")).hexdigest()


def id_from_hash(digest: str) -> str:
    """Question id: leading hex characters of the content hash"""
    return digest[: settings.QUESTION_ID_LENGTH]


def question_id_for(text: str) -> str:
    return id_from_hash(content_hash(text))


class QuestionStore:
    """Questions and their reports, namespaced by ``scope``"""

    def __init__(
        self,
        kv: KvStore,
        scope: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.kv = kv
        self.scope = scope or settings.QUESTION_SCOPE
        self.clock = clock

    @classmethod
    async def make(cls, kv: Optional[KvStore] = None, scope: Optional[str] = None) -> "QuestionStore":
        return cls(kv or await get_kv(), scope)

    # Keys

    def _question_key(self, question_id: str):
        return (QUESTIONS, self.scope, question_id)

    def _category_key(self, category: str, question_id: str):
        return (QUESTIONS_BY_CATEGORY, self.scope, category, question_id)

    def _report_key(self, question_id: str, report_id: str):
        return (REPORTS, self.scope, question_id, report_id)

    def _report_count_key(self, question_id: str):
        return (REPORT_COUNTS, self.scope, question_id)

    # Questions

    async def add(self, draft: Union[QuestionDraft, dict]) -> Question:
        """
        Insert a new question under its content-derived id

        Raises:
            DuplicateException: a question with the same normalized text exists
            ValidationException: malformed draft
        """
        draft = validate_model(QuestionDraft, draft)
        digest = content_hash(draft.question_text)
        question = Question(
            **draft.model_dump(),
            id=id_from_hash(digest),
            content_hash=digest,
            created_at=self.clock(),
        )
        data = question.model_dump(mode="json")
        key = self._question_key(question.id)

        result = await (
            self.kv.atomic()
            .check(key, None)
            .set(key, data)
            .set(self._category_key(question.category, question.id), data)
            .commit()
        )
        if not result.ok:
            raise DuplicateException("Question", details={"id": question.id})

        logger.info(f"Added question {question.id} in {self.scope}/{question.category}")
        return question

    async def _get_entry(self, question_id: str) -> KvEntry:
        entry = await self.kv.get(self._question_key(question_id))
        if not entry.exists:
            raise NotFoundException("Question", details={"id": question_id})
        return entry

    async def get(self, question_id: str) -> Question:
        entry = await self._get_entry(question_id)
        return Question.model_validate(entry.value)

    async def _pick_random(self, prefix) -> Question:
        for _ in range(RANDOM_PICK_ATTEMPTS):
            keys = await self.kv.list_keys(prefix)
            if not keys:
                break
            entry = await self.kv.get(random.choice(keys))
            if entry.exists:
                return Question.model_validate(entry.value)
        raise NotFoundException("Question", details={"scope": self.scope, "prefix": list(prefix)})

    async def get_random(self) -> Question:
        """Uniform pick over every live question"""
        return await self._pick_random((QUESTIONS, self.scope))

    async def get_random_by_category(self, category: str) -> Question:
        """Uniform pick over the live questions of one category"""
        return await self._pick_random((QUESTIONS_BY_CATEGORY, self.scope, category))

    async def list(self, category: Optional[str] = None) -> List[Question]:
        """All questions, or those of one category"""
        if category is None:
            prefix = (QUESTIONS, self.scope)
        else:
            prefix = (QUESTIONS_BY_CATEGORY, self.scope, category)
        return [Question.model_validate(entry.value) async for entry in self.kv.list(prefix)]

    async def size(self, category: Optional[str] = None) -> int:
        if category is None:
            return await self.kv.count((QUESTIONS, self.scope))
        return await self.kv.count((QUESTIONS_BY_CATEGORY, self.scope, category))

    @with_conflict_retry()
    async def replace(self, updated: Union[QuestionReplace, dict]) -> Question:
        """
        Replace the content of an existing question

        When the normalized text is unchanged the record is overwritten in
        place and keeps its id, content_hash and created_at. Otherwise the
        question moves to the id derived from the new text, keeping
        created_at, and its reports move along with it.

        Raises:
            NotFoundException: no question under ``updated.id``
            DuplicateException: the new text belongs to another question
            ConflictException: concurrent writes kept winning
        """
        updated = validate_model(QuestionReplace, updated)
        entry = await self._get_entry(updated.id)
        current = Question.model_validate(entry.value)
        digest = content_hash(updated.question_text)

        if digest != current.content_hash:
            return await self._move(current, entry.versionstamp, updated, digest)

        question = Question(
            **updated.model_dump(exclude={"id"}),
            id=current.id,
            content_hash=current.content_hash,
            created_at=current.created_at,
        )
        data = question.model_dump(mode="json")
        op = self.kv.atomic().check(entry.key, entry.versionstamp).set(entry.key, data)
        if question.category != current.category:
            op.delete(self._category_key(current.category, current.id))
        op.set(self._category_key(question.category, question.id), data)

        result = await op.commit()
        if not result.ok:
            raise ConflictException(details={"id": current.id})

        logger.debug(f"Updated question {question.id} in place")
        return question

    @log_execution_time(logger)
    async def _move(
        self,
        current: Question,
        versionstamp: str,
        updated: QuestionReplace,
        digest: str,
    ) -> Question:
        new_id = id_from_hash(digest)
        question = Question(
            **updated.model_dump(exclude={"id"}),
            id=new_id,
            content_hash=digest,
            created_at=current.created_at,
        )
        data = question.model_dump(mode="json")
        old_key = self._question_key(current.id)
        new_key = self._question_key(new_id)

        if (await self.kv.get(new_key)).exists:
            raise DuplicateException("Question", details={"id": new_id})

        old_count, new_count = await self.kv.get_many(
            [self._report_count_key(current.id), self._report_count_key(new_id)]
        )
        reports = [entry async for entry in self.kv.list((REPORTS, self.scope, current.id))]

        # the count keys are checked so a report filed mid-move cannot be left behind
        op = (
            self.kv.atomic()
            .check(old_key, versionstamp)
            .check(new_key, None)
            .check(old_count.key, old_count.versionstamp)
            .check(new_count.key, new_count.versionstamp)
            .delete(old_key)
            .delete(self._category_key(current.category, current.id))
            .set(new_key, data)
            .set(self._category_key(question.category, new_id), data)
        )
        for entry in reports:
            report = QuestionReport.model_validate(entry.value)
            moved = report.model_copy(update={"question_id": new_id})
            op.check(entry.key, entry.versionstamp)
            op.delete(entry.key)
            op.set(self._report_key(new_id, report.report_id), moved.model_dump(mode="json"))
        if old_count.exists:
            op.delete(old_count.key)
            op.set(new_count.key, (new_count.value or 0) + old_count.value)

        result = await op.commit()
        if not result.ok:
            if (await self.kv.get(new_key)).exists:
                raise DuplicateException("Question", details={"id": new_id})
            raise ConflictException(details={"id": current.id})

        logger.info(
            f"Question {current.id} re-keyed to {new_id}, moved {len(reports)} reports",
            extra={"old_id": current.id, "new_id": new_id, "reports": len(reports)},
        )
        return question

    @with_conflict_retry()
    async def delete(self, question_id: str) -> None:
        """
        Delete a question; its reports stay behind as history

        Raises:
            NotFoundException: no such question
        """
        entry = await self._get_entry(question_id)
        question = Question.model_validate(entry.value)
        result = await (
            self.kv.atomic()
            .check(entry.key, entry.versionstamp)
            .delete(entry.key)
            .delete(self._category_key(question.category, question_id))
            .commit()
        )
        if not result.ok:
            raise ConflictException(details={"id": question_id})
        logger.info(f"Deleted question {question_id}")

    # Reports

    @with_conflict_retry()
    async def report_question(
        self,
        question_id: str,
        thumbs: Union[Thumbs, str],
        reason: str,
        user_id: Optional[str] = None,
    ) -> QuestionReport:
        """
        File a report against an existing question

        Raises:
            NotFoundException: the question does not exist
        """
        question = await self._get_entry(question_id)
        count = await self.kv.get(self._report_count_key(question_id))
        report = validate_model(
            QuestionReport,
            {
                "question_id": question_id,
                "report_id": uuid.uuid4().hex,
                "thumbs": thumbs,
                "reason": reason,
                "reported_at": self.clock(),
                "user_id": user_id,
            },
        )

        result = await (
            self.kv.atomic()
            .check(question.key, question.versionstamp)
            .check(count.key, count.versionstamp)
            .set(self._report_key(question_id, report.report_id), report.model_dump(mode="json"))
            .set(count.key, (count.value or 0) + 1)
            .commit()
        )
        if not result.ok:
            raise ConflictException(details={"id": question_id})

        logger.info(f"Report {report.report_id} ({report.thumbs.value}) filed for question {question_id}")
        return report

    async def list_reports(self, question_id: Optional[str] = None) -> List[QuestionReport]:
        """Reports, most recent first"""
        prefix: Any = (REPORTS, self.scope) if question_id is None else (REPORTS, self.scope, question_id)
        reports = [QuestionReport.model_validate(entry.value) async for entry in self.kv.list(prefix)]
        reports.sort(key=lambda report: report.reported_at, reverse=True)
        return reports

    async def report_count(self, question_id: str) -> int:
        """Number of reports ever filed under ``question_id``"""
        entry = await self.kv.get(self._report_count_key(question_id))
        return entry.value or 0

    @with_conflict_retry()
    async def resolve_report(self, question_id: str, report_id: str) -> QuestionReport:
        """
        Mark a report resolved; resolving again overwrites the timestamp

        Raises:
            NotFoundException: no such report
        """
        entry = await self.kv.get(self._report_key(question_id, report_id))
        if not entry.exists:
            raise NotFoundException(
                "Report", details={"question_id": question_id, "report_id": report_id}
            )
        report = QuestionReport.model_validate(entry.value)
        report.resolved_at = self.clock()

        result = await (
            self.kv.atomic()
            .check(entry.key, entry.versionstamp)
            .set(entry.key, report.model_dump(mode="json"))
            .commit()
        )
        if not result.ok:
            raise ConflictException(details={"report_id": report_id})

        logger.info(f"Resolved report {report_id} on question {question_id}")
        return report

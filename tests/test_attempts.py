from datetime import timedelta

import pytest

from quizstore.core.exceptions import DuplicateException, NotFoundException, ValidationException
from quizstore.services.attempts import AttemptStore
from quizstore.utils.clock import to_key_timestamp


def attempt(submitted, question_id="q-1", **overrides):
    data = {
        "attempt_id": submitted,
        "user_id": "user123",
        "question_id": question_id,
        "category": "Airway",
        "timestamp_started": submitted - timedelta(seconds=30),
        "timestamp_submitted": submitted,
        "response_time_ms": 30000,
        "selected_choice_index": 1,
        "is_correct": True,
    }
    data.update(overrides)
    return data


@pytest.fixture
def store(kv, clock):
    return AttemptStore(kv, clock=clock)


async def test_attempt_id_is_a_normalized_timestamp(store, clock):
    saved = await store.add_attempt(attempt(clock.now))
    assert saved.attempt_id == "2024-03-01T12:00:00.000Z"

    fetched = await store.get_attempt("user123", to_key_timestamp(clock.now))
    assert fetched.question_id == "q-1"


async def test_attempt_id_must_be_a_timestamp(store, clock):
    with pytest.raises(ValidationException):
        await store.add_attempt(attempt(clock.now, attempt_id="not-a-date"))


async def test_duplicate_attempt_fails(store, clock):
    await store.add_attempt(attempt(clock.now))
    with pytest.raises(DuplicateException):
        await store.add_attempt(attempt(clock.now, is_correct=False))


async def test_attempts_are_listed_in_time_order(store, clock):
    start = clock.now
    for days in (3, 1, 2):
        await store.add_attempt(attempt(start + timedelta(days=days), question_id=f"q-{days}"))

    attempts = await store.list_by_user_id("user123")
    assert [a.question_id for a in attempts] == ["q-1", "q-2", "q-3"]
    assert await store.list_by_user_id("someone-else") == []


async def test_lookback_window(store, clock):
    start = clock.now
    await store.add_attempt(attempt(start - timedelta(days=40), question_id="old"))
    await store.add_attempt(attempt(start - timedelta(days=5), question_id="recent"))
    await store.add_attempt(attempt(start - timedelta(hours=1), question_id="latest"))

    recent = await store.list_with_lookback_window("user123")
    assert [a.question_id for a in recent] == ["recent", "latest"]

    narrow = await store.list_with_lookback_window("user123", lookback=timedelta(days=1))
    assert [a.question_id for a in narrow] == ["latest"]


async def test_list_by_question_id(store, clock):
    await store.add_attempt(attempt(clock.now, question_id="q-1"))
    await store.add_attempt(attempt(clock.now + timedelta(minutes=1), question_id="q-2"))
    await store.add_attempt(
        attempt(clock.now + timedelta(minutes=2), question_id="q-1", attempt_number_for_question=2)
    )

    attempts = await store.list_by_question_id("user123", "q-1")
    assert [a.attempt_number_for_question for a in attempts] == [1, 2]


async def test_delete_attempt_removes_both_copies(store, clock):
    saved = await store.add_attempt(attempt(clock.now))

    await store.delete_attempt("user123", saved.attempt_id)

    assert await store.list_by_user_id("user123") == []
    assert await store.list_by_question_id("user123", "q-1") == []
    with pytest.raises(NotFoundException):
        await store.get_attempt("user123", saved.attempt_id)
    with pytest.raises(NotFoundException):
        await store.delete_attempt("user123", saved.attempt_id)


async def test_attempt_is_found_by_the_id_it_was_added_with(store, clock):
    await store.add_attempt(attempt(clock.now, attempt_id="2024-03-01T12:00:00+00:00"))

    fetched = await store.get_attempt("user123", "2024-03-01T12:00:00+00:00")
    assert fetched.attempt_id == "2024-03-01T12:00:00.000Z"
    assert (await store.get_attempt("user123", clock.now)).attempt_id == fetched.attempt_id

    await store.delete_attempt("user123", "2024-03-01T12:00:00+00:00")
    assert await store.list_by_user_id("user123") == []


async def test_lookup_with_malformed_attempt_id(store):
    with pytest.raises(ValidationException):
        await store.get_attempt("user123", "yesterday")

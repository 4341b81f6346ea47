import asyncio

import pytest

from quizstore.core.config import settings
from quizstore.core.exceptions import DuplicateException, NotFoundException, ValidationException
from quizstore.schemas.users import UserStatsUpdate, UserUpdate
from quizstore.services.users import LEADERBOARD, UserStore


@pytest.fixture
def store(kv, clock):
    return UserStore(kv, clock=clock)


async def leaderboard_rows(kv, user_id):
    return [key for key in await kv.list_keys(LEADERBOARD) if key[-1] == user_id]


async def test_create_and_get_user(store, clock):
    created = await store.create_user({"user_id": "user123", "display_name": "Alice"})
    assert created.created_at == clock.now

    user = await store.get_user("user123")
    assert user.display_name == "Alice"
    assert user.stats.questions_answered == 0
    assert user.stats.categories == {}
    assert user.created_at == clock.now


async def test_get_unknown_user(store):
    with pytest.raises(NotFoundException):
        await store.get_user("ghost")


async def test_concurrent_creation_has_one_winner(store, kv):
    results = await asyncio.gather(
        *(store.create_user({"user_id": "same", "display_name": f"Player {i}"}) for i in range(2)),
        return_exceptions=True,
    )

    assert sum(isinstance(result, DuplicateException) for result in results) == 1
    assert len(await store.list_users()) == 1
    assert await kv.count(LEADERBOARD) == 0


async def test_update_merges_stats_and_display_name(store):
    await store.create_user({"user_id": "user123", "display_name": "Alice"})

    updated = await store.update_user(
        {
            "user_id": "user123",
            "stats": {
                "questions_answered": 10,
                "questions_correct": 7,
                "categories": {"Cardiology": {"questions_answered": 4, "questions_correct": 3}},
            },
        }
    )
    assert updated.display_name == "Alice"
    assert updated.stats.questions_correct == 7

    renamed = await store.update_user(UserUpdate(user_id="user123", display_name="Alice B."))
    assert renamed.display_name == "Alice B."
    assert renamed.stats.questions_answered == 10
    assert renamed.stats.categories["Cardiology"].questions_correct == 3

    [entry] = await store.list_leaderboard()
    assert (entry.user_id, entry.display_name, entry.questions_correct) == ("user123", "Alice B.", 7)


async def test_leaderboard_is_sorted_by_score(store):
    for i in range(11):
        await store.create_user({"user_id": str(i), "display_name": f"User {i}"})
        await store.update_user(
            {"user_id": str(i), "stats": {"questions_answered": i, "questions_correct": i}}
        )

    leaderboard = await store.list_leaderboard()
    assert len(leaderboard) == 11
    assert leaderboard[0].user_id == "10"
    assert [entry.questions_correct for entry in leaderboard] == list(range(10, -1, -1))

    assert [entry.user_id for entry in await store.list_leaderboard(limit=3)] == ["10", "9", "8"]


async def test_score_changes_keep_exactly_one_leaderboard_entry(store, kv):
    await store.create_user({"user_id": "user123", "display_name": "Alice"})

    for answered, correct in [(1, 1), (2, 1), (5, 4), (6, 2), (6, 2)]:
        await store.update_user(
            {"user_id": "user123", "stats": {"questions_answered": answered, "questions_correct": correct}}
        )
        rows = await leaderboard_rows(kv, "user123")
        assert rows == [(*LEADERBOARD, correct, "user123")]
        [entry] = await store.list_leaderboard()
        assert entry.questions_correct == (await store.get_user("user123")).stats.questions_correct


async def test_category_increment(store):
    await store.create_user({"user_id": "user123", "display_name": "Alice"})

    await store.update_user(
        {"user_id": "user123", "stats": {"questions_answered": 1, "questions_correct": 1}},
        category="Trauma",
        is_correct=True,
    )
    user = await store.update_user(
        {"user_id": "user123", "stats": {"questions_answered": 2}},
        category="Trauma",
        is_correct=False,
    )

    assert user.stats.categories["Trauma"].questions_answered == 2
    assert user.stats.categories["Trauma"].questions_correct == 1
    assert user.stats.questions_answered == 2
    assert user.stats.questions_correct == 1


async def test_record_answer_counts_on_top_of_stored_stats(store):
    await store.create_user({"user_id": "user123", "display_name": "Alice"})

    await store.record_answer("user123", "Airway", is_correct=True)
    user = await store.record_answer("user123", "Airway")

    assert user.stats.questions_answered == 2
    assert user.stats.questions_correct == 1
    assert user.stats.categories["Airway"].questions_answered == 2
    [entry] = await store.list_leaderboard()
    assert entry.questions_correct == 1


async def test_concurrent_answers_are_not_lost(store, kv, monkeypatch):
    monkeypatch.setattr(settings, "COMMIT_MAX_ATTEMPTS", 50)
    await store.create_user({"user_id": "user123", "display_name": "Alice"})

    await asyncio.gather(*(store.record_answer("user123", "Airway", is_correct=True) for _ in range(8)))

    user = await store.get_user("user123")
    assert user.stats.questions_answered == 8
    assert user.stats.questions_correct == 8
    assert user.stats.categories["Airway"].questions_correct == 8
    assert await leaderboard_rows(kv, "user123") == [(*LEADERBOARD, 8, "user123")]


async def test_inconsistent_stats_are_rejected(store):
    await store.create_user({"user_id": "user123", "display_name": "Alice"})

    with pytest.raises(ValidationException):
        await store.update_user(
            UserUpdate(user_id="user123", stats=UserStatsUpdate(questions_answered=1, questions_correct=3))
        )
    with pytest.raises(ValidationException):
        await store.update_user({"user_id": "user123", "stats": {"questions_answered": -1}})

    assert (await store.get_user("user123")).stats.questions_correct == 0


async def test_update_unknown_user(store):
    with pytest.raises(NotFoundException):
        await store.update_user({"user_id": "ghost", "display_name": "Nobody"})


async def test_delete_user_removes_leaderboard_entry(store, kv):
    await store.create_user({"user_id": "user123", "display_name": "Alice"})
    await store.record_answer("user123", is_correct=True)

    await store.delete_user("user123")

    with pytest.raises(NotFoundException):
        await store.get_user("user123")
    assert await store.list_leaderboard() == []
    assert await kv.count(LEADERBOARD) == 0


async def test_leaderboard_limit_zero_returns_nothing(store):
    await store.create_user({"user_id": "user123", "display_name": "Alice"})
    await store.record_answer("user123", is_correct=True)

    assert await store.list_leaderboard(limit=0) == []
    assert len(await store.list_leaderboard(limit=None)) == 1


async def test_leaderboard_read_during_score_change_lists_every_user(store, kv, monkeypatch):
    for i in range(3):
        await store.create_user({"user_id": str(i), "display_name": f"User {i}"})
        await store.update_user({"user_id": str(i), "stats": {"questions_answered": 5, "questions_correct": i}})
    read_range = kv._range
    updates = []

    async def range_then_update(*args, **kwargs):
        members = await read_range(*args, **kwargs)
        if not updates:
            updates.append(1)
            await store.update_user({"user_id": "1", "stats": {"questions_correct": 4}})
        return members

    monkeypatch.setattr(kv, "_range", range_then_update)

    leaderboard = await store.list_leaderboard()
    assert [(entry.user_id, entry.questions_correct) for entry in leaderboard] == [
        ("1", 4),
        ("2", 2),
        ("0", 0),
    ]

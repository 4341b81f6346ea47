import asyncio
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from quizstore.core.config import settings
from quizstore.core.exceptions import ConflictException, UnavailableException
from quizstore.db.keys import encode_key
from quizstore.db.kv import with_conflict_retry


async def test_get_absent_key(kv):
    entry = await kv.get(("users", "nobody"))
    assert entry.value is None
    assert entry.versionstamp is None
    assert not entry.exists


async def test_set_then_get_returns_value_and_versionstamp(kv):
    result = await kv.set(("users", "u1"), {"display_name": "Brian"})
    assert result.ok

    entry = await kv.get(("users", "u1"))
    assert entry.value == {"display_name": "Brian"}
    assert entry.versionstamp == result.versionstamp


async def test_every_write_changes_the_versionstamp(kv):
    first = await kv.set(("counter",), 1)
    second = await kv.set(("counter",), 1)
    assert first.versionstamp != second.versionstamp


async def test_delete_removes_value_and_index_member(kv):
    await kv.set(("users", "u1"), 1)
    await kv.delete(("users", "u1"))
    assert not (await kv.get(("users", "u1"))).exists
    assert await kv.count(("users",)) == 0


async def test_list_is_ordered_and_respects_prefix(kv):
    for score in (3, 10, 1):
        await kv.set(("leaderboard", score, "u"), score)
    await kv.set(("other", 5), 5)

    forward = [entry.value async for entry in kv.list(("leaderboard",))]
    backward = [entry.value async for entry in kv.list(("leaderboard",), reverse=True, limit=2)]

    assert forward == [1, 3, 10]
    assert backward == [10, 3]


async def test_list_start_and_end_bounds(kv):
    for day in ("01", "02", "03", "04"):
        await kv.set(("attempts", "u1", f"2024-03-{day}"), day)

    entries = kv.list(
        ("attempts", "u1"),
        start=("attempts", "u1", "2024-03-02"),
        end=("attempts", "u1", "2024-03-04"),
    )
    assert [entry.value async for entry in entries] == ["02", "03"]


async def test_list_retakes_snapshot_when_keys_move_mid_scan(kv, monkeypatch):
    for score in (0, 1, 2):
        await kv.set(("leaderboard", score, str(score)), str(score))
    read_range = kv._range
    moves = []

    async def range_then_move(*args, **kwargs):
        members = await read_range(*args, **kwargs)
        if not moves:
            moves.append(1)
            await kv.atomic().delete(("leaderboard", 1, "1")).set(("leaderboard", 4, "1"), "1").commit()
        return members

    monkeypatch.setattr(kv, "_range", range_then_move)

    entries = [entry async for entry in kv.list(("leaderboard",), reverse=True)]
    assert [entry.key for entry in entries] == [
        ("leaderboard", 4, "1"),
        ("leaderboard", 2, "2"),
        ("leaderboard", 0, "0"),
    ]


async def test_list_gives_up_when_keys_never_settle(kv, monkeypatch):
    monkeypatch.setattr(settings, "COMMIT_MAX_ATTEMPTS", 3)
    await kv.set(("items", 0), 0)
    read_range = kv._range
    writes = []

    async def range_then_write(*args, **kwargs):
        members = await read_range(*args, **kwargs)
        writes.append(1)
        await kv.set(("items", len(writes)), len(writes))
        return members

    monkeypatch.setattr(kv, "_range", range_then_write)

    with pytest.raises(ConflictException):
        [entry async for entry in kv.list(("items",))]
    assert len(writes) == 3


async def test_list_skips_members_whose_value_was_reclaimed(kv, redis_client):
    await kv.set(("streaks", "a"), 1)
    await kv.set(("streaks", "b"), 2)
    # simulate the engine TTL removing the hash but not the index member
    await redis_client.delete(f"test:{encode_key(('streaks', 'a'))}")

    assert [entry.key async for entry in kv.list(("streaks",))] == [("streaks", "b")]
    assert not (await kv.get(("streaks", "a"))).exists


async def test_set_with_expire_in_sets_engine_ttl(kv, redis_client):
    await kv.set(("streaks", "a"), 1, expire_in=60_000)
    ttl = await redis_client.pttl(f"test:{encode_key(('streaks', 'a'))}")
    assert 0 < ttl <= 60_000


async def test_plain_set_clears_a_previous_ttl(kv, redis_client):
    await kv.set(("sessions", "a"), 1, expire_in=60_000)
    await kv.set(("sessions", "a"), 2)
    assert await redis_client.pttl(f"test:{encode_key(('sessions', 'a'))}") == -1


async def test_commit_applies_all_mutations_together(kv):
    await kv.set(("leaderboard", 1, "u1"), "old")
    result = await (
        kv.atomic()
        .check(("users", "u1"), None)
        .set(("users", "u1"), {"score": 2})
        .delete(("leaderboard", 1, "u1"))
        .set(("leaderboard", 2, "u1"), "new")
        .commit()
    )
    assert result.ok
    assert [entry.key async for entry in kv.list(("leaderboard",))] == [("leaderboard", 2, "u1")]
    entry = await kv.get(("users", "u1"))
    assert entry.versionstamp == result.versionstamp


async def test_failed_check_applies_nothing(kv):
    await kv.set(("users", "u1"), "existing")
    result = await (
        kv.atomic()
        .check(("users", "u1"), None)
        .set(("users", "u1"), "overwritten")
        .set(("leaderboard", 0, "u1"), "entry")
        .commit()
    )
    assert not result.ok
    assert (await kv.get(("users", "u1"))).value == "existing"
    assert await kv.count(("leaderboard",)) == 0


async def test_stale_versionstamp_fails(kv):
    await kv.set(("users", "u1"), 1)
    stale = await kv.get(("users", "u1"))
    await kv.set(("users", "u1"), 2)

    result = await kv.atomic().check(stale.key, stale.versionstamp).set(stale.key, 3).commit()
    assert not result.ok
    assert (await kv.get(("users", "u1"))).value == 2


async def test_concurrent_creates_of_one_key_have_one_winner(kv):
    async def create(value):
        return await kv.atomic().check(("users", "u1"), None).set(("users", "u1"), value).commit()

    results = await asyncio.gather(*(create(i) for i in range(5)))
    assert sum(result.ok for result in results) == 1


async def test_get_many_reads_several_keys(kv):
    await kv.set(("a",), 1)
    entries = await kv.get_many([("a",), ("b",)])
    assert [entry.value for entry in entries] == [1, None]


async def test_reads_retry_then_raise_unavailable(kv, redis_client, monkeypatch):
    monkeypatch.setattr(settings, "KV_RETRY_DELAY", 0)
    failing = AsyncMock(side_effect=RedisConnectionError("down"))
    monkeypatch.setattr(redis_client, "hgetall", failing)

    with pytest.raises(UnavailableException):
        await kv.get(("users", "u1"))
    assert failing.await_count == settings.KV_RETRY_ATTEMPTS


async def test_reads_recover_after_transient_failure(kv, redis_client, monkeypatch):
    monkeypatch.setattr(settings, "KV_RETRY_DELAY", 0)
    monkeypatch.setattr(
        redis_client,
        "hgetall",
        AsyncMock(side_effect=[RedisConnectionError("blip"), {}]),
    )
    assert not (await kv.get(("users", "u1"))).exists


async def test_conflict_retry_gives_up_after_bound():
    calls = []

    @with_conflict_retry(max_attempts=3)
    async def always_conflicts():
        calls.append(1)
        raise ConflictException()

    with pytest.raises(ConflictException):
        await always_conflicts()
    assert len(calls) == 3


async def test_conflict_retry_returns_first_success():
    calls = []

    @with_conflict_retry(max_attempts=3)
    async def conflicts_once():
        calls.append(1)
        if len(calls) == 1:
            raise ConflictException()
        return "done"

    assert await conflicts_once() == "done"
    assert len(calls) == 2

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest
from sqlalchemy.exc import OperationalError

from src.notifications.errors import StoreUnavailableError
from src.storage.repository import InMemoryTokenStore, SqlTokenStore


def _ticking_clock():
    start = datetime(2025, 1, 1, tzinfo=timezone.utc)
    ticks = count()
    return lambda: start + timedelta(minutes=next(ticks))


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        return InMemoryTokenStore(clock=_ticking_clock())
    session_local = request.getfixturevalue("session_local")
    return SqlTokenStore(session_local, clock=_ticking_clock())


def test_reregistration_updates_single_record(store) -> None:
    asyncio.run(store.add_token("u1", "t-1", "pixel"))
    first = asyncio.run(store.get_tokens("u1"))
    asyncio.run(store.add_token("u1", "t-1", "pixel-8"))
    second = asyncio.run(store.get_tokens("u1"))

    assert len(second) == 1
    assert second[0].device == "pixel-8"
    assert second[0].last_used > first[0].last_used


def test_unknown_user_has_no_tokens(store) -> None:
    assert asyncio.run(store.get_tokens("nobody")) == []
    assert asyncio.run(store.get_tokens_for_many(["nobody"])) == {}


def test_get_tokens_for_many_omits_missing_users(store) -> None:
    async def scenario():
        await store.add_token("u1", "a", None)
        await store.add_token("u1", "b", None)
        await store.add_token("u2", "c", "ipad")
        return await store.get_tokens_for_many(["u1", "u2", "u3"])

    grouped = asyncio.run(scenario())

    assert set(grouped) == {"u1", "u2"}
    assert [r.token for r in grouped["u1"]] == ["a", "b"]
    assert grouped["u2"][0].device == "ipad"


def test_remove_token_is_idempotent_and_scoped(store) -> None:
    async def scenario():
        await store.add_token("u1", "shared", None)
        await store.add_token("u2", "shared", None)
        await store.remove_token("u1", "shared")
        await store.remove_token("u1", "shared")
        return await store.get_tokens("u1"), await store.get_tokens("u2")

    u1_tokens, u2_tokens = asyncio.run(scenario())

    assert u1_tokens == []
    assert [r.token for r in u2_tokens] == ["shared"]


def test_remove_token_everywhere(store) -> None:
    async def scenario():
        await store.add_token("u1", "shared", None)
        await store.add_token("u1", "keep", None)
        await store.add_token("u2", "shared", None)
        await store.remove_token_everywhere("shared")
        await store.remove_token_everywhere("shared")
        return await store.get_tokens_for_many(["u1", "u2"])

    grouped = asyncio.run(scenario())

    assert set(grouped) == {"u1"}
    assert [r.token for r in grouped["u1"]] == ["keep"]


def test_concurrent_registrations_do_not_duplicate(store) -> None:
    async def scenario():
        await asyncio.gather(*(store.add_token("u1", "t-1", f"device-{i}") for i in range(10)))
        return await store.get_tokens("u1")

    records = asyncio.run(scenario())

    assert len(records) == 1


def test_sql_errors_surface_as_store_unavailable() -> None:
    class BrokenSession:
        def __enter__(self):
            raise OperationalError("SELECT 1", {}, Exception("connection refused"))

        def __exit__(self, *exc_info):
            return False

    store = SqlTokenStore(lambda: BrokenSession())

    with pytest.raises(StoreUnavailableError):
        asyncio.run(store.get_tokens("u1"))


def test_interleaved_add_and_remove_for_one_user(store) -> None:
    async def scenario():
        calls = []
        for i in range(5):
            calls += [
                store.add_token("u1", "t-1", f"phone-{i}"),
                store.remove_token("u1", "t-1"),
                store.add_token("u1", "t-2", None),
                store.remove_token_everywhere("t-2"),
            ]
        await asyncio.gather(*calls)
        after_race = await store.get_tokens("u1")
        await store.add_token("u1", "t-1", "phone-final")
        return after_race, await store.get_tokens("u1")

    after_race, final = asyncio.run(scenario())

    tokens = [r.token for r in after_race]
    assert len(tokens) == len(set(tokens))
    assert set(tokens) <= {"t-1", "t-2"}
    assert [r.token for r in final].count("t-1") == 1
    assert next(r for r in final if r.token == "t-1").device == "phone-final"


def test_many_user_lookup_spans_chunks(session_local, monkeypatch) -> None:
    from src.storage import repository

    monkeypatch.setattr(repository, "USER_LOOKUP_CHUNK_SIZE", 2)
    store = SqlTokenStore(session_local, clock=_ticking_clock())

    async def scenario():
        for i in range(5):
            await store.add_token(f"user-{i}", f"token-{i}", None)
        return await store.get_tokens_for_many([f"user-{i}" for i in range(6)])

    grouped = asyncio.run(scenario())

    assert set(grouped) == {f"user-{i}" for i in range(5)}
    assert [r.token for r in grouped["user-4"]] == ["token-4"]


def test_large_user_list_lookup(session_local) -> None:
    store = SqlTokenStore(session_local)

    async def scenario():
        await store.add_token("user-1999", "last-token", None)
        return await store.get_tokens_for_many([f"user-{i}" for i in range(2000)])

    grouped = asyncio.run(scenario())

    assert list(grouped) == ["user-1999"]

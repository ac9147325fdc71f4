import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from yieldwatch.db import client as db_client
from yieldwatch.db.client import Database, _is_transient, health_check


class FakeQuery:
    """Records the PostgREST builder chain and returns canned rows on execute()."""

    def __init__(self, table: str, log: list, data=None, count=None):
        self.table = table
        self.log = log
        self.data = data if data is not None else []
        self.count = count

    def __getattr__(self, name):
        def step(*args, **kwargs):
            self.log.append((self.table, name, args, kwargs))
            return self
        return step

    def execute(self):
        return SimpleNamespace(data=self.data, count=self.count)


class FakeSupabase:
    def __init__(self, data=None, count=None):
        self.log: list = []
        self.data = data
        self.count = count

    def table(self, name):
        return FakeQuery(name, self.log, self.data, self.count)


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(db_client, "DB_RETRY_BASE_DELAY", 0)


def test_transient_errors_are_retried() -> None:
    db = Database(FakeSupabase())
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("Connection reset by peer")
        return "ok"

    assert asyncio.run(db._exec(flaky, "flaky")) == "ok"
    assert len(attempts) == 3
    assert db.metrics()["retries"] == 2


def test_non_transient_errors_raise_immediately() -> None:
    db = Database(FakeSupabase())
    attempts = []

    def broken():
        attempts.append(1)
        raise ValueError("duplicate key value violates unique constraint")

    with pytest.raises(ValueError):
        asyncio.run(db._exec(broken, "broken"))
    assert len(attempts) == 1


def test_is_transient() -> None:
    assert _is_transient(Exception("503 Service Unavailable"))
    assert _is_transient(Exception("Too Many Requests"))
    assert not _is_transient(Exception("permission denied for table pendle_pools"))


def test_upsert_pool_uses_composite_key() -> None:
    sb = FakeSupabase(data=[{"id": "pool-uuid"}])
    db = Database(sb)
    pool_id = asyncio.run(db.upsert_pool({"chain_id": 1, "market_address": "0xm"}))

    assert pool_id == "pool-uuid"
    (table, step, args, kwargs), = [entry for entry in sb.log if entry[1] == "upsert"]
    assert table == "pendle_pools"
    assert kwargs == {"on_conflict": "chain_id,market_address"}


def test_upsert_pool_without_row_raises() -> None:
    db = Database(FakeSupabase(data=[]))
    with pytest.raises(RuntimeError):
        asyncio.run(db.upsert_pool({"chain_id": 1, "market_address": "0xm"}))


def test_latest_rates_query_each_pool_with_limit_one() -> None:
    sb = FakeSupabase(data=[{"pool_id": "x", "implied_apy": 0.06}])
    latest = asyncio.run(Database(sb).get_latest_rates(["a", "b"]))

    assert set(latest) == {"a", "b"}
    steps = [(step, args, kwargs) for _, step, args, kwargs in sb.log]
    assert sorted(args for step, args, _ in steps if step == "eq") == [("pool_id", "a"), ("pool_id", "b")]
    assert [args for step, args, _ in steps if step == "limit"] == [(1,), (1,)]
    assert ("order", ("recorded_at",), {"desc": True}) in steps
    assert not any(step == "in_" for step, _, _ in steps)
    assert asyncio.run(Database(sb).get_latest_rates([])) == {}


def test_has_recent_alert_filters_on_window() -> None:
    sb = FakeSupabase(data=[{"id": "alert-1"}])
    before = datetime.now(timezone.utc)
    assert asyncio.run(Database(sb).has_recent_alert("pool-1", "yield_divergence")) is True

    (since,) = [args[1] for _, step, args, _ in sb.log if step == "gte" and args[0] == "created_at"]
    since = datetime.fromisoformat(since)
    assert before - timedelta(hours=24, seconds=5) <= since <= before - timedelta(hours=23, minutes=59)


def test_counts_and_alert_lookup() -> None:
    db = Database(FakeSupabase(data=[], count=7))
    assert asyncio.run(db.count_pools()) == 7
    assert asyncio.run(db.count_new_alerts()) == 7
    assert asyncio.run(db.get_alert("3f1c2a9e-8b7d-4c6e-9a5b-1d2e3f4a5b6c")) is None
    assert asyncio.run(db.has_recent_alert("pool-1", "yield_divergence")) is False


def test_insert_alerts_skips_empty_batch() -> None:
    sb = FakeSupabase()
    asyncio.run(Database(sb).insert_alerts([]))
    assert sb.log == []


def test_health_check() -> None:
    assert asyncio.run(health_check(FakeSupabase())) is True
    assert asyncio.run(health_check(None)) is False

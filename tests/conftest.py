"""Shared fakes: an aiohttp-like session, a Firecrawl stub and an in-memory Database."""

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import pytest


class FakeResponse:
    def __init__(self, status: int = 200, payload=None, text: str = "", error: Exception = None):
        self.status = status
        self._payload = payload
        self._text = text
        self._error = error

    async def json(self, content_type=None):
        if self._error:
            raise self._error
        return self._payload

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Routes every request through handler(method, url, kwargs) -> FakeResponse."""

    def __init__(self, handler: Callable):
        self.handler = handler
        self.calls: List[tuple] = []
        self.closed = False

    def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        return self.handler("GET", url, kwargs)

    def post(self, url, **kwargs):
        self.calls.append(("POST", url, kwargs))
        return self.handler("POST", url, kwargs)

    async def close(self):
        self.closed = True


class FakeFirecrawl:
    def __init__(self, pages: Optional[Dict[str, str]] = None, default: str = ""):
        self.pages = pages or {}
        self.default = default
        self.calls: List[tuple] = []
        self.closed = False

    async def scrape(self, url, wait_for_ms=8000, timeout_ms=None):
        self.calls.append((url, wait_for_ms, timeout_ms))
        return self.pages.get(url, self.default)

    async def close(self):
        self.closed = True

    def metrics(self):
        return {"fetch_count": len(self.calls)}


class FakeDB:
    """In-memory stand-in for yieldwatch.db.client.Database."""

    def __init__(self):
        self.pools: Dict[tuple, dict] = {}
        self.rates: List[dict] = []
        self.alerts: List[dict] = []
        self.fail_on: set = set()  # market_addresses whose upsert raises
        self.reject_alerts_for: set = set()  # pool_ids whose alert rows are rejected

    async def upsert_pool(self, row):
        if row["market_address"] in self.fail_on:
            raise RuntimeError("simulated upsert failure")
        key = (row["chain_id"], row["market_address"])
        if key not in self.pools:
            self.pools[key] = {"id": f"pool-{len(self.pools) + 1}",
                               "created_at": datetime.now(timezone.utc).isoformat()}
        self.pools[key].update(row)
        return self.pools[key]["id"]

    async def get_latest_rate(self, pool_id):
        rows = [r for r in self.rates if r["pool_id"] == pool_id]
        return rows[-1] if rows else None

    async def insert_rate(self, row):
        self.rates.append(dict(row))

    async def insert_alerts(self, rows):
        if any(row["pool_id"] in self.reject_alerts_for for row in rows):
            raise RuntimeError("simulated alert insert failure")
        for row in rows:
            self.alerts.append({"id": f"alert-{len(self.alerts) + 1}", "status": "new",
                                "created_at": datetime.now(timezone.utc).isoformat(), **row})

    async def has_recent_alert(self, pool_id, alert_type, hours=24):
        since = datetime.now(timezone.utc) - timedelta(hours=hours)
        return any(
            a["pool_id"] == pool_id and a["alert_type"] == alert_type
            and datetime.fromisoformat(a["created_at"]) >= since
            for a in self.alerts
        )

    async def get_alert(self, alert_id):
        return next((a for a in self.alerts if a["id"] == alert_id), None)

    async def update_alert(self, alert_id, updates):
        alert = await self.get_alert(alert_id)
        alert.update(updates)

    async def list_pools(self):
        return list(self.pools.values())

    async def get_latest_rates(self, pool_ids):
        latest = {}
        for row in self.rates:
            if row["pool_id"] in pool_ids:
                latest[row["pool_id"]] = row
        return latest

    async def new_pools(self, hours=24):
        return list(self.pools.values())

    async def recent_alerts(self, alert_type, hours=1):
        return [a for a in self.alerts if a["alert_type"] == alert_type]

    async def pool_chain_ids(self):
        return [p["chain_id"] for p in self.pools.values()]

    async def count_pools(self):
        return len(self.pools)

    async def count_new_alerts(self):
        return sum(1 for a in self.alerts if a.get("status") == "new")

    def metrics(self):
        return {"operations": 0}


@pytest.fixture()
def fake_db() -> FakeDB:
    return FakeDB()

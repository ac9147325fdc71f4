"""
Supabase DB client wrapper — all CRUD for pools, rate snapshots and alerts.
Includes retry on transient errors, operation timeouts, and metrics.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Optional, List

from supabase import create_client, Client

from yieldwatch.markets.models import POOLS_TABLE, RATES_TABLE, ALERTS_TABLE


DB_OPERATION_TIMEOUT = 10.0    # seconds per DB operation
DB_RETRY_ATTEMPTS = 3          # retries on transient errors
DB_RETRY_BASE_DELAY = 0.5     # seconds, exponential backoff base

# Transient error substrings that trigger retry
_TRANSIENT_ERRORS = (
    "timeout", "connection", "unavailable", "502", "503", "504",
    "broken pipe", "reset by peer", "socket", "network",
    "too many requests", "rate limit",
)

RATE_HISTORY_LIMIT = 100
ALERT_LIST_LIMIT = 50
LATEST_RATE_CONCURRENCY = 8    # parallel per-pool reads in get_latest_rates


def init_supabase(url: str, key: str) -> Client:
    """Initialize and return a Supabase client."""
    return create_client(url, key)


async def health_check(client: Client) -> bool:
    """Health check — actually queries Supabase to verify connectivity."""
    try:
        if client is None or not hasattr(client, "table"):
            return False
        result = await asyncio.to_thread(
            lambda: client.table(POOLS_TABLE).select("id", count="exact").limit(0).execute()
        )
        return result is not None
    except Exception:
        return False


def _is_transient(e: Exception) -> bool:
    """Check if an exception is transient and worth retrying."""
    msg = str(e).lower()
    return any(kw in msg for kw in _TRANSIENT_ERRORS)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


class Database:
    """Async wrapper around Supabase client for pool/rate/alert tables.

    All operations retry on transient errors with exponential backoff
    and have a per-operation timeout.
    """

    def __init__(self, client: Client):
        self.client = client
        # Metrics
        self._op_count = 0
        self._op_errors = 0
        self._op_retries = 0
        self._total_latency_ms = 0.0

    async def _exec(self, fn, label: str = "db_op"):
        """Execute a Supabase operation with retry, timeout, and metrics.

        Args:
            fn: callable returning a Supabase execute() result
            label: operation name for logging
        """
        last_err = None
        for attempt in range(DB_RETRY_ATTEMPTS):
            t0 = time.monotonic()
            try:
                result = await asyncio.wait_for(
                    asyncio.to_thread(fn),
                    timeout=DB_OPERATION_TIMEOUT,
                )
                latency = (time.monotonic() - t0) * 1000
                self._op_count += 1
                self._total_latency_ms += latency
                return result
            except asyncio.TimeoutError:
                self._op_errors += 1
                last_err = RuntimeError(f"DB operation '{label}' timed out after {DB_OPERATION_TIMEOUT}s")
                self._op_retries += 1
            except Exception as e:
                self._op_errors += 1
                last_err = e
                if _is_transient(e) and attempt < DB_RETRY_ATTEMPTS - 1:
                    delay = DB_RETRY_BASE_DELAY * (2 ** attempt)
                    print(f"[DB] {label} transient error (attempt {attempt+1}): {e}. "
                          f"Retry in {delay:.1f}s")
                    self._op_retries += 1
                    await asyncio.sleep(delay)
                    continue
                raise  # non-transient or last attempt

        raise last_err

    # ------------------------------------------------------------------
    # Pools
    # ------------------------------------------------------------------

    async def upsert_pool(self, row: dict) -> str:
        """Insert or update a pool keyed on (chain_id, market_address), return its ID."""
        result = await self._exec(
            lambda: self.client.table(POOLS_TABLE)
                .upsert(row, on_conflict="chain_id,market_address")
                .execute(),
            f"upsert_pool({row.get('market_address', '')[:20]})",
        )
        if not result.data:
            raise RuntimeError(f"upsert_pool returned no row for {row.get('market_address')}")
        return result.data[0]["id"]

    async def list_pools(self) -> List[dict]:
        """All pools, soonest expiry first."""
        result = await self._exec(
            lambda: self.client.table(POOLS_TABLE)
                .select("*")
                .order("expiry")
                .execute(),
            "list_pools",
        )
        return result.data or []

    async def count_pools(self) -> int:
        result = await self._exec(
            lambda: self.client.table(POOLS_TABLE).select("id", count="exact").limit(0).execute(),
            "count_pools",
        )
        return result.count if hasattr(result, 'count') and result.count is not None else 0

    async def pool_chain_ids(self) -> List[int]:
        result = await self._exec(
            lambda: self.client.table(POOLS_TABLE).select("chain_id").execute(),
            "pool_chain_ids",
        )
        return [row["chain_id"] for row in (result.data or [])]

    async def new_pools(self, hours: int = 24) -> List[dict]:
        """Pools first seen within the last `hours`, newest first."""
        since = _iso(datetime.now(timezone.utc) - timedelta(hours=hours))
        result = await self._exec(
            lambda: self.client.table(POOLS_TABLE)
                .select("*")
                .gte("created_at", since)
                .order("created_at", desc=True)
                .execute(),
            "new_pools",
        )
        return result.data or []

    # ------------------------------------------------------------------
    # Rate snapshots
    # ------------------------------------------------------------------

    async def get_latest_rate(self, pool_id: str) -> Optional[dict]:
        result = await self._exec(
            lambda: self.client.table(RATES_TABLE)
                .select("*")
                .eq("pool_id", pool_id)
                .order("recorded_at", desc=True)
                .limit(1)
                .execute(),
            f"get_latest_rate({pool_id[:8]})",
        )
        return result.data[0] if result.data else None

    async def insert_rate(self, row: dict):
        await self._exec(
            lambda: self.client.table(RATES_TABLE).insert(row).execute(),
            f"insert_rate({str(row.get('pool_id', ''))[:8]})",
        )

    async def get_rate_history(self, pool_id: str, limit: int = RATE_HISTORY_LIMIT) -> List[dict]:
        """Oldest-first snapshots for charting."""
        result = await self._exec(
            lambda: self.client.table(RATES_TABLE)
                .select("*")
                .eq("pool_id", pool_id)
                .order("recorded_at")
                .limit(limit)
                .execute(),
            f"get_rate_history({pool_id[:8]})",
        )
        return result.data or []

    async def get_latest_rates(self, pool_ids: List[str]) -> dict:
        """Map pool_id → most recent snapshot, one limit-1 query per pool."""
        pool_ids = list(pool_ids)
        sem = asyncio.Semaphore(LATEST_RATE_CONCURRENCY)

        async def _one(pid: str) -> Optional[dict]:
            async with sem:
                return await self.get_latest_rate(pid)

        rows = await asyncio.gather(*(_one(pid) for pid in pool_ids))
        return {pid: row for pid, row in zip(pool_ids, rows) if row is not None}

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def insert_alerts(self, rows: List[dict]):
        if not rows:
            return
        await self._exec(
            lambda: self.client.table(ALERTS_TABLE).insert(rows).execute(),
            f"insert_alerts({len(rows)})",
        )

    async def has_recent_alert(self, pool_id: str, alert_type: str, hours: int = 24) -> bool:
        since = _iso(datetime.now(timezone.utc) - timedelta(hours=hours))
        result = await self._exec(
            lambda: self.client.table(ALERTS_TABLE)
                .select("id")
                .eq("pool_id", pool_id)
                .eq("alert_type", alert_type)
                .gte("created_at", since)
                .limit(1)
                .execute(),
            f"has_recent_alert({pool_id[:8]},{alert_type})",
        )
        return bool(result.data)

    async def get_alert(self, alert_id: str) -> Optional[dict]:
        """Single alert joined with its pool (under the `pendle_pools` key)."""
        result = await self._exec(
            lambda: self.client.table(ALERTS_TABLE)
                .select(f"*, {POOLS_TABLE}(*)")
                .eq("id", alert_id)
                .limit(1)
                .execute(),
            f"get_alert({alert_id[:8]})",
        )
        return result.data[0] if result.data else None

    async def update_alert(self, alert_id: str, updates: dict):
        await self._exec(
            lambda: self.client.table(ALERTS_TABLE).update(updates).eq("id", alert_id).execute(),
            f"update_alert({alert_id[:8]})",
        )

    async def list_alerts(self, limit: int = ALERT_LIST_LIMIT) -> List[dict]:
        """Most recent alerts, joined with their pool."""
        result = await self._exec(
            lambda: self.client.table(ALERTS_TABLE)
                .select(f"*, {POOLS_TABLE}(*)")
                .order("created_at", desc=True)
                .limit(limit)
                .execute(),
            "list_alerts",
        )
        return result.data or []

    async def recent_alerts(self, alert_type: str, hours: int = 1) -> List[dict]:
        """Non-dismissed alerts of one type within the last `hours`, with pool."""
        since = _iso(datetime.now(timezone.utc) - timedelta(hours=hours))
        result = await self._exec(
            lambda: self.client.table(ALERTS_TABLE)
                .select(f"*, {POOLS_TABLE}(*)")
                .eq("alert_type", alert_type)
                .neq("status", "dismissed")
                .gte("created_at", since)
                .order("created_at", desc=True)
                .execute(),
            f"recent_alerts({alert_type})",
        )
        return result.data or []

    async def count_new_alerts(self) -> int:
        result = await self._exec(
            lambda: self.client.table(ALERTS_TABLE)
                .select("id", count="exact")
                .eq("status", "new")
                .limit(0)
                .execute(),
            "count_new_alerts",
        )
        return result.count if hasattr(result, 'count') and result.count is not None else 0

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def metrics(self) -> dict:
        avg_lat = (self._total_latency_ms / max(self._op_count, 1))
        return {
            "operations": self._op_count,
            "errors": self._op_errors,
            "retries": self._op_retries,
            "avg_latency_ms": round(avg_lat, 1),
        }

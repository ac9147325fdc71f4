"""
yieldwatch — Entry point.
Wires sources, scanner and DB, and exposes the read/review commands.

Usage:
    python3 main.py run                       # Background scan loop (Ctrl+C to stop)
    python3 main.py scan [--source pendle]    # One scan pass, then exit
    python3 main.py smoke                     # Connectivity check (Supabase + APIs)
    python3 main.py pools [--lowest]          # Active pools with latest rates
    python3 main.py alerts [--drops --sort change|time|apy]
    python3 main.py new-pools [--sort time|liquidity|expiry]
    python3 main.py history POOL_ID           # Rate history (oldest first)
    python3 main.py stats
    python3 main.py analyze ALERT_ID          # AI cause analysis → status reviewed
    python3 main.py dismiss ALERT_ID
"""

import argparse
import asyncio
import sys

from yieldwatch.config import (
    SUPABASE_URL,
    SUPABASE_KEY,
    PENDLE_API_URL,
    RATEX_API_URL,
    FIRECRAWL_API_URL,
    FIRECRAWL_API_KEY,
    PERPLEXITY_API_KEY,
    ENABLED_SOURCES,
    RATEX_SCRAPE_IMPLIED,
    SCAN_INTERVAL_SEC,
    HTTP_TIMEOUT_SEC,
    VERBOSE,
    print_config_summary,
)
from yieldwatch.alerts.analyzer import AlertAnalyzer, AlertNotFound, AnalysisError, dismiss_alert
from yieldwatch.db.client import init_supabase, health_check, Database
from yieldwatch.markets import views
from yieldwatch.markets.models import KNOWN_VENUES
from yieldwatch.markets.scanner import YieldScanner, build_sources
from yieldwatch.sources.base import SourceError


def _db() -> Database:
    return Database(init_supabase(SUPABASE_URL, SUPABASE_KEY))


def _sources(venues=None) -> list:
    return build_sources(
        venues or ENABLED_SOURCES,
        pendle_api_url=PENDLE_API_URL,
        ratex_api_url=RATEX_API_URL,
        firecrawl_api_key=FIRECRAWL_API_KEY,
        firecrawl_api_url=FIRECRAWL_API_URL,
        ratex_scrape_implied=RATEX_SCRAPE_IMPLIED,
        http_timeout_sec=HTTP_TIMEOUT_SEC,
    )


async def smoke_test():
    """Smoke test: Supabase health + one Pendle page + one RateX call, then exit."""
    print("=" * 50)
    print("  yieldwatch — Smoke Test")
    print("=" * 50)
    print()
    print_config_summary()
    print()

    print("[DB] Connecting to Supabase...")
    sb = init_supabase(SUPABASE_URL, SUPABASE_KEY)
    ok = await health_check(sb)
    print(f"[DB] {'✅ supabase ok' if ok else '❌ health check failed'}")
    if not ok:
        sys.exit(1)

    failed = False
    for source in _sources():
        try:
            records = await source.fetch_markets()
            print(f"[SMOKE] ✅ {source.venue}: {len(records)} active markets")
        except SourceError as e:
            failed = True
            print(f"[SMOKE] ❌ {source.venue}: {e}", file=sys.stderr)
        finally:
            await source.close()

    print()
    print("=" * 50)
    print(f"  {'⚠️  SMOKE TEST: some sources failed' if failed else '✅ SMOKE TEST PASSED'}")
    print("=" * 50)
    if failed:
        sys.exit(1)


async def run_scanner():
    """Background scan loop until Ctrl+C."""
    print("=" * 50)
    print("  yieldwatch — Starting")
    print("=" * 50)
    print()
    print_config_summary()
    print()

    db = _db()
    scanner = YieldScanner(db, _sources(), interval_sec=SCAN_INTERVAL_SEC, verbose=VERBOSE)
    task = asyncio.create_task(scanner.run(), name="yield_scanner")
    try:
        await task
    except asyncio.CancelledError:
        pass
    finally:
        print("\n[MAIN] Shutting down...")
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        print(f"[MAIN] Stopped. {scanner.metrics()['scan_count']} scans run.")


async def scan_once(venue=None):
    db = _db()
    scanner = YieldScanner(db, _sources([venue] if venue else None), verbose=VERBOSE)
    try:
        results = await scanner.scan_once()
    finally:
        await scanner.close()
    for result in results.values():
        s = result.summary()
        print(f"  {s['venue']:<9} fetched={s['markets_fetched']:<4} processed={s['markets_processed']:<4} "
              f"alerts={s['alerts_generated']:<3} errors={s['errors']}")


async def show_pools(lowest: bool):
    pools = await views.active_pools(_db())
    if lowest:
        pools = views.lowest_yield(pools)
        print(f"Lowest implied yield ({len(pools)}):")
    else:
        print(f"Active pools ({len(pools)}):")
    for p in pools:
        rate = p.get("latest_rate") or {}
        print(f"  {p['name'][:40]:<40} {views.pool_chain(p):<12} "
              f"implied={views.format_apy(rate.get('implied_apy')):>8} "
              f"underlying={views.format_apy(rate.get('underlying_apy')):>8} "
              f"liq={views.format_usd(rate.get('liquidity')):>9}  {views.market_url(p)}")


def _print_alert(a: dict):
    pool = views.alert_pool(a)
    change = a.get("change_percent")
    print(f"  {a['id']}  {a.get('status', ''):<9} "
          f"{views.alert_label(a.get('alert_type', ''), change)}: {pool.get('name', '?')} "
          f"({views.pool_chain(pool)}) {views.format_apy(a.get('previous_value'))} → "
          f"{views.format_apy(a.get('current_value'))} ({float(change or 0):+.2f}%)")


async def show_alerts(drops: bool, sort_by: str):
    db = _db()
    if drops:
        alerts = await views.recent_implied_drops(db, sort_by)
        print(f"Implied APY drops, last hour ({len(alerts)}):")
    else:
        alerts = await db.list_alerts()
        print(f"Latest alerts ({len(alerts)}):")
    for a in alerts:
        _print_alert(a)


async def show_new_pools(sort_by: str):
    pools = await views.new_pools(_db(), sort_by)
    print(f"New pools, last 24h ({len(pools)}):")
    for p in pools:
        rate = p.get("latest_rate") or {}
        print(f"  {p['name'][:40]:<40} {views.pool_chain(p):<12} "
              f"implied={views.format_apy(rate.get('implied_apy')):>8} "
              f"liq={views.format_usd(rate.get('liquidity')):>9} created={p.get('created_at')}")


async def show_history(pool_id: str):
    rows = await _db().get_rate_history(pool_id)
    print(f"Rate history for {pool_id} ({len(rows)} points):")
    for r in rows:
        print(f"  {r.get('recorded_at')}  implied={views.format_apy(r.get('implied_apy'))} "
              f"underlying={views.format_apy(r.get('underlying_apy'))} "
              f"liq={views.format_usd(r.get('liquidity'))}")


async def show_stats():
    s = await views.stats(_db())
    print(f"Pools: {s['total_pools']} | New alerts: {s['new_alerts']} | Networks: {s['network_count']}")


async def analyze(alert_id: str):
    if not PERPLEXITY_API_KEY:
        print("FATAL: PERPLEXITY_API_KEY is not set", file=sys.stderr)
        sys.exit(1)
    analyzer = AlertAnalyzer(_db(), PERPLEXITY_API_KEY)
    try:
        result = await analyzer.analyze(alert_id)
    finally:
        await analyzer.close()
    print(result["analysis"])
    for url in result["sources"]:
        print(f"  - {url}")


async def dismiss(alert_id: str):
    result = await dismiss_alert(_db(), alert_id)
    print(f"Alert {result['id']}: {result['previous_status']} → {result['status']}")


def main():
    parser = argparse.ArgumentParser(description="yieldwatch — fixed-term yield pool monitor")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Background scan loop")
    p_scan = sub.add_parser("scan", help="One scan pass")
    p_scan.add_argument("--source", choices=KNOWN_VENUES, help="Scan a single venue")
    sub.add_parser("smoke", help="Connectivity check (connect + exit)")
    p_pools = sub.add_parser("pools", help="Active pools with latest rates")
    p_pools.add_argument("--lowest", action="store_true", help="Top 10 lowest implied APY")
    p_alerts = sub.add_parser("alerts", help="Latest alerts")
    p_alerts.add_argument("--drops", action="store_true", help="Implied APY drops in the last hour")
    p_alerts.add_argument("--sort", choices=views.DROP_SORTS, default="change")
    p_new = sub.add_parser("new-pools", help="Pools added in the last 24h")
    p_new.add_argument("--sort", choices=views.NEW_POOL_SORTS, default="time")
    p_hist = sub.add_parser("history", help="Rate history for a pool")
    p_hist.add_argument("pool_id")
    sub.add_parser("stats", help="Pool / alert / network counts")
    p_analyze = sub.add_parser("analyze", help="AI cause analysis for an alert")
    p_analyze.add_argument("alert_id")
    p_dismiss = sub.add_parser("dismiss", help="Dismiss an alert")
    p_dismiss.add_argument("alert_id")
    args = parser.parse_args()

    commands = {
        "run": lambda: run_scanner(),
        "scan": lambda: scan_once(args.source),
        "smoke": lambda: smoke_test(),
        "pools": lambda: show_pools(args.lowest),
        "alerts": lambda: show_alerts(args.drops, args.sort),
        "new-pools": lambda: show_new_pools(args.sort),
        "history": lambda: show_history(args.pool_id),
        "stats": lambda: show_stats(),
        "analyze": lambda: analyze(args.alert_id),
        "dismiss": lambda: dismiss(args.alert_id),
    }

    try:
        asyncio.run(commands[args.command]())
    except KeyboardInterrupt:
        print("\nStopped.")
    except (ValueError, AlertNotFound, AnalysisError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()

"""
yieldwatch scrape debugger.

Scrapes one venue page through Firecrawl, dumps the raw markdown and shows
what the parser recovers from it. Use when a venue redesign breaks parsing.

Usage:
    python3 scripts/debug_scrape.py spectra
    python3 scripts/debug_scrape.py exponent --save /tmp/exponent.md
    python3 scripts/debug_scrape.py ratex --symbol SOL-2511
    python3 scripts/debug_scrape.py spectra --file /tmp/spectra.md   # parse a saved dump

Requires: .env with FIRECRAWL_API_KEY (unless --file is given)
"""

import argparse
import asyncio
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

from yieldwatch.sources.exponent import (
    EXPONENT_INCOME_URL, SCRAPE_TIMEOUT_MS, SCRAPE_WAIT_MS as EXPONENT_WAIT_MS, parse_exponent_pools,
)
from yieldwatch.sources.firecrawl import FirecrawlClient, ScrapeError
from yieldwatch.sources.ratex import RATEX_APP_URL, SWAP_SCRAPE_WAIT_MS, parse_ratex_yields
from yieldwatch.sources.spectra import (
    SPECTRA_POOLS_URL, SCRAPE_WAIT_MS as SPECTRA_WAIT_MS, parse_spectra_pools,
)


async def fetch(venue: str, symbol: str) -> str:
    key = os.getenv("FIRECRAWL_API_KEY", "")
    if not key:
        print("[FAIL] FIRECRAWL_API_KEY not set in .env")
        sys.exit(1)
    client = FirecrawlClient(key, os.getenv("FIRECRAWL_API_URL", "https://api.firecrawl.dev/v1"))
    try:
        if venue == "spectra":
            return await client.scrape(SPECTRA_POOLS_URL, wait_for_ms=SPECTRA_WAIT_MS)
        if venue == "exponent":
            return await client.scrape(EXPONENT_INCOME_URL, wait_for_ms=EXPONENT_WAIT_MS,
                                       timeout_ms=SCRAPE_TIMEOUT_MS)
        return await client.scrape(f"{RATEX_APP_URL}/swap/{symbol}", wait_for_ms=SWAP_SCRAPE_WAIT_MS)
    finally:
        await client.close()


def report(venue: str, markdown: str):
    print(f"Markdown: {len(markdown)} chars")
    print("-" * 60)
    print(markdown[:2000])
    print("-" * 60)

    if venue == "spectra":
        pools = parse_spectra_pools(markdown)
        for p in pools:
            print(f"  {p.name:<30} {p.chain_name:<10} apy={p.max_apy:>6.2f}% "
                  f"liq=${p.liquidity:,.0f} expiry={p.expiry} addr={p.pool_address}")
    elif venue == "exponent":
        pools = parse_exponent_pools(markdown)
        for p in pools:
            print(f"  {p.name:<30} {p.pt_token:<22} apy={p.fixed_apy:>6.2f}% "
                  f"liq=${p.liquidity:,.0f} expiry={p.expiry}")
    else:
        yields = parse_ratex_yields(markdown)
        print(f"  {yields if yields else 'no Implied Yield figure found'}")
        return
    print(f"Parsed {len(pools)} pools")


def main():
    parser = argparse.ArgumentParser(description="Scrape a venue page and show parser output")
    parser.add_argument("venue", choices=("spectra", "exponent", "ratex"))
    parser.add_argument("--symbol", default="", help="RateX market symbol (ratex only)")
    parser.add_argument("--save", help="Write the raw markdown to this path")
    parser.add_argument("--file", help="Parse a saved markdown dump instead of scraping")
    args = parser.parse_args()

    if args.venue == "ratex" and not args.symbol and not args.file:
        parser.error("ratex needs --symbol")

    if args.file:
        with open(args.file, encoding="utf-8") as f:
            markdown = f.read()
    else:
        try:
            markdown = asyncio.run(fetch(args.venue, args.symbol))
        except ScrapeError as e:
            print(f"[FAIL] {e}")
            sys.exit(1)

    if args.save:
        with open(args.save, "w", encoding="utf-8") as f:
            f.write(markdown)
        print(f"Saved markdown to {args.save}")

    report(args.venue, markdown)


if __name__ == "__main__":
    main()

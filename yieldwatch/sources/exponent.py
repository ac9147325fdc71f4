"""
Exponent Finance (Solana) income markets — scraped from exponent.finance/income.

The page renders either a markdown table

    | Market | Your Positions | Liquidity | Fixed APY | Time Left |
    | --- | --- | --- | --- | --- |
    | ![..](..)eUSXSolstice PT-eUSX-01JUN26![..](..) | - | $957.80K | 8.56% | 113 days |

or, on narrow layouts, one card per market:

    eUSX
    Maturity: 1 Jun 2026
    Current Fixed APY
    8.56%
    $957.80K

The table is tried first; cards are the fallback. Expiry comes from the PT
symbol's date suffix (PT-eUSX-01JUN26) when present, else from "Time Left".
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from yieldwatch.markets.models import MarketRecord, VENUE_EXPONENT, VENUE_PREFIXES
from yieldwatch.sources.base import SourceError
from yieldwatch.sources.chains import SOLANA_EXPONENT_CHAIN_ID, chain_name
from yieldwatch.sources.normalize import (
    clean_markdown, parse_datetime, parse_money, slugify, to_float,
)

EXPONENT_INCOME_URL = "https://www.exponent.finance/income"
SCRAPE_WAIT_MS = 15000
SCRAPE_TIMEOUT_MS = 60000

# Exponent shows no variable yield; underlying APY is estimated from the fixed rate
UNDERLYING_APY_RATIO = 0.7

_MONTHS = {
    "JAN": 1, "FEB": 2, "MAR": 3, "APR": 4, "MAY": 5, "JUN": 6,
    "JUL": 7, "AUG": 8, "SEP": 9, "OCT": 10, "NOV": 11, "DEC": 12,
}

_IMAGE_RE = re.compile(r"!\[[^\]]*\]\([^)]*\)")
_BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_PT_RE = re.compile(r"PT-[\w+.\-]+")
_PT_PARTS_RE = re.compile(r"^PT-(?P<token>.+?)-(?P<day>\d{1,2})(?P<mon>[A-Z]{3})(?P<year>\d{2}|\d{4})$")
_APY_RE = re.compile(r"([\d.]+)\s*%")
_TIME_LEFT_RE = re.compile(r"(\d+)\s*(hours?|days?|weeks?|months?)", re.IGNORECASE)

_CARD_SPLIT_RE = re.compile(r"Current Fixed APY", re.IGNORECASE)
_CARD_APY_RE = re.compile(r"^\s*([\d.]+)\s*%")
_CARD_TOKEN_RE = re.compile(r"([A-Za-z0-9+]+)\s*\n\s*Maturity:", re.IGNORECASE)
_CARD_LINE_TOKEN_RE = re.compile(r"^\s*([A-Za-z0-9+]+)\s*$", re.MULTILINE)
_CARD_MATURITY_RE = re.compile(r"Maturity:\s*(\d{1,2}\s+[A-Za-z]+\s+\d{4})", re.IGNORECASE)
_CARD_LIQUIDITY_RE = re.compile(r"(\$[\d.,]+\s*[KMB])", re.IGNORECASE)


@dataclass
class ExponentPool:
    """One market as recovered from the page. fixed_apy is in percent."""
    token: str
    provider: str
    pt_token: str
    fixed_apy: float
    liquidity: float
    expiry: Optional[datetime]

    @property
    def name(self) -> str:
        return f"{self.token} ({self.provider})" if self.provider else self.token

    def to_record(self) -> MarketRecord:
        implied = self.fixed_apy / 100
        return MarketRecord(
            venue=VENUE_EXPONENT,
            chain_id=SOLANA_EXPONENT_CHAIN_ID,
            chain_name=chain_name(SOLANA_EXPONENT_CHAIN_ID),
            market_address=f"exponent-{slugify(self.pt_token)}",
            name=f"{VENUE_PREFIXES[VENUE_EXPONENT]} {self.name}",
            underlying_asset=self.token,
            pt_address=self.pt_token,
            expiry=self.expiry,
            implied_apy=implied,
            underlying_apy=implied * UNDERLYING_APY_RATIO,
            liquidity=self.liquidity,
        )


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def expiry_from_pt(pt_token: str) -> Optional[datetime]:
    """PT-eUSX-01JUN26 → 2026-06-01 00:00 UTC. None if the symbol has no date."""
    m = _PT_PARTS_RE.match(pt_token)
    if not m:
        return None
    month = _MONTHS.get(m.group("mon").upper())
    if month is None:
        return None
    year = int(m.group("year"))
    if year < 100:
        year += 2000
    try:
        return datetime(year, month, int(m.group("day")), tzinfo=timezone.utc)
    except ValueError:
        return None


def token_from_pt(pt_token: str) -> str:
    m = _PT_PARTS_RE.match(pt_token)
    if m:
        return m.group("token")
    return pt_token[3:] if pt_token.startswith("PT-") else pt_token


def expiry_from_time_left(text: str, now: datetime) -> Optional[datetime]:
    """'113 days' / '4 months' relative to now. Months count as 30 days."""
    m = _TIME_LEFT_RE.search(text or "")
    if not m:
        return None
    amount = int(m.group(1))
    unit = m.group(2).lower()
    if unit.startswith("hour"):
        return now + timedelta(hours=amount)
    if unit.startswith("week"):
        return now + timedelta(days=amount * 7)
    if unit.startswith("month"):
        return now + timedelta(days=amount * 30)
    return now + timedelta(days=amount)


def _split_row(line: str) -> List[str]:
    return [c.strip() for c in line.strip().strip("|").split("|")]


def _is_separator(line: str) -> bool:
    stripped = line.strip()
    return bool(stripped) and set(stripped) <= set("|-: ")


def _column_map(cells: List[str]) -> Optional[Dict[str, int]]:
    """Locate the columns we need in a header row, by name."""
    cols: Dict[str, int] = {}
    for i, cell in enumerate(cells):
        label = cell.lower()
        if "market" in label and "market" not in cols:
            cols["market"] = i
        elif "liquidity" in label or label == "tvl":
            cols["liquidity"] = i
        elif "apy" in label:
            cols["apy"] = i
        elif "time left" in label or "maturity" in label:
            cols["time_left"] = i
    if "market" in cols and "apy" in cols:
        return cols
    return None


def _parse_market_cell(cell: str):
    """Return (token, provider, pt_token) or None if the cell has no PT symbol."""
    text = _BR_RE.sub(" ", _IMAGE_RE.sub(" ", cell))
    pt = _PT_RE.search(text)
    if not pt:
        return None
    pt_token = pt.group(0).rstrip(".-")
    token = token_from_pt(pt_token)
    head = text[:pt.start()].strip()
    provider = ""
    if head.lower().startswith(token.lower()):
        provider = head[len(token):].strip()
    return token, provider, pt_token


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def _parse_table(markdown: str, now: datetime) -> Optional[List[ExponentPool]]:
    """Parse the markets table. None if no table header is present."""
    lines = markdown.splitlines()
    cols = None
    start = 0
    for i, line in enumerate(lines):
        if line.strip().startswith("|"):
            cols = _column_map(_split_row(line))
            if cols:
                start = i + 1
                break
    if cols is None:
        return None

    pools = []
    for line in lines[start:]:
        if not line.strip().startswith("|"):
            if line.strip():
                break
            continue
        if _is_separator(line):
            continue
        cells = _split_row(line)
        if len(cells) <= max(cols.values()):
            continue

        parsed = _parse_market_cell(cells[cols["market"]])
        if parsed is None:
            continue
        token, provider, pt_token = parsed

        liquidity_cell = cells[cols["liquidity"]] if "liquidity" in cols else ""
        if "$" not in liquidity_cell:
            continue
        liquidity = parse_money(liquidity_cell)

        apy_m = _APY_RE.search(cells[cols["apy"]])
        if not apy_m:
            continue
        fixed_apy = to_float(apy_m.group(1))

        expiry = expiry_from_pt(pt_token)
        if expiry is None and "time_left" in cols:
            expiry = expiry_from_time_left(cells[cols["time_left"]], now)

        pools.append(ExponentPool(
            token=token,
            provider=provider,
            pt_token=pt_token,
            fixed_apy=fixed_apy,
            liquidity=liquidity,
            expiry=expiry,
        ))

    print(f"[EXPONENT] Parsed {len(pools)} pools from table")
    return pools


def _parse_cards(markdown: str) -> List[ExponentPool]:
    pools = []
    blocks = _CARD_SPLIT_RE.split(markdown)
    for i in range(1, len(blocks)):
        block = blocks[i]
        prev = blocks[i - 1]

        apy_m = _CARD_APY_RE.search(block)
        if not apy_m:
            continue
        fixed_apy = to_float(apy_m.group(1))

        token_matches = _CARD_TOKEN_RE.findall(prev) or _CARD_LINE_TOKEN_RE.findall(prev)
        token = token_matches[-1] if token_matches else ""

        maturities = _CARD_MATURITY_RE.findall(prev) or _CARD_MATURITY_RE.findall(block)[:1]
        expiry = parse_datetime(" ".join(maturities[-1].split())) if maturities else None

        liq_m = _CARD_LIQUIDITY_RE.search(block) or _CARD_LIQUIDITY_RE.search(prev)
        liquidity = parse_money(liq_m.group(1)) if liq_m else 0.0

        if token and fixed_apy > 0:
            pools.append(ExponentPool(
                token=token,
                provider="",
                pt_token=f"PT-{token}",
                fixed_apy=fixed_apy,
                liquidity=liquidity,
                expiry=expiry,
            ))

    print(f"[EXPONENT] Parsed {len(pools)} pools from cards")
    return pools


def parse_exponent_pools(markdown: str, now: Optional[datetime] = None) -> List[ExponentPool]:
    """Recover markets from a scraped Exponent income page."""
    now = now or datetime.now(timezone.utc)
    text = clean_markdown(markdown)
    pools = _parse_table(text, now)
    if pools is None:
        print("[EXPONENT] No markets table found, trying card parsing")
        pools = _parse_cards(text)

    seen = set()
    unique = []
    for p in pools:
        if p.fixed_apy <= 0 or p.liquidity <= 0 or p.pt_token in seen:
            continue
        seen.add(p.pt_token)
        unique.append(p)
    return unique


class ExponentSource:
    """Scrape → parse → normalize for Exponent markets."""

    venue = VENUE_EXPONENT

    def __init__(self, firecrawl, url: str = EXPONENT_INCOME_URL,
                 wait_for_ms: int = SCRAPE_WAIT_MS, timeout_ms: int = SCRAPE_TIMEOUT_MS):
        self.firecrawl = firecrawl
        self.url = url
        self.wait_for_ms = wait_for_ms
        self.timeout_ms = timeout_ms
        self._last_parsed = 0

    async def fetch_markets(self, now: Optional[datetime] = None) -> List[MarketRecord]:
        now = now or datetime.now(timezone.utc)
        markdown = await self.firecrawl.scrape(
            self.url, wait_for_ms=self.wait_for_ms, timeout_ms=self.timeout_ms,
        )
        pools = parse_exponent_pools(markdown, now)
        self._last_parsed = len(pools)
        if not pools and markdown:
            raise SourceError(f"no pools parsed from {len(markdown)} chars of Exponent markdown")
        active = [r for r in (p.to_record() for p in pools) if not r.is_expired(now)]
        print(f"[EXPONENT] {len(pools)} pools, {len(active)} active")
        return active

    async def close(self):
        await self.firecrawl.close()

    def metrics(self) -> dict:
        return {"last_parsed": self._last_parsed, "firecrawl": self.firecrawl.metrics()}

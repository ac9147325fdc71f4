"""
Spectra Finance pools — scraped from app.spectra.finance/pools via Firecrawl.

Each pool renders as one markdown link whose text is the whole card and whose
target is the pool page:

    [![Avalanche](https://.../avax.svg)avUSDAvantMax APY18.41%Interest-Bearing
    TokenavUSDxLiquidity$2,687,173ExpiryMay 15 2026avUSD - AvantavUSDx]
    (https://app.spectra.finance/pools/avax:0xe9fc...)

The layout has changed several times (flat text, newline-separated fields,
literal '\\n' escapes, pools/yield/liquidity link paths), so parsing is layered:

  1. card regex    — one regex over a whole flat card, fast and exact
  2. link context  — anchor on every pool link, extract fields from its link
                     text, falling back to the text just before the link
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from yieldwatch.markets.models import MarketRecord, VENUE_SPECTRA, VENUE_PREFIXES
from yieldwatch.sources.base import SourceError
from yieldwatch.sources.chains import SPECTRA_CHAIN_NAMES, spectra_chain_id
from yieldwatch.sources.normalize import clean_markdown, parse_datetime, parse_money, to_float

SPECTRA_POOLS_URL = "https://app.spectra.finance/pools"
SCRAPE_WAIT_MS = 8000

MAX_APY_CAP = 200.0  # percent; higher values are rendering glitches
CONTEXT_WINDOW = 1500  # chars before a link searched when its text lacks a field
LINK_TEXT_MAX = 3000

_POOL_LINK = (r"\]\(https://app\.spectra\.finance/(?:pools|yield|liquidity)/"
              r"(?P<slug>\w+)[:/](?P<address>0x[a-fA-F0-9]+)\)")

_CARD_RE = re.compile(
    r"\[(?:!\[(?P<chain>[^\]]*)\]\([^)]*\))?"
    r"(?P<head>[^\[\]]*?)"
    r"Max APY\s*(?P<apy>[\d.]+)\s*%?\s*\+?"
    r"[^\[\]]*?Liquidity\s*\$\s*(?P<liq>[\d,]+(?:\.\d+)?)\s*(?P<unit>[KMB])?"
    r"[^\[\]]*?Expiry\s*(?P<expiry>[A-Z][a-z]{2,8}\.? \d{1,2},? \d{4})"
    r"(?P<tail>[^\[\]]*?)"
    r"(?:!\[[^\]]*\]\([^)]*\)[^\[\]]*?)*"
    + _POOL_LINK
)

_LINK_END_RE = re.compile(_POOL_LINK)
_IMAGE_RE = re.compile(r"!\[(?P<alt>[^\]]*)\]\([^)]*\)")

_APY_PATTERNS = (
    re.compile(r"Max APY\s*([\d.]+)\s*%?", re.IGNORECASE),
    re.compile(r"([\d.]+)\s*%\s*\+?\s*Interest-Bearing", re.IGNORECASE),
    re.compile(r"APY\s*([\d.]+)\s*%", re.IGNORECASE),
)
_LIQUIDITY_PATTERNS = (
    re.compile(r"Liquidity\s*(\$\s*[\d,]+(?:\.\d+)?\s*[KMB]?)", re.IGNORECASE),
    re.compile(r"(\$\s*[\d,]+(?:\.\d+)?\s*[KMB]?)\s*(?:Liquidity|Expiry)"),
    re.compile(r"(\$\s*[\d,]{2,}(?:\.\d+)?)"),
)
_EXPIRY_RE = re.compile(r"Expiry\s*([A-Z][a-z]{2,8}\.? \d{1,2},? \d{4})")
_NAME_DASH_RE = re.compile(r"(?P<name>[A-Za-z0-9][\w\-/.+]*)\s+-\s+\S")

# Known token shapes, used only when the card has no "<token> - <provider>" label
_TOKEN_PATTERNS = (
    re.compile(r"(vb[A-Z0-9]+)"),
    re.compile(r"(st[A-Z0-9]+)"),
    re.compile(r"(sav[A-Z0-9]+)"),
    re.compile(r"(yv[A-Z0-9]+)"),
    re.compile(r"(ynETH[\w\-/]*)"),
    re.compile(r"(sj[A-Z0-9]+)"),
    re.compile(r"(av[A-Z0-9]+)"),
    re.compile(r"(re[A-Z0-9]+)"),
    re.compile(r"(hb[A-Z0-9]+)"),
    re.compile(r"(BOLD|USDN|HYPE|AUSD|USDC|jEURx?|wETH|cbBTC)"),
)


@dataclass
class SpectraPool:
    """One pool as recovered from the scraped page. max_apy is in percent."""
    token: str
    provider: str
    max_apy: float
    liquidity: float
    expiry: Optional[datetime]
    chain_id: int
    chain_name: str
    pool_address: str

    @property
    def name(self) -> str:
        return f"{self.token} ({self.provider})" if self.provider else self.token

    @property
    def underlying(self) -> str:
        base = re.sub(r"[^a-zA-Z0-9]", "", self.token.split("-")[0])
        return base or self.token

    def to_record(self) -> MarketRecord:
        return MarketRecord(
            venue=VENUE_SPECTRA,
            chain_id=self.chain_id,
            chain_name=self.chain_name,
            market_address=f"spectra-{self.pool_address.lower()}",
            name=f"{VENUE_PREFIXES[VENUE_SPECTRA]} {self.name}",
            underlying_asset=self.underlying,
            expiry=self.expiry,
            implied_apy=self.max_apy / 100,
            underlying_apy=0.0,  # the pools page shows no variable yield
            liquidity=self.liquidity,
        )


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _cap_apy(apy: float) -> float:
    return MAX_APY_CAP if apy > MAX_APY_CAP else apy


def _parse_expiry(text: Optional[str]) -> Optional[datetime]:
    if not text:
        return None
    return parse_datetime(text.replace(".", "").replace(",", ""))


def _strip_images(text: str) -> str:
    return _IMAGE_RE.sub("\n", text)


def _name_and_provider(head: str, rest: str) -> Tuple[str, str]:
    """Recover token and provider from the card text before 'Max APY' (head)
    and anything after it (rest).

    Newline layouts put them on their own lines ("vbUSDC\\n\\nMorpho"); flat
    layouts glue them ("avUSDAvant") but repeat the token later as
    "avUSD - Avant", which tells us where to cut.
    """
    head = _strip_images(head).lstrip("[")
    lines = [ln.strip() for ln in head.splitlines() if ln.strip()]
    if len(lines) >= 2:
        return lines[-2], lines[-1]

    flat = lines[0] if lines else ""
    m = _NAME_DASH_RE.search(rest) or _NAME_DASH_RE.search(head)
    if m:
        token = m.group("name")
        provider = flat[len(token):].strip() if flat.startswith(token) else ""
        return token, provider

    for pattern in _TOKEN_PATTERNS:
        m = pattern.search(flat) or pattern.search(rest)
        if m:
            token = m.group(1)
            provider = flat[len(token):].strip() if flat.startswith(token) else ""
            return token, provider
    return "", ""


def _first_float(patterns, *texts) -> float:
    for text in texts:
        for pattern in patterns:
            m = pattern.search(text)
            if m:
                value = to_float(m.group(1))
                if value > 0:
                    return value
    return 0.0


def _first_money(patterns, *texts) -> float:
    for text in texts:
        for pattern in patterns:
            m = pattern.search(text)
            if m:
                value = parse_money(m.group(1))
                if value > 0:
                    return value
    return 0.0


def _link_text_start(markdown: str, close_idx: int) -> int:
    """Index of the '[' opening the link whose text ends at close_idx.

    Walks backwards counting brackets so nested image links are skipped.
    Returns -1 if no balanced opener is found within LINK_TEXT_MAX chars.
    """
    depth = 0
    low = max(0, close_idx - LINK_TEXT_MAX)
    for i in range(close_idx - 1, low - 1, -1):
        ch = markdown[i]
        if ch == "]":
            depth += 1
        elif ch == "[":
            if depth == 0:
                return i
            depth -= 1
    return -1


def _make_pool(token: str, provider: str, apy: float, liquidity: float,
               expiry: Optional[datetime], slug: str, address: str,
               chain_label: Optional[str]) -> SpectraPool:
    chain_id = spectra_chain_id(slug, chain_label)
    if not token:
        token = f"Pool-{address[:8]}"
    return SpectraPool(
        token=token,
        provider=provider,
        max_apy=_cap_apy(apy),
        liquidity=liquidity,
        expiry=expiry,
        chain_id=chain_id,
        chain_name=SPECTRA_CHAIN_NAMES.get(chain_id) or chain_label or "Unknown",
        pool_address=address,
    )


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def _parse_cards(markdown: str) -> List[SpectraPool]:
    pools = []
    for m in _CARD_RE.finditer(markdown):
        apy = to_float(m.group("apy"))
        liquidity = parse_money(f"{m.group('liq')}{m.group('unit') or ''}")
        if apy <= 0 or liquidity <= 0:
            continue
        token, provider = _name_and_provider(m.group("head"), m.group("tail"))
        pools.append(_make_pool(
            token, provider, apy, liquidity, _parse_expiry(m.group("expiry")),
            m.group("slug"), m.group("address"), m.group("chain"),
        ))
    return pools


def _parse_link_context(markdown: str) -> List[SpectraPool]:
    pools = []
    for m in _LINK_END_RE.finditer(markdown):
        close_idx = m.start()
        start = _link_text_start(markdown, close_idx)
        link_text = markdown[start:close_idx] if start >= 0 else ""
        before = markdown[max(0, (start if start >= 0 else close_idx) - CONTEXT_WINDOW):
                          (start if start >= 0 else close_idx)]

        apy = _first_float(_APY_PATTERNS, link_text, before)
        if apy <= 0:
            continue
        liquidity = _first_money(_LIQUIDITY_PATTERNS, link_text, before)
        if liquidity <= 0:
            continue

        expiry_m = _EXPIRY_RE.search(link_text) or _EXPIRY_RE.search(before)
        source = link_text if "Max APY" in link_text else before + "\n" + link_text
        head, _, rest = source.rpartition("Max APY") if "Max APY" in source else ("", "", source)
        token, provider = _name_and_provider(head, rest)

        images = _IMAGE_RE.findall(link_text)
        chain_label = images[0] if images else None

        pools.append(_make_pool(
            token, provider, apy, liquidity,
            _parse_expiry(expiry_m.group(1) if expiry_m else None),
            m.group("slug"), m.group("address"), chain_label,
        ))
    return pools


def _dedupe(pools: List[SpectraPool]) -> List[SpectraPool]:
    seen = set()
    result = []
    for p in pools:
        key = (p.chain_id, p.pool_address.lower())
        if key in seen:
            continue
        seen.add(key)
        result.append(p)
    return result


def parse_spectra_pools(markdown: str) -> List[SpectraPool]:
    """Recover pools from a scraped Spectra pools page."""
    text = clean_markdown(markdown)
    pools = _parse_cards(text)
    if not pools:
        print("[SPECTRA] Card regex matched nothing, trying link-context parsing")
        pools = _parse_link_context(text)
    return _dedupe(pools)


class SpectraSource:
    """Scrape → parse → normalize for Spectra pools."""

    venue = VENUE_SPECTRA

    def __init__(self, firecrawl, url: str = SPECTRA_POOLS_URL, wait_for_ms: int = SCRAPE_WAIT_MS):
        self.firecrawl = firecrawl
        self.url = url
        self.wait_for_ms = wait_for_ms
        self._last_parsed = 0

    async def fetch_markets(self, now: Optional[datetime] = None) -> List[MarketRecord]:
        now = now or datetime.now(timezone.utc)
        markdown = await self.firecrawl.scrape(self.url, wait_for_ms=self.wait_for_ms)
        pools = parse_spectra_pools(markdown)
        self._last_parsed = len(pools)
        if not pools and markdown:
            raise SourceError(f"no pools parsed from {len(markdown)} chars of Spectra markdown")
        records = [p.to_record() for p in pools]
        active = [r for r in records if not r.is_expired(now)]
        print(f"[SPECTRA] Parsed {len(pools)} pools, {len(active)} active")
        return active

    async def close(self):
        await self.firecrawl.close()

    def metrics(self) -> dict:
        return {"last_parsed": self._last_parsed, "firecrawl": self.firecrawl.metrics()}

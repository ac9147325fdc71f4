"""
Coercion helpers for vendor payloads and scraped text.

Every helper is total: bad input yields a default (0.0 / None), never raises.
"""

import re
from datetime import datetime, timezone
from typing import Any, Optional

_MONEY_RE = re.compile(r"\$?\s*([\d,]+(?:\.\d+)?)\s*([KMB])?", re.IGNORECASE)
_MULTIPLIERS = {"K": 1_000, "M": 1_000_000, "B": 1_000_000_000}

_DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%b %d %Y",
    "%B %d %Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %b %Y",
    "%d %B %Y",
)


def to_float(value: Any, default: float = 0.0) -> float:
    """Coerce numbers and numeric strings. NaN/None/garbage → default."""
    if value is None or isinstance(value, bool):
        return default
    try:
        v = float(value)
    except (TypeError, ValueError):
        return default
    if v != v:  # NaN
        return default
    return v


def parse_money(text: Optional[str]) -> float:
    """'$957.80K' → 957800.0, '$2,687,173' → 2687173.0. Unparseable → 0.0."""
    if not text:
        return 0.0
    m = _MONEY_RE.search(text)
    if not m:
        return 0.0
    value = to_float(m.group(1).replace(",", ""))
    suffix = (m.group(2) or "").upper()
    return value * _MULTIPLIERS.get(suffix, 1)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO strings, common date layouts and unix seconds/millis into aware UTC.

    Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        ts = float(value)
        if ts > 1e11:  # millis
            ts /= 1000
        try:
            return datetime.fromtimestamp(ts, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None

    text = value.strip()
    if text.isdigit():
        return parse_datetime(int(text))
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def slugify(text: str) -> str:
    """Lowercase and replace every non-alphanumeric char with '-'."""
    return re.sub(r"[^a-z0-9]", "-", (text or "").lower())


def clean_markdown(markdown: str) -> str:
    """Turn literal '\\n' sequences some scrapes leave behind into real newlines."""
    return (markdown or "").replace("\\n", "\n")

"""
yieldwatch configuration — loads env vars, validates required, fails fast.

Checks:
  - URL validation for every endpoint (Supabase, Pendle, RateX proxy)
  - Range validation for numeric params (clamped with a warning)
  - Source list validation against the known venues
  - Startup warnings for configs that silently disable a source
"""

import os
import sys
from pathlib import Path
from dotenv import load_dotenv

# Load .env from project root
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_env_path)

_WARNINGS: list = []  # collected during load, printed at summary

KNOWN_SOURCES = ("pendle", "spectra", "exponent", "ratex")


def _require(name: str) -> str:
    """Get a required env var or exit with a clear error."""
    val = os.getenv(name)
    if not val:
        print(f"FATAL: missing required env var: {name}", file=sys.stderr)
        print(f"  Copy .env.example to .env and fill in the values.", file=sys.stderr)
        sys.exit(1)
    return val.strip()


def _optional(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _validate_url(url: str, label: str) -> str:
    """Validate a URL starts with http:// or https://."""
    if not url.startswith(("http://", "https://")):
        print(f"FATAL: {label} must start with http:// or https://: {url}", file=sys.stderr)
        sys.exit(1)
    return url


def _int_range(name: str, raw: str, low: int, high: int) -> int:
    """Parse an int and clamp to [low, high] with a warning."""
    try:
        val = int(raw)
    except ValueError:
        print(f"FATAL: {name} must be an integer, got: {raw}", file=sys.stderr)
        sys.exit(1)
    if val < low or val > high:
        clamped = max(low, min(val, high))
        _WARNINGS.append(f"{name}={val} out of range [{low},{high}], clamped to {clamped}")
        return clamped
    return val


def _bool(name: str, raw: str) -> bool:
    val = raw.lower()
    if val in ("1", "true", "yes", "on"):
        return True
    if val in ("", "0", "false", "no", "off"):
        return False
    _WARNINGS.append(f"{name}='{raw}' is not a boolean, treating as false")
    return False


def _source_list(raw: str) -> list:
    sources = [s.strip().lower() for s in raw.split(",") if s.strip()]
    unknown = [s for s in sources if s not in KNOWN_SOURCES]
    if unknown:
        print(f"FATAL: ENABLED_SOURCES has unknown entries: {', '.join(unknown)} "
              f"(known: {', '.join(KNOWN_SOURCES)})", file=sys.stderr)
        sys.exit(1)
    return sources


# === Supabase (service role key: writes bypass RLS) ===
SUPABASE_URL: str = _validate_url(_require("SUPABASE_URL"), "SUPABASE_URL")
SUPABASE_KEY: str = _require("SUPABASE_KEY")

# === Upstream APIs ===
PENDLE_API_URL: str = _validate_url(
    _optional("PENDLE_API_URL", "https://api-v2.pendle.finance/core/v1"), "PENDLE_API_URL"
).rstrip("/")
# RateX rejects browser calls without its own Origin; point this at a CORS proxy if needed
RATEX_API_URL: str = _validate_url(
    _optional("RATEX_API_URL", "https://api.rate-x.io/"), "RATEX_API_URL"
)
FIRECRAWL_API_URL: str = _validate_url(
    _optional("FIRECRAWL_API_URL", "https://api.firecrawl.dev/v1"), "FIRECRAWL_API_URL"
).rstrip("/")
FIRECRAWL_API_KEY: str = _optional("FIRECRAWL_API_KEY")
PERPLEXITY_API_KEY: str = _optional("PERPLEXITY_API_KEY")

# === Sources ===
ENABLED_SOURCES: list = _source_list(_optional("ENABLED_SOURCES", ",".join(KNOWN_SOURCES)))
RATEX_SCRAPE_IMPLIED: bool = _bool("RATEX_SCRAPE_IMPLIED", _optional("RATEX_SCRAPE_IMPLIED", "false"))

if not FIRECRAWL_API_KEY:
    for _s in ("spectra", "exponent"):
        if _s in ENABLED_SOURCES:
            _WARNINGS.append(f"FIRECRAWL_API_KEY not set — {_s} scraping disabled")
    if RATEX_SCRAPE_IMPLIED:
        _WARNINGS.append("RATEX_SCRAPE_IMPLIED needs FIRECRAWL_API_KEY — using API yield ranges")
        RATEX_SCRAPE_IMPLIED = False
if not PERPLEXITY_API_KEY:
    _WARNINGS.append("PERPLEXITY_API_KEY not set — alert analysis disabled")

# === Tuning (with range validation) ===
SCAN_INTERVAL_SEC: int = _int_range("SCAN_INTERVAL_SEC", _optional("SCAN_INTERVAL_SEC", "900"), 60, 86_400)
HTTP_TIMEOUT_SEC: int = _int_range("HTTP_TIMEOUT_SEC", _optional("HTTP_TIMEOUT_SEC", "30"), 5, 300)
LOG_LEVEL: str = _optional("LOG_LEVEL", "INFO")
if LOG_LEVEL not in ("DEBUG", "INFO", "WARNING", "ERROR"):
    _WARNINGS.append(f"Unknown LOG_LEVEL '{LOG_LEVEL}', defaulting to INFO")
    LOG_LEVEL = "INFO"
VERBOSE: bool = LOG_LEVEL == "DEBUG"


def scraping_enabled() -> bool:
    return bool(FIRECRAWL_API_KEY)


def print_config_summary() -> None:
    """Print a non-sensitive config summary for startup verification."""
    print("--- yieldwatch config ---")
    print(f"  Supabase:       {SUPABASE_URL[:40]}...")
    print(f"  Pendle API:     {PENDLE_API_URL}")
    print(f"  RateX API:      {RATEX_API_URL}")
    print(f"  Firecrawl:      {'configured' if FIRECRAWL_API_KEY else 'not configured'}")
    print(f"  Perplexity:     {'configured' if PERPLEXITY_API_KEY else 'not configured'}")
    print(f"  Sources:        {', '.join(ENABLED_SOURCES) or '(none)'}")
    print(f"  RateX scrape:   {RATEX_SCRAPE_IMPLIED}")
    print(f"  Scan interval:  {SCAN_INTERVAL_SEC}s")
    print(f"  HTTP timeout:   {HTTP_TIMEOUT_SEC}s")
    print(f"  Log level:      {LOG_LEVEL}")
    if _WARNINGS:
        print(f"  ⚠️  {len(_WARNINGS)} config warning(s):")
        for w in _WARNINGS:
            print(f"    - {w}")
    print("-" * 25)

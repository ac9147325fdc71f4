"""
Alert analysis and review actions.

AlertAnalyzer asks Perplexity's search-backed chat model why a pool's yield
moved, then stores the answer and its citations on the alert and marks it
reviewed. dismiss_alert() flips an alert to dismissed.
"""

import asyncio
import re
from typing import Optional

import aiohttp

from yieldwatch.alerts.rules import IMPLIED_SPIKE, UNDERLYING_SPIKE, YIELD_DIVERGENCE
from yieldwatch.sources.chains import chain_name
from yieldwatch.sources.normalize import to_float
from yieldwatch.markets.models import POOLS_TABLE

PERPLEXITY_API_URL = "https://api.perplexity.ai/chat/completions"
PERPLEXITY_MODEL = "sonar"
ANALYZE_TIMEOUT_SEC = 60

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

NO_ANALYSIS = "Analysis unavailable"

SYSTEM_PROMPT = (
    "You are a DeFi analyst. Find the reason for a yield change in a fixed-term "
    "yield pool (Pendle, Spectra, Exponent or RateX).\n"
    "Be brief and specific (200 words max). Cover:\n"
    "1. The likely cause (protocol upgrades, emission changes, market conditions, large holders)\n"
    "2. Concrete sources, if you found any\n"
    "3. Short suggestions on what to do\n\n"
    "If no specific cause can be found, give the most likely scenarios based on "
    "the asset type and current market conditions."
)


class AlertNotFound(LookupError):
    """No alert with the given id."""


class AnalysisError(RuntimeError):
    """The AI search service failed or returned an unusable response."""


def validate_alert_id(alert_id: str) -> str:
    if not alert_id or not UUID_RE.match(alert_id):
        raise ValueError(f"invalid alert id: {alert_id!r}")
    return alert_id


def direction(change_percent: float) -> str:
    return "rise" if change_percent >= 0 else "drop"


def describe_event(alert_type: str, change_percent: float) -> str:
    d = direction(change_percent)
    if alert_type == IMPLIED_SPIKE:
        return f"{d} in implied yield (Implied APY)"
    if alert_type == UNDERLYING_SPIKE:
        return f"{d} in underlying yield (Underlying APY)"
    if alert_type == YIELD_DIVERGENCE:
        return "divergence between underlying and implied yield"
    return alert_type


def build_prompt(alert: dict) -> str:
    """User message for one alert row joined with its pool."""
    pool = alert.get(POOLS_TABLE) or {}
    change = to_float(alert.get("change_percent"))
    asset = pool.get("underlying_asset") or pool.get("name") or "unknown asset"
    sign = "+" if change >= 0 else ""
    return (
        f"Pool: {pool.get('name', 'unknown')}\n"
        f"Asset: {asset}\n"
        f"Network: {chain_name(pool.get('chain_id'))}\n"
        f"Event: {describe_event(alert.get('alert_type', ''), change)}\n"
        f"Previous value: {to_float(alert.get('previous_value')) * 100:.2f}%\n"
        f"Current value: {to_float(alert.get('current_value')) * 100:.2f}%\n"
        f"Change: {sign}{change:.2f}%\n\n"
        f"Find the reason for this yield {direction(change)}. Check recent news about "
        f"{asset}, protocol changes and large transactions."
    )


class AlertAnalyzer:
    """Perplexity-backed cause analysis for stored alerts."""

    def __init__(self, db, api_key: str, session: Optional[aiohttp.ClientSession] = None,
                 api_url: str = PERPLEXITY_API_URL, model: str = PERPLEXITY_MODEL):
        if not api_key:
            raise ValueError("Perplexity API key is required")
        self.db = db
        self.api_key = api_key
        self.api_url = api_url
        self.model = model
        self._session = session
        self._owns_session = session is None
        self._analyzed = 0
        self._errors = 0

    async def _ensure_session(self):
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=ANALYZE_TIMEOUT_SEC)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def close(self):
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def ask(self, prompt: str) -> dict:
        """One chat completion. Returns {"analysis": str, "sources": [url, ...]}."""
        await self._ensure_session()
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "search_recency_filter": "week",
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with self._session.post(self.api_url, json=body, headers=headers) as resp:
                if resp.status != 200:
                    detail = await resp.text()
                    raise AnalysisError(f"Perplexity API error {resp.status}: {detail[:200]}")
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            raise AnalysisError(f"Perplexity request timed out ({ANALYZE_TIMEOUT_SEC}s)")
        except aiohttp.ClientError as e:
            raise AnalysisError(f"Perplexity transport error: {e}") from e

        if not isinstance(data, dict):
            raise AnalysisError(f"unexpected Perplexity response type {type(data).__name__}")
        choices = data.get("choices") or []
        analysis = ((choices[0] if choices else {}).get("message") or {}).get("content")
        return {"analysis": analysis or NO_ANALYSIS, "sources": data.get("citations") or []}

    async def analyze(self, alert_id: str) -> dict:
        """Analyze one alert, persist the result, mark it reviewed."""
        validate_alert_id(alert_id)
        alert = await self.db.get_alert(alert_id)
        if alert is None:
            raise AlertNotFound(f"alert not found: {alert_id}")

        print(f"[ANALYZE] Alert {alert_id[:8]} ({alert.get('alert_type')})")
        try:
            result = await self.ask(build_prompt(alert))
        except AnalysisError:
            self._errors += 1
            raise

        await self.db.update_alert(alert_id, {
            "ai_analysis": result["analysis"],
            "sources": result["sources"],
            "status": "reviewed",
        })
        self._analyzed += 1
        print(f"[ANALYZE] Alert {alert_id[:8]} reviewed ({len(result['sources'])} sources)")
        return result

    def metrics(self) -> dict:
        return {"analyzed": self._analyzed, "errors": self._errors}


async def dismiss_alert(db, alert_id: str) -> dict:
    """Set an alert's status to dismissed. Raises ValueError / AlertNotFound."""
    validate_alert_id(alert_id)
    alert = await db.get_alert(alert_id)
    if alert is None:
        raise AlertNotFound(f"alert not found: {alert_id}")
    await db.update_alert(alert_id, {"status": "dismissed"})
    print(f"[ALERTS] Alert {alert_id[:8]} dismissed")
    return {"id": alert_id, "status": "dismissed", "previous_status": alert.get("status")}

"""Per-ticker fundamental metrics from Finnhub."""

import logging
from dataclasses import dataclass, fields

import requests

from tag_explorer.config import settings
from tag_explorer.exceptions import UpstreamRateLimited, UpstreamTransient

logger = logging.getLogger(__name__)

METRIC_PATH = "/stock/metric"

# field -> Finnhub metric keys, first non-empty wins
METRIC_KEYS = {
    "market_cap": ("marketCapitalization",),
    "roe_ttm": ("roeTTM",),
    "pe_ttm": ("peTTM", "peBasicExclExtraTTM"),
    "week_52_high": ("52WeekHigh",),
    "week_52_low": ("52WeekLow",),
    "dividend_yield": ("dividendYieldIndicatedAnnual", "dividendYieldAnnual"),
    "debt_to_equity": ("totalDebt/totalEquityAnnual",),
    "revenue_growth": ("revenueGrowthTTMYoy",),
    "beta": ("beta",),
}

# Finnhub reports market cap in millions of USD
MARKET_CAP_MULTIPLIER = 1_000_000


@dataclass(frozen=True)
class Metrics:
    market_cap: float = None
    roe_ttm: float = None
    pe_ttm: float = None
    week_52_high: float = None
    week_52_low: float = None
    dividend_yield: float = None
    debt_to_equity: float = None
    revenue_growth: float = None
    beta: float = None

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))


def _pick(metric: dict, keys: tuple[str, ...]) -> float | None:
    for key in keys:
        value = metric.get(key)
        if value is None:
            continue
        try:
            value = float(value)
        except (TypeError, ValueError):
            continue
        # Finnhub uses 0 for "not reported" on most ratios
        if value != 0:
            return value
    return None


def parse_metrics(payload: dict) -> Metrics:
    """Map a Finnhub ``metric=all`` response onto ``Metrics``."""
    metric = (payload or {}).get("metric") or {}
    values = {name: _pick(metric, keys) for name, keys in METRIC_KEYS.items()}
    if values["market_cap"] is not None:
        values["market_cap"] *= MARKET_CAP_MULTIPLIER
    return Metrics(**values)


def request_metrics(ticker: str, api_key: str = None) -> Metrics | None:
    """Single Finnhub call with typed failures.

    Raises ``UpstreamRateLimited`` on 429 and ``UpstreamTransient`` on
    timeouts, connection errors and 5xx. Other 4xx responses mean the
    provider has nothing for this ticker and return None.
    """
    api_key = api_key if api_key is not None else settings.finnhub_api_key
    try:
        resp = requests.get(
            settings.finnhub_base_url + METRIC_PATH,
            params={"symbol": ticker, "metric": "all", "token": api_key},
            timeout=settings.fundamentals_timeout_seconds,
        )
    except requests.RequestException as e:
        raise UpstreamTransient(f"Finnhub request failed: {e}", ticker=ticker) from e

    if resp.status_code == 429:
        raise UpstreamRateLimited("Finnhub rate limit hit", ticker=ticker, status=429)
    if resp.status_code >= 500:
        raise UpstreamTransient(f"Finnhub returned {resp.status_code}", ticker=ticker, status=resp.status_code)
    if resp.status_code != 200:
        logger.warning(f"[Finnhub] {ticker}: status {resp.status_code}, no metrics")
        return None

    try:
        payload = resp.json()
    except ValueError as e:
        raise UpstreamTransient("Finnhub returned a non-JSON body", ticker=ticker) from e

    metrics = parse_metrics(payload)
    return None if metrics.is_empty() else metrics


def fetch_fundamentals(ticker: str, api_key: str = None) -> Metrics | None:
    """Best-effort fetch: every failure is logged and turned into None.

    Use this for one-off lookups. Refresh runs call ``request_metrics``
    directly because they retry on ``UpstreamTransient``.
    """
    try:
        return request_metrics(ticker, api_key=api_key)
    except UpstreamRateLimited:
        logger.warning(f"[Finnhub] Rate limit hit for {ticker}, keeping previous values")
    except UpstreamTransient as e:
        logger.warning(f"[Finnhub] {ticker}: {e}")
    return None

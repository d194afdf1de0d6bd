"""Full-market end-of-day snapshot from Polygon grouped daily bars."""

import logging
from dataclasses import dataclass
from datetime import date, timedelta

import requests

from tag_explorer.config import settings
from tag_explorer.exceptions import NoSnapshotAvailable

logger = logging.getLogger(__name__)

GROUPED_DAILY_PATH = "/v2/aggs/grouped/locale/us/market/stocks/{day}"


@dataclass(frozen=True)
class Bar:
    open: float
    close: float
    high: float = None
    low: float = None
    volume: int = None


def _parse_bar(raw: dict) -> Bar | None:
    close = raw.get("c")
    if close is None:
        return None
    volume = raw.get("v")
    return Bar(
        open=float(raw.get("o") or 0.0),
        close=float(close),
        high=raw.get("h"),
        low=raw.get("l"),
        volume=int(volume) if volume is not None else None,
    )


def fetch_grouped_daily(day: date, api_key: str = None) -> dict[str, Bar]:
    """Fetch one session's grouped bars. Returns an empty dict on any failure."""
    api_key = api_key if api_key is not None else settings.polygon_api_key
    url = settings.polygon_base_url + GROUPED_DAILY_PATH.format(day=day.isoformat())
    try:
        resp = requests.get(
            url,
            params={"adjusted": "true", "apiKey": api_key},
            timeout=settings.snapshot_timeout_seconds,
        )
    except requests.RequestException as e:
        logger.warning(f"[Polygon] Fetch failed for {day}: {e}")
        return {}

    if resp.status_code != 200:
        logger.warning(f"[Polygon] {day} returned status {resp.status_code}")
        return {}

    try:
        payload = resp.json()
    except ValueError:
        logger.warning(f"[Polygon] {day} returned a non-JSON body")
        return {}

    bars = {}
    for raw in payload.get("results") or []:
        ticker = str(raw.get("T", "")).strip().upper()
        if not ticker:
            continue
        bar = _parse_bar(raw)
        if bar is not None:
            bars[ticker] = bar
    return bars


def fetch_market_snapshot(search_days: int = None, start: date = None, api_key: str = None) -> dict[str, Bar]:
    """Return ticker -> bar for the most recent session that has data.

    Starts at ``start`` (default: today minus the configured offset, i.e.
    yesterday) and steps back one calendar day per attempt. Weekends,
    holidays and provider lag are covered without a market calendar.
    """
    if search_days is None:
        search_days = settings.snapshot_search_days
    if start is None:
        start = date.today() - timedelta(days=settings.snapshot_start_offset_days)

    day = start
    for attempt in range(1, search_days + 1):
        logger.info(f"[Polygon] Attempt {attempt}/{search_days}: snapshot for {day}")
        bars = fetch_grouped_daily(day, api_key=api_key)
        if bars:
            logger.info(f"[Polygon] Got {len(bars)} tickers for {day}")
            return bars
        day -= timedelta(days=1)

    raise NoSnapshotAvailable(
        f"No snapshot data from Polygon after {search_days} attempts (from {start})"
    )

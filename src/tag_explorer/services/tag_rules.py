"""Tag rule engine: pure classification of stocks into tag families.

Every family is a function ``DataFrame -> {tag_name: [tickers]}`` over a
frame indexed by ticker. Stocks missing a rule's input column are left out
of that rule; they are never put in a default bucket.

Size, price and momentum are single spectra, so each stock lands in exactly
one bucket. Valuation, technical and financial-health tags are independent
yes/no characteristics, so a stock may carry any number of them.
"""

from dataclasses import dataclass
from typing import Callable

import pandas as pd
from sqlalchemy import select
from sqlalchemy.orm import Session

from tag_explorer.config import settings
from tag_explorer.models.stock import Stock

STOCK_COLUMNS = [
    "ticker", "sector", "index_member", "last_price", "change_percent", "volume",
    "market_cap", "roe_ttm", "pe_ttm", "week_52_high", "week_52_low",
    "dividend_yield", "debt_to_equity", "revenue_growth", "beta",
]

B = 1_000_000_000
M = 1_000_000

# (tag, exclusive lower bound), checked top-down, first match wins
SIZE_BUCKETS = [("超大盘股", 200 * B), ("大盘股", 50 * B), ("中盘股", 10 * B), ("小盘股", 2 * B)]
SIZE_FALLBACK = "微盘股"

PRICE_BUCKETS = [("高价股", 1000), ("中价股", 100), ("低价股", 10)]
PRICE_FALLBACK = "超低价股"

MOMENTUM_UP = [("涨停板", 10), ("强势上涨", 5), ("温和上涨", 2), ("微涨", 0)]
MOMENTUM_DOWN = [("跌停板", -10), ("大幅下跌", -5), ("温和下跌", -2), ("微跌", 0)]
MOMENTUM_FLAT = "平盘"

VOLUME_BUCKETS = [("超高成交量", 100 * M), ("高成交量", 50 * M), ("中等成交量", 10 * M)]
LOW_VOLUME_TAG = "低成交量"
LOW_VOLUME_CEILING = 1 * M

NEW_HIGH_TOLERANCE = 0.98
NEW_LOW_TOLERANCE = 1.02

INDEX_TAGS = [("标普500", "SP500"), ("纳斯达克100", "NASDAQ100"), ("道琼斯", "DOW30")]

# Provider sector label fragment -> display tag
SECTOR_TAG_NAMES = [
    ("Technology", "科技股"),
    ("Financial", "金融股"),
    ("Healthcare", "医疗保健"),
    ("Energy", "能源股"),
    ("Consumer", "消费品"),
]


@dataclass(frozen=True)
class TagFamily:
    name: str
    compute: Callable[[pd.DataFrame], dict[str, list[str]]]
    description: str = ""


def _tickers(frame: pd.DataFrame | pd.Series) -> list[str]:
    return sorted(frame.index.tolist())


def _descending_buckets(values: pd.Series, buckets: list[tuple[str, float]], fallback: str) -> dict[str, list[str]]:
    result = {}
    remaining = values.dropna()
    for tag, floor in buckets:
        hit = remaining > floor
        result[tag] = _tickers(remaining[hit])
        remaining = remaining[~hit]
    result[fallback] = _tickers(remaining)
    return result


def size_tags(df: pd.DataFrame) -> dict[str, list[str]]:
    return _descending_buckets(df["market_cap"], SIZE_BUCKETS, SIZE_FALLBACK)


def price_tags(df: pd.DataFrame) -> dict[str, list[str]]:
    return _descending_buckets(df["last_price"], PRICE_BUCKETS, PRICE_FALLBACK)


def momentum_tags(df: pd.DataFrame) -> dict[str, list[str]]:
    change = df["change_percent"].dropna()
    result = {}

    up = change[change > 0]
    for tag, floor in MOMENTUM_UP:
        hit = up > floor
        result[tag] = _tickers(up[hit])
        up = up[~hit]

    down = change[change < 0]
    for tag, ceiling in MOMENTUM_DOWN:
        hit = down < ceiling
        result[tag] = _tickers(down[hit])
        down = down[~hit]

    result[MOMENTUM_FLAT] = _tickers(change[change == 0])
    return result


def valuation_tags(df: pd.DataFrame) -> dict[str, list[str]]:
    roe = df["roe_ttm"].dropna()
    pe = df["pe_ttm"].dropna()
    dividend = df["dividend_yield"].dropna()
    low_pe = _tickers(pe[(pe > 0) & (pe < 15)])
    return {
        "高ROE": _tickers(roe[roe > 20]),
        "低市盈率": low_pe,
        "价值股": list(low_pe),
        "成长股": _tickers(pe[pe > 25]),
        "高股息": _tickers(dividend[dividend > 3]),
    }


def technical_tags(df: pd.DataFrame) -> dict[str, list[str]]:
    highs = df[["last_price", "week_52_high"]].dropna()
    lows = df[["last_price", "week_52_low"]].dropna()
    return {
        "52周新高": _tickers(highs[highs["last_price"] >= highs["week_52_high"] * NEW_HIGH_TOLERANCE]),
        "52周新低": _tickers(lows[lows["last_price"] <= lows["week_52_low"] * NEW_LOW_TOLERANCE]),
    }


def financial_health_tags(df: pd.DataFrame) -> dict[str, list[str]]:
    debt = df["debt_to_equity"].dropna()
    growth = df["revenue_growth"].dropna()
    beta = df["beta"].dropna()
    return {
        "低负债率": _tickers(debt[(debt >= 0) & (debt < 0.3)]),
        "高增长率": _tickers(growth[growth > 20]),
        "高贝塔系数": _tickers(beta[beta > 1.5]),
    }


def volume_tags(df: pd.DataFrame) -> dict[str, list[str]]:
    volume = df["volume"].dropna()
    result = {}
    remaining = volume
    for tag, floor in VOLUME_BUCKETS:
        hit = remaining > floor
        result[tag] = _tickers(remaining[hit])
        remaining = remaining[~hit]
    result[LOW_VOLUME_TAG] = _tickers(remaining[remaining < LOW_VOLUME_CEILING])
    return result


def sector_tag_name(sector: str) -> str:
    for fragment, tag in SECTOR_TAG_NAMES:
        if fragment in sector:
            return tag
    return sector


def sector_tags(df: pd.DataFrame, min_members: int = None) -> dict[str, list[str]]:
    """One tag per sector with at least ``min_members`` stocks. Discovered from data."""
    if min_members is None:
        min_members = settings.sector_min_members
    sectors = df["sector"].dropna()
    sectors = sectors[sectors.str.strip() != ""]
    counts = sectors.value_counts()
    result: dict[str, list[str]] = {}
    for sector in sorted(counts[counts >= min_members].index):
        tag = sector_tag_name(sector)
        members = _tickers(sectors[sectors == sector])
        result[tag] = sorted(set(result.get(tag, [])) | set(members))
    return result


def index_tags(df: pd.DataFrame) -> dict[str, list[str]]:
    markers = df["index_member"].dropna()
    return {
        tag: _tickers(markers[markers.str.contains(marker, case=False, regex=False)])
        for tag, marker in INDEX_TAGS
    }


# Fixed application order
FAMILIES = [
    TagFamily("size", size_tags, "Market capitalisation bucket"),
    TagFamily("price", price_tags, "Last trade price bucket"),
    TagFamily("momentum", momentum_tags, "Daily change-percent bucket"),
    TagFamily("valuation", valuation_tags, "ROE, P/E and dividend characteristics"),
    TagFamily("technical", technical_tags, "Proximity to the 52-week range"),
    TagFamily("financial_health", financial_health_tags, "Leverage, growth and beta"),
    TagFamily("volume", volume_tags, "Trading volume bucket"),
    TagFamily("sector", sector_tags, "Sector membership"),
    TagFamily("index", index_tags, "Index membership"),
]
FAMILY_NAMES = [f.name for f in FAMILIES]
_BY_NAME = {f.name: f for f in FAMILIES}


def get_family(name: str) -> TagFamily:
    try:
        return _BY_NAME[name]
    except KeyError:
        raise ValueError(f"Unknown tag family {name!r}. Known: {', '.join(FAMILY_NAMES)}") from None


def is_dynamic(family: str, static_families: list[str] = None) -> bool:
    """Dynamic families have their associations fully replaced on every run."""
    if static_families is None:
        static_families = settings.static_tag_families
    return family not in static_families


def stocks_frame(stocks: list) -> pd.DataFrame:
    """Build the rule-engine frame from ``Stock`` rows or plain dicts."""
    records = []
    for s in stocks:
        if isinstance(s, dict):
            records.append({col: s.get(col) for col in STOCK_COLUMNS})
        else:
            records.append({col: getattr(s, col) for col in STOCK_COLUMNS})
    df = pd.DataFrame(records, columns=STOCK_COLUMNS)
    for col in STOCK_COLUMNS:
        if col not in ("ticker", "sector", "index_member"):
            df[col] = pd.to_numeric(df[col], errors="coerce")
    return df.set_index("ticker")


def load_tag_universe(session: Session) -> pd.DataFrame:
    """All stocks that have been refreshed at least once."""
    rows = session.scalars(select(Stock).where(Stock.last_updated.is_not(None))).all()
    return stocks_frame(rows)


def compute_tag_family(family_name: str, df: pd.DataFrame) -> dict[str, list[str]]:
    return get_family(family_name).compute(df)


def compute_all_families(df: pd.DataFrame) -> list[tuple[str, dict[str, list[str]]]]:
    return [(name, compute_tag_family(name, df)) for name in FAMILY_NAMES]


def tags_for_stock(stock) -> list[str]:
    """Tags a single stock would receive, ignoring data-driven sector thresholds."""
    df = stocks_frame([stock])
    ticker = df.index[0]
    tags = []
    for name in FAMILY_NAMES:
        if name == "sector":
            continue
        for tag, tickers in compute_tag_family(name, df).items():
            if ticker in tickers:
                tags.append(tag)
    return tags

"""Stock universe loading from a CSV listing."""

import logging
from pathlib import Path

import pandas as pd
from sqlalchemy.orm import Session

from tag_explorer.models.stock import Stock

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("ticker",)
OPTIONAL_COLUMNS = ("name", "sector", "index_member")


def read_universe_csv(path: str | Path) -> list[dict]:
    """Read a listing CSV with a ``ticker`` column and optional name/sector/index_member."""
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    df.columns = df.columns.str.strip().str.lower()
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Universe file {path} is missing column(s): {', '.join(missing)}")

    stocks = {}
    for _, row in df.iterrows():
        ticker = str(row["ticker"]).strip().upper()
        if not ticker:
            continue
        entry = {"ticker": ticker}
        for col in OPTIONAL_COLUMNS:
            if col in df.columns:
                value = str(row[col]).strip()
                entry[col] = value or None
        # Last occurrence wins on duplicate tickers
        stocks[ticker] = entry
    logger.info(f"Read {len(stocks)} tickers from {path}")
    return list(stocks.values())


def save_universe(session: Session, stocks: list[dict]) -> tuple[int, int]:
    """Upsert listing rows. Market and fundamentals fields are left untouched.

    Returns (inserted, updated).
    """
    inserted = updated = 0
    for s in stocks:
        existing = session.get(Stock, s["ticker"])
        if existing:
            for col in OPTIONAL_COLUMNS:
                if col in s:
                    setattr(existing, col, s[col] if col != "name" else (s[col] or ""))
            updated += 1
        else:
            session.add(Stock(
                ticker=s["ticker"],
                name=s.get("name") or "",
                sector=s.get("sector"),
                index_member=s.get("index_member"),
            ))
            inserted += 1
    session.flush()
    logger.info(f"Universe saved: {inserted} new, {updated} updated")
    return inserted, updated


def load_universe(session: Session, path: str | Path) -> tuple[int, int]:
    return save_universe(session, read_universe_csv(path))

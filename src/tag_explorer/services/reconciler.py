"""Merge a snapshot bar and fundamentals into the stored stock row."""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tag_explorer.exceptions import PersistenceError
from tag_explorer.models.stock import Stock
from tag_explorer.services.fundamentals import Metrics
from tag_explorer.services.snapshot import Bar

logger = logging.getLogger(__name__)


@dataclass
class StockUpdate:
    """Sparse set of column assignments. None means "leave untouched"."""

    last_price: float = None
    change_amount: float = None
    change_percent: float = None
    volume: int = None
    market_cap: float = None
    roe_ttm: float = None
    pe_ttm: float = None
    week_52_high: float = None
    week_52_low: float = None
    dividend_yield: float = None
    debt_to_equity: float = None
    revenue_growth: float = None
    beta: float = None

    @classmethod
    def from_sources(cls, bar: Bar = None, metrics: Metrics = None) -> "StockUpdate":
        update = cls()
        if bar is not None:
            update.last_price = bar.close
            # Change is relative to the open; skip it rather than divide by zero
            if bar.open and bar.open > 0:
                update.change_amount = round(bar.close - bar.open, 4)
                update.change_percent = round((bar.close - bar.open) / bar.open * 100, 4)
            if bar.volume is not None:
                update.volume = bar.volume
        if metrics is not None:
            for name, value in asdict(metrics).items():
                if value:
                    setattr(update, name, value)
        return update

    def assignments(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def apply_to(self, stock: Stock, now: datetime = None) -> list[str]:
        """Write present fields onto ``stock``. Returns the field names written."""
        values = self.assignments()
        if not values:
            return []
        for name, value in values.items():
            setattr(stock, name, value)
        stock.last_updated = now or datetime.utcnow()
        return sorted(values)


def reconcile(
    session: Session,
    ticker: str,
    bar: Bar = None,
    metrics: Metrics = None,
    now: datetime = None,
) -> list[str]:
    """Update one stock from whatever the providers returned.

    Returns the list of updated fields; empty when neither source produced
    anything (no write happens in that case). A failed write is rolled back
    to a savepoint and re-raised as ``PersistenceError`` so the caller can
    record it and move on.
    """
    update = StockUpdate.from_sources(bar, metrics)
    if not update.assignments():
        return []

    try:
        with session.begin_nested():
            stock = session.get(Stock, ticker)
            if stock is None:
                logger.warning(f"{ticker}: not in the stock universe, skipping")
                return []
            updated = update.apply_to(stock, now=now)
            session.flush()
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to update {ticker}: {e}", ticker=ticker) from e

    logger.debug(f"{ticker}: updated {', '.join(updated)}")
    return updated

"""Read-side queries behind the tag explorer endpoints."""

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tag_explorer.models.stock import Stock
from tag_explorer.models.tag import StockTag, Tag


def list_tags_with_counts(session: Session, family: str = None) -> list[dict]:
    stmt = (
        select(Tag.name, Tag.family, func.count(StockTag.id).label("stock_count"))
        .outerjoin(StockTag, StockTag.tag_id == Tag.id)
        .group_by(Tag.id, Tag.name, Tag.family)
        .order_by(Tag.family, Tag.name)
    )
    if family:
        stmt = stmt.where(Tag.family == family)
    return [
        {"name": r.name, "family": r.family, "stock_count": r.stock_count}
        for r in session.execute(stmt).all()
    ]


def stocks_for_tag(session: Session, tag_name: str) -> list[dict] | None:
    """Stocks carrying ``tag_name``, or None if the tag does not exist."""
    tag = session.scalar(select(Tag).where(Tag.name == tag_name))
    if tag is None:
        return None
    stocks = session.scalars(
        select(Stock)
        .join(StockTag, StockTag.ticker == Stock.ticker)
        .where(StockTag.tag_id == tag.id)
        .order_by(Stock.market_cap.desc().nulls_last(), Stock.ticker)
    ).all()
    return [stock_summary(s) for s in stocks]


def tags_for_ticker(session: Session, ticker: str) -> list[dict] | None:
    """Tags on ``ticker``, or None if the stock is unknown."""
    ticker = ticker.strip().upper()
    if session.get(Stock, ticker) is None:
        return None
    rows = session.execute(
        select(Tag.name, Tag.family)
        .join(StockTag, StockTag.tag_id == Tag.id)
        .where(StockTag.ticker == ticker)
        .order_by(Tag.family, Tag.name)
    ).all()
    return [{"name": r.name, "family": r.family} for r in rows]


def stock_summary(stock: Stock) -> dict:
    return {
        "ticker": stock.ticker,
        "name": stock.name,
        "sector": stock.sector,
        "last_price": stock.last_price,
        "change_percent": stock.change_percent,
        "market_cap": stock.market_cap,
        "pe_ttm": stock.pe_ttm,
        "roe_ttm": stock.roe_ttm,
        "last_updated": stock.last_updated.isoformat() if stock.last_updated else None,
    }

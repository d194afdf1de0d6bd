"""Stock master table with the latest market and fundamentals values."""

from datetime import datetime

from sqlalchemy import String, DateTime, Float, BigInteger
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tag_explorer.db import Base


class Stock(Base):
    __tablename__ = "stocks"

    ticker: Mapped[str] = mapped_column(String(20), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), default="")
    sector: Mapped[str] = mapped_column(String(100), nullable=True, index=True)
    index_member: Mapped[str] = mapped_column(String(100), nullable=True)

    # Market snapshot
    last_price: Mapped[float] = mapped_column(Float, nullable=True)
    change_amount: Mapped[float] = mapped_column(Float, nullable=True)
    change_percent: Mapped[float] = mapped_column(Float, nullable=True)
    volume: Mapped[int] = mapped_column(BigInteger, nullable=True)

    # Fundamentals
    market_cap: Mapped[float] = mapped_column(Float, nullable=True)
    roe_ttm: Mapped[float] = mapped_column(Float, nullable=True)
    pe_ttm: Mapped[float] = mapped_column(Float, nullable=True)
    week_52_high: Mapped[float] = mapped_column(Float, nullable=True)
    week_52_low: Mapped[float] = mapped_column(Float, nullable=True)
    dividend_yield: Mapped[float] = mapped_column(Float, nullable=True)
    debt_to_equity: Mapped[float] = mapped_column(Float, nullable=True)
    revenue_growth: Mapped[float] = mapped_column(Float, nullable=True)
    beta: Mapped[float] = mapped_column(Float, nullable=True)

    # Null until the first refresh writes at least one field
    last_updated: Mapped[datetime] = mapped_column(DateTime, nullable=True, index=True)

    tag_links = relationship("StockTag", back_populates="stock", cascade="all, delete-orphan")

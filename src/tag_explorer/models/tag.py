"""Tags and the stock/tag association table."""

from datetime import datetime

from sqlalchemy import String, DateTime, Integer, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tag_explorer.db import Base


class Tag(Base):
    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), unique=True)
    family: Mapped[str] = mapped_column(String(50), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    stock_links = relationship("StockTag", back_populates="tag", cascade="all, delete-orphan")


class StockTag(Base):
    __tablename__ = "stock_tags"
    __table_args__ = (
        UniqueConstraint("ticker", "tag_id", name="uq_stock_tag"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    ticker: Mapped[str] = mapped_column(String(20), ForeignKey("stocks.ticker", ondelete="CASCADE"), index=True)
    tag_id: Mapped[int] = mapped_column(Integer, ForeignKey("tags.id", ondelete="CASCADE"), index=True)

    stock = relationship("Stock", back_populates="tag_links")
    tag = relationship("Tag", back_populates="stock_links")

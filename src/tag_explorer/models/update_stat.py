"""Audit record written once at the end of every refresh run."""

from datetime import datetime

from sqlalchemy import String, DateTime, Float, Integer, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column

from tag_explorer.db import Base

UPDATE_TYPES = ("standard", "batch", "tags-only", "maintenance")
TRIGGER_SOURCES = ("manual", "cron", "health-check", "system")


class UpdateStat(Base):
    __tablename__ = "update_stats"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    update_type: Mapped[str] = mapped_column(String(20), index=True)
    total_stocks: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    duration_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    triggered_by: Mapped[str] = mapped_column(String(50), default="manual", index=True)
    trigger_reason: Mapped[str] = mapped_column(Text, nullable=True)
    health_score_before: Mapped[int] = mapped_column(Integer, nullable=True)
    health_score_after: Mapped[int] = mapped_column(Integer, nullable=True)
    # "metadata" is reserved on declarative classes
    details: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "update_type": self.update_type,
            "total_stocks": self.total_stocks,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "duration_seconds": self.duration_seconds,
            "triggered_by": self.triggered_by,
            "trigger_reason": self.trigger_reason,
            "health_score_before": self.health_score_before,
            "health_score_after": self.health_score_after,
            "metadata": self.details or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

"""Update statistics: audit rows, summaries and retention cleanup."""

import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from tag_explorer.config import settings
from tag_explorer.models.update_stat import UPDATE_TYPES, UpdateStat

logger = logging.getLogger(__name__)


def record_update_stat(session: Session, **values) -> UpdateStat:
    """Append one audit row. Rows are never updated afterwards."""
    if values.get("update_type") not in UPDATE_TYPES:
        raise ValueError(f"Unknown update type: {values.get('update_type')!r}")
    stat = UpdateStat(**values)
    session.add(stat)
    session.flush()
    return stat


def recent_update_stats(session: Session, limit: int = 10, update_type: str = None) -> list[UpdateStat]:
    stmt = select(UpdateStat)
    if update_type:
        stmt = stmt.where(UpdateStat.update_type == update_type)
    stmt = stmt.order_by(UpdateStat.created_at.desc(), UpdateStat.id.desc()).limit(limit)
    return list(session.scalars(stmt).all())


def update_summary(session: Session, days: int = 30, now: datetime = None) -> list[dict]:
    """Per update type aggregates over the last ``days`` days."""
    now = now or datetime.utcnow()
    since = now - timedelta(days=days)
    rows = session.execute(
        select(
            UpdateStat.update_type,
            func.count().label("update_count"),
            func.sum(UpdateStat.total_stocks).label("total_stocks_processed"),
            func.sum(UpdateStat.success_count).label("total_successes"),
            func.sum(UpdateStat.error_count).label("total_errors"),
            func.avg(UpdateStat.duration_seconds).label("avg_duration_seconds"),
            func.avg(UpdateStat.health_score_after).label("avg_health_score_after"),
            func.max(UpdateStat.created_at).label("last_update"),
        )
        .where(UpdateStat.created_at >= since)
        .group_by(UpdateStat.update_type)
        .order_by(func.count().desc())
    ).all()

    summary = []
    for r in rows:
        processed = r.total_stocks_processed or 0
        summary.append({
            "update_type": r.update_type,
            "update_count": r.update_count,
            "total_stocks_processed": processed,
            "total_successes": r.total_successes or 0,
            "total_errors": r.total_errors or 0,
            "avg_success_rate": round((r.total_successes or 0) / processed * 100, 2) if processed else None,
            "avg_duration_seconds": round(r.avg_duration_seconds, 2) if r.avg_duration_seconds is not None else None,
            "avg_health_score_after": round(r.avg_health_score_after, 2) if r.avg_health_score_after is not None else None,
            "last_update": r.last_update.isoformat() if r.last_update else None,
        })
    return summary


def cleanup_update_stats(session: Session, retention_days: int = None, now: datetime = None) -> int:
    """Delete audit rows older than the retention window.

    Always appends exactly one ``maintenance`` row recording how many rows
    were purged. Returns the deleted count.
    """
    if retention_days is None:
        retention_days = settings.stats_retention_days
    now = now or datetime.utcnow()
    cutoff = now - timedelta(days=retention_days)
    started = datetime.utcnow()

    result = session.execute(delete(UpdateStat).where(UpdateStat.created_at < cutoff))
    deleted = max(result.rowcount or 0, 0)

    record_update_stat(
        session,
        update_type="maintenance",
        total_stocks=0,
        success_count=deleted,
        error_count=0,
        duration_seconds=round((datetime.utcnow() - started).total_seconds(), 3),
        triggered_by="system",
        trigger_reason="Automated cleanup of old update statistics",
        details={"deleted_records": deleted, "retention_days": retention_days},
        created_at=now,
    )
    logger.info(f"Removed {deleted} update stats older than {retention_days} days")
    return deleted

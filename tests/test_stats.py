"""Tests for update statistics and retention cleanup."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from tag_explorer.models.update_stat import UpdateStat
from tag_explorer.services.stats import (
    cleanup_update_stats, recent_update_stats, record_update_stat, update_summary,
)

NOW = datetime(2024, 6, 1, 12, 0)


def _seed(db, ages_days, update_type="standard"):
    with db.transaction() as session:
        for age in ages_days:
            record_update_stat(
                session,
                update_type=update_type,
                total_stocks=10,
                success_count=8,
                error_count=2,
                duration_seconds=4.0,
                triggered_by="cron",
                health_score_after=80,
                created_at=NOW - timedelta(days=age),
            )


def test_cleanup_deletes_old_rows_and_logs_one_maintenance_row(db):
    _seed(db, [1, 30, 89, 91, 120, 400])

    with db.transaction() as session:
        deleted = cleanup_update_stats(session, retention_days=90, now=NOW)

    assert deleted == 3
    with db.reader() as session:
        rows = session.scalars(select(UpdateStat)).all()
        maintenance = [r for r in rows if r.update_type == "maintenance"]
        assert len(rows) == 3 + 1
        assert len(maintenance) == 1
        assert maintenance[0].success_count == 3
        assert maintenance[0].triggered_by == "system"
        assert maintenance[0].details == {"deleted_records": 3, "retention_days": 90}


def test_cleanup_with_nothing_to_delete_still_logs(db):
    _seed(db, [1, 2])
    with db.transaction() as session:
        assert cleanup_update_stats(session, retention_days=90, now=NOW) == 0
    with db.reader() as session:
        assert len(recent_update_stats(session, update_type="maintenance")) == 1


def test_recent_update_stats_newest_first(db):
    _seed(db, [5, 1, 3])
    with db.reader() as session:
        rows = recent_update_stats(session, limit=2)
    assert [r.created_at for r in rows] == [NOW - timedelta(days=1), NOW - timedelta(days=3)]


def test_update_summary_groups_by_type(db):
    _seed(db, [1, 2, 3])
    _seed(db, [1], update_type="batch")
    _seed(db, [45], update_type="batch")

    with db.reader() as session:
        summary = update_summary(session, days=30, now=NOW)

    by_type = {row["update_type"]: row for row in summary}
    assert by_type["standard"]["update_count"] == 3
    assert by_type["standard"]["total_stocks_processed"] == 30
    assert by_type["standard"]["avg_success_rate"] == 80.0
    assert by_type["batch"]["update_count"] == 1
    assert summary[0]["update_type"] == "standard"


def test_record_rejects_unknown_update_type(db):
    with pytest.raises(ValueError):
        with db.transaction() as session:
            record_update_stat(session, update_type="nightly")
    with db.reader() as session:
        assert recent_update_stats(session) == []

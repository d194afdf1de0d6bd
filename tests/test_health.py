"""Tests for data health scoring."""

from datetime import datetime, timedelta

import pytest

from tag_explorer.services.health import (
    HealthCounts, build_report, classify_health, compute_health, score_from_rates,
)
from tag_explorer.services.tag_applier import apply_tag


@pytest.mark.parametrize("score,status,n_recs", [
    (100, "excellent", 0),
    (90, "excellent", 0),
    (89, "good", 0),
    (75, "good", 0),
    (74, "fair", 1),
    (60, "fair", 1),
    (59, "poor", 2),
    (0, "poor", 2),
])
def test_status_boundaries(score, status, n_recs):
    got_status, recs = classify_health(score)
    assert got_status == status
    assert len(recs) == n_recs


def test_score_weighting_and_rounding():
    assert score_from_rates({"completeness": 100, "freshness": 100, "quality": 100, "tag_coverage": 100}) == 100
    # 0.30*50 + 0.30*50 + 0.25*50 + 0.15*50 = 50
    assert score_from_rates({"completeness": 50, "freshness": 50, "quality": 50, "tag_coverage": 50}) == 50
    # 0.15 * 10 = 1.5 rounds half up
    assert score_from_rates({"completeness": 0, "freshness": 0, "quality": 0, "tag_coverage": 10}) == 2


def test_empty_universe_scores_zero():
    report = build_report(HealthCounts())
    assert report.score == 0
    assert report.status == "poor"
    assert all(rate == 0 for rate in report.rates.values())


def test_metric_recommendations():
    report = build_report(HealthCounts(total=10, complete=9, fresh=10, anomalous=1, tagged=10))
    assert any("completeness" in r for r in report.recommendations)
    assert any("anomalous" in r for r in report.recommendations)
    assert not any("freshness" in r for r in report.recommendations)


def test_compute_health_counts(db, add_stocks):
    now = datetime.utcnow()
    add_stocks(
        {"ticker": "OK", "last_price": 10, "change_amount": 1, "change_percent": 10, "last_updated": now},
        {"ticker": "STALE", "last_price": 10, "change_amount": 0.5, "change_percent": 5,
         "last_updated": now - timedelta(hours=30)},
        {"ticker": "WILD", "last_price": 10, "change_amount": 6, "change_percent": 60, "last_updated": now},
        {"ticker": "EMPTY"},
        refreshed=False,
    )
    with db.transaction() as session:
        apply_tag(session, "大盘股", "size", ["OK", "WILD"])

    with db.reader() as session:
        report = compute_health(session, now=now)

    c = report.counts
    assert (c.total, c.complete, c.fresh, c.anomalous, c.tagged) == (4, 3, 2, 1, 2)
    assert report.rates["completeness"] == pytest.approx(75.0)
    assert report.rates["tag_coverage"] == pytest.approx(50.0)
    # 0.30*75 + 0.30*50 + 0.25*75 + 0.15*50 = 63.75
    assert report.score == 64
    assert report.status == "fair"

    body = report.to_dict()
    assert body["success"] is True
    assert body["summary"]["overall_health_score"] == 64
    assert body["metrics"]["data_quality"]["anomalous_stocks"] == 1
    assert body["metrics"]["data_freshness"]["stale_stocks"] == 2
    assert set(body["weights"]) == {"completeness", "freshness", "quality", "tag_coverage"}

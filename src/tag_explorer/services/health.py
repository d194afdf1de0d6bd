"""Data health scoring: completeness, freshness, quality and tag coverage.

Read-only. Safe to call before and after a run without affecting it; it may
observe a run in progress.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from tag_explorer.config import settings
from tag_explorer.models.stock import Stock
from tag_explorer.models.tag import StockTag
from tag_explorer.models.update_stat import UpdateStat

logger = logging.getLogger(__name__)

WEIGHTS = {
    "completeness": 0.30,
    "freshness": 0.30,
    "quality": 0.25,
    "tag_coverage": 0.15,
}

# metric -> (good threshold, fair threshold)
METRIC_STATUS_THRESHOLDS = {
    "completeness": (95, 85),
    "freshness": (80, 60),
    "quality": (95, 85),
    "tag_coverage": (90, 75),
}


@dataclass
class HealthCounts:
    total: int = 0
    complete: int = 0
    fresh: int = 0
    anomalous: int = 0
    tagged: int = 0


@dataclass
class HealthReport:
    score: int
    status: str
    counts: HealthCounts
    rates: dict[str, float]
    recommendations: list[str]
    recent_updates: list[dict] = field(default_factory=list)
    checked_at: datetime = field(default_factory=datetime.utcnow)
    check_duration_ms: int = 0

    def metric_status(self, metric: str) -> str:
        good, fair = METRIC_STATUS_THRESHOLDS[metric]
        rate = self.rates[metric]
        if rate >= good:
            return "good"
        if rate >= fair:
            return "fair"
        return "poor"

    def to_dict(self) -> dict:
        c = self.counts
        rate = {k: round(v, 2) for k, v in self.rates.items()}
        return {
            "success": True,
            "timestamp": self.checked_at.isoformat(),
            "check_duration_ms": self.check_duration_ms,
            "summary": {
                "overall_health_score": self.score,
                "health_status": self.status,
                "total_stocks": c.total,
                "recommendations": self.recommendations,
            },
            "metrics": {
                "data_completeness": {
                    "rate": rate["completeness"],
                    "complete_stocks": c.complete,
                    "incomplete_stocks": c.total - c.complete,
                    "status": self.metric_status("completeness"),
                },
                "data_freshness": {
                    "rate": rate["freshness"],
                    "fresh_stocks": c.fresh,
                    "stale_stocks": c.total - c.fresh,
                    "status": self.metric_status("freshness"),
                },
                "data_quality": {
                    "rate": rate["quality"],
                    "normal_stocks": c.total - c.anomalous,
                    "anomalous_stocks": c.anomalous,
                    "status": self.metric_status("quality"),
                },
                "tag_coverage": {
                    "rate": rate["tag_coverage"],
                    "tagged_stocks": c.tagged,
                    "untagged_stocks": c.total - c.tagged,
                    "status": self.metric_status("tag_coverage"),
                },
            },
            "recent_updates": self.recent_updates,
            "weights": dict(WEIGHTS),
        }


def _pct(part: int, total: int) -> float:
    return part / total * 100 if total > 0 else 0.0


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def score_from_rates(rates: dict[str, float]) -> int:
    """Weighted composite, rounded half-up and clamped to 0-100."""
    raw = sum(rates[name] * weight for name, weight in WEIGHTS.items())
    return max(0, min(100, _round_half_up(raw)))


def classify_health(score: int) -> tuple[str, list[str]]:
    """Map a score to a status and the status-level recommendations."""
    if score >= 90:
        return "excellent", []
    if score >= 75:
        return "good", []
    if score >= 60:
        return "fair", ["Consider running batch update to improve data quality"]
    return "poor", [
        "Immediate batch update recommended",
        "Check data source connectivity",
    ]


def metric_recommendations(rates: dict[str, float], anomalous: int) -> list[str]:
    recs = []
    if rates["completeness"] < 95:
        recs.append(f"Data completeness is {rates['completeness']:.1f}% - some stocks missing core data")
    if rates["freshness"] < 80:
        recs.append(f"Data freshness is {rates['freshness']:.1f}% - many stocks not updated recently")
    if rates["tag_coverage"] < 90:
        recs.append(f"Tag coverage is {rates['tag_coverage']:.1f}% - run tag update process")
    if anomalous > 0:
        recs.append(f"{anomalous} stocks have anomalous data - review data quality")
    return recs


def collect_counts(session: Session, now: datetime = None) -> HealthCounts:
    now = now or datetime.utcnow()
    fresh_since = now - timedelta(hours=settings.stale_after_hours)
    limit = settings.anomalous_change_pct

    def count(*criteria) -> int:
        return session.scalar(select(func.count()).select_from(Stock).where(*criteria)) or 0

    return HealthCounts(
        total=count(),
        complete=count(
            Stock.last_price.is_not(None),
            Stock.change_amount.is_not(None),
            Stock.change_percent.is_not(None),
        ),
        fresh=count(Stock.last_updated >= fresh_since),
        anomalous=count(or_(
            Stock.last_price <= 0,
            Stock.change_percent > limit,
            Stock.change_percent < -limit,
        )),
        tagged=session.scalar(select(func.count(func.distinct(StockTag.ticker)))) or 0,
    )


def build_report(counts: HealthCounts, recent_updates: list[dict] = None) -> HealthReport:
    rates = {
        "completeness": _pct(counts.complete, counts.total),
        "freshness": _pct(counts.fresh, counts.total),
        "quality": _pct(counts.total - counts.anomalous, counts.total),
        "tag_coverage": _pct(counts.tagged, counts.total),
    }
    score = score_from_rates(rates)
    status, recommendations = classify_health(score)
    recommendations = recommendations + metric_recommendations(rates, counts.anomalous)
    return HealthReport(
        score=score,
        status=status,
        counts=counts,
        rates=rates,
        recommendations=recommendations,
        recent_updates=recent_updates or [],
    )


def compute_health(session: Session, now: datetime = None, recent_limit: int = 5) -> HealthReport:
    started = datetime.utcnow()
    counts = collect_counts(session, now=now)
    recent = session.scalars(
        select(UpdateStat).order_by(UpdateStat.created_at.desc(), UpdateStat.id.desc()).limit(recent_limit)
    ).all()
    report = build_report(counts, [r.to_dict() for r in recent])
    report.check_duration_ms = int((datetime.utcnow() - started).total_seconds() * 1000)
    logger.info(f"Health score: {report.score}/100 ({report.status}) over {counts.total} stocks")
    return report

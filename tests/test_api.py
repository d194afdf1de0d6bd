"""Tests for the Flask HTTP API."""

import pytest

from tag_explorer.api.app import create_app
from tag_explorer.config import Settings
from tag_explorer.services.run_lock import RunLockHandle
from tag_explorer.services.stats import recent_update_stats, record_update_stat

AUTH = {"Authorization": "Bearer test-secret"}
B = 1_000_000_000


@pytest.fixture
def client(db):
    settings = Settings(cron_secret="test-secret")
    app = create_app(db, settings)
    app.config["TESTING"] = True
    return app.test_client()


@pytest.fixture
def tagged(db, add_stocks, client):
    add_stocks(
        {"ticker": "AAPL", "name": "Apple", "market_cap": 3000 * B, "last_price": 190, "change_percent": 1.2,
         "change_amount": 2.3},
        {"ticker": "F", "name": "Ford", "market_cap": 45 * B, "last_price": 12, "change_percent": -3.1,
         "change_amount": -0.4},
    )
    resp = client.get("/api/refresh/tags", headers=AUTH)
    assert resp.status_code == 200


def test_refresh_requires_token(client, db):
    assert client.get("/api/refresh/tags").status_code == 401
    resp = client.get("/api/refresh/standard", headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401
    assert resp.get_json()["success"] is False

    with db.reader() as session:
        assert recent_update_stats(session) == []


def test_refresh_tags_response_shape(client, tagged):
    resp = client.get("/api/refresh/tags?reason=manual+check", headers=AUTH)
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["success"] is True
    assert body["mode"] == "tags-only"
    assert set(body["summary"]) == {
        "total_stocks", "success_count", "error_count", "success_rate",
        "duration_seconds", "health_score_before", "health_score_after",
    }
    assert body["summary"]["total_stocks"] == 2
    assert body["tags"]["超大盘股"] == 1
    assert body["errors"] == []


def test_refresh_unknown_mode(client):
    assert client.get("/api/refresh/turbo", headers=AUTH).status_code == 404


def test_refresh_conflict_returns_409(client, db):
    with RunLockHandle(db):
        resp = client.get("/api/refresh/tags", headers=AUTH)
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "RunInProgress"


def test_failed_run_returns_500(client, db, add_stocks, monkeypatch):
    from tag_explorer.exceptions import NoSnapshotAvailable
    from tag_explorer.services import orchestrator

    def no_snapshot(*args, **kwargs):
        raise NoSnapshotAvailable("no data in 7 days")

    monkeypatch.setattr(orchestrator, "fetch_market_snapshot", no_snapshot)
    add_stocks({"ticker": "AAPL"}, refreshed=False)

    resp = client.get("/api/refresh/standard", headers=AUTH)
    body = resp.get_json()
    assert resp.status_code == 500
    assert body["success"] is False
    assert "no data in 7 days" in body["details"]


def test_health_endpoint(client, tagged):
    resp = client.get("/api/health")
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["summary"]["total_stocks"] == 2
    assert body["metrics"]["tag_coverage"]["rate"] == 100
    assert len(body["recent_updates"]) == 1
    assert body["weights"]["completeness"] == 0.30


def test_read_endpoints(client, tagged):
    tags = client.get("/api/tags").get_json()["tags"]
    assert {"name": "超大盘股", "family": "size", "stock_count": 1} in tags

    stocks = client.get("/api/tags/超大盘股/stocks").get_json()
    assert [s["ticker"] for s in stocks["stocks"]] == ["AAPL"]
    assert client.get("/api/tags/nothing/stocks").status_code == 404

    ford = client.get("/api/stocks/f/tags").get_json()
    assert ford["ticker"] == "F"
    assert {"name": "低价股", "family": "price"} in ford["tags"]
    assert client.get("/api/stocks/ZZZZ/tags").status_code == 404


def test_update_stats_endpoints(client, tagged):
    body = client.get("/api/update-stats?limit=5").get_json()
    assert body["count"] == 1
    assert body["updates"][0]["update_type"] == "tags-only"

    summary = client.get("/api/update-stats/summary?days=7").get_json()
    assert summary["summary"][0]["update_type"] == "tags-only"


def test_cleanup_endpoint(client, db):
    from datetime import datetime, timedelta

    with db.transaction() as session:
        record_update_stat(session, update_type="standard", created_at=datetime.utcnow() - timedelta(days=200))

    assert client.post("/api/maintenance/cleanup").status_code == 401
    body = client.post("/api/maintenance/cleanup", headers=AUTH).get_json()
    assert body["deleted_records"] == 1
    assert body["retention_days"] == 90

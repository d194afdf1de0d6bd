"""Tests for the tagx command line and the scheduler jobs."""

from datetime import datetime

import pytest
from click.testing import CliRunner

from tag_explorer.cli.main import cli
from tag_explorer.config import settings
from tag_explorer.exceptions import RunInProgress
from tag_explorer.scheduler import daily_job


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "db_url", f"sqlite:///{tmp_path / 'cli.db'}")
    return CliRunner()


def test_universe_load_then_tag_refresh(runner, tmp_path):
    csv_path = tmp_path / "universe.csv"
    csv_path.write_text("ticker,name,sector,index_member\nAAPL,Apple,Technology,SP500\nXOM,Exxon,Energy,SP500\n")

    result = runner.invoke(cli, ["db", "init"])
    assert result.exit_code == 0

    result = runner.invoke(cli, ["universe", "load", str(csv_path)])
    assert result.exit_code == 0, result.output
    assert "2 new" in result.output

    # Never-refreshed stocks are not taggable yet
    result = runner.invoke(cli, ["refresh", "tags"])
    assert result.exit_code == 0, result.output
    assert "tags-only refresh completed" in result.output

    result = runner.invoke(cli, ["stats", "recent"])
    assert result.exit_code == 0
    assert "Recent Runs" in result.output


def test_health_command(runner):
    result = runner.invoke(cli, ["health"])
    assert result.exit_code == 0, result.output
    assert "poor" in result.output


def test_tags_set_family_rejects_unknown(runner):
    result = runner.invoke(cli, ["tags", "set-family", "高ROE", "astrology"])
    assert result.exit_code == 1
    assert "Unknown family" in result.output


def test_refresh_exits_nonzero_on_failure(runner, monkeypatch):
    from tag_explorer.exceptions import NoSnapshotAvailable
    from tag_explorer.services import orchestrator

    def no_snapshot(*args, **kwargs):
        raise NoSnapshotAvailable("market closed for a week")

    monkeypatch.setattr(orchestrator, "fetch_market_snapshot", no_snapshot)
    result = runner.invoke(cli, ["refresh", "standard"])
    assert result.exit_code == 1
    assert "FAILED" in result.output


def test_daily_job_uses_cron_trigger(db, monkeypatch):
    calls = []

    def fake_run_refresh(database, mode, **kwargs):
        calls.append((mode, kwargs["triggered_by"], kwargs["trusted"]))
        raise RunInProgress("busy")

    monkeypatch.setattr(daily_job, "run_refresh", fake_run_refresh)
    daily_job.daily_refresh_job(db)
    assert calls == [("standard", "cron", True)]


def test_health_check_job_escalates(db, add_stocks, monkeypatch):
    seen = {}

    def fake_run_if_unhealthy(database, threshold):
        seen["threshold"] = threshold
        return None

    monkeypatch.setattr(daily_job, "run_if_unhealthy", fake_run_if_unhealthy)
    add_stocks({"ticker": "AAA", "last_updated": datetime.utcnow()})
    daily_job.health_check_job(db)
    assert seen["threshold"] == settings.batch_trigger_threshold

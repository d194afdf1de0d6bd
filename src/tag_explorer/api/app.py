"""
Tag Explorer -- Flask backend.

Refresh, health, read and maintenance endpoints over one ``Database`` handle.
Run with ``tagx serve`` or any WSGI server pointing at ``create_app()``.
"""

import logging
from datetime import datetime
from functools import wraps

from flask import Flask, current_app, jsonify, request

from tag_explorer.config import settings as default_settings
from tag_explorer.db import Database
from tag_explorer.exceptions import TagExplorerError
from tag_explorer.models.update_stat import TRIGGER_SOURCES
from tag_explorer.services.health import compute_health
from tag_explorer.services.orchestrator import authenticate, run_refresh
from tag_explorer.services.queries import list_tags_with_counts, stocks_for_tag, tags_for_ticker
from tag_explorer.services.stats import cleanup_update_stats, recent_update_stats, update_summary

logger = logging.getLogger(__name__)

REFRESH_MODES = {
    "standard": "standard",
    "batch": "batch",
    "tags": "tags-only",
}


def _db() -> Database:
    return current_app.config["TAGX_DB"]


def require_token(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        authenticate(request.headers.get("Authorization"), current_app.config["TAGX_SETTINGS"].cron_secret)
        return view(*args, **kwargs)
    return wrapper


def _int_arg(name: str, default: int, lo: int = 1, hi: int = 1000) -> int:
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        value = default
    return max(lo, min(hi, value))


def create_app(db: Database = None, settings=None) -> Flask:
    settings = settings or default_settings
    if db is None:
        db = Database.from_settings(settings)
        db.init_db()

    app = Flask(__name__)
    app.config["TAGX_DB"] = db
    app.config["TAGX_SETTINGS"] = settings
    app.json.ensure_ascii = False
    app.json.sort_keys = False

    @app.errorhandler(TagExplorerError)
    def handle_app_error(e: TagExplorerError):
        if e.status_code >= 500:
            logger.error(f"{e.__class__.__name__}: {e}")
        else:
            logger.warning(f"{request.path} rejected: {e}")
        return jsonify({
            "success": False,
            "error": e.__class__.__name__,
            "details": str(e),
            "timestamp": datetime.utcnow().isoformat(),
        }), e.status_code

    # ── Refresh ────────────────────────────────────────────

    @app.route("/api/refresh/<mode>")
    @require_token
    def api_refresh(mode):
        run_mode = REFRESH_MODES.get(mode)
        if run_mode is None:
            return jsonify({"success": False, "error": f"Unknown mode. Use: {', '.join(REFRESH_MODES)}"}), 404
        trigger = request.args.get("trigger", "cron" if run_mode == "standard" else "manual")
        if trigger not in TRIGGER_SOURCES:
            trigger = "manual"

        result = run_refresh(
            db,
            run_mode,
            triggered_by=trigger,
            trigger_reason=request.args.get("reason"),
            trusted=True,  # token checked by require_token
        )
        return jsonify(result.to_response()), 200 if result.succeeded else 500

    # ── Health ─────────────────────────────────────────────

    @app.route("/api/health")
    def api_health():
        with _db().reader() as session:
            report = compute_health(session)
        return jsonify(report.to_dict())

    # ── Tags ───────────────────────────────────────────────

    @app.route("/api/tags")
    def api_tags():
        with _db().reader() as session:
            tags = list_tags_with_counts(session, family=request.args.get("family"))
        return jsonify({"success": True, "count": len(tags), "tags": tags})

    @app.route("/api/tags/<name>/stocks")
    def api_tag_stocks(name):
        with _db().reader() as session:
            stocks = stocks_for_tag(session, name)
        if stocks is None:
            return jsonify({"success": False, "error": f"Tag not found: {name}"}), 404
        return jsonify({"success": True, "tag": name, "count": len(stocks), "stocks": stocks})

    @app.route("/api/stocks/<ticker>/tags")
    def api_stock_tags(ticker):
        with _db().reader() as session:
            tags = tags_for_ticker(session, ticker)
        if tags is None:
            return jsonify({"success": False, "error": f"Stock not found: {ticker.upper()}"}), 404
        return jsonify({"success": True, "ticker": ticker.upper(), "tags": tags})

    # ── Update statistics ──────────────────────────────────

    @app.route("/api/update-stats")
    def api_update_stats():
        limit = _int_arg("limit", 10, hi=100)
        with _db().reader() as session:
            stats = recent_update_stats(session, limit=limit, update_type=request.args.get("type"))
            rows = [s.to_dict() for s in stats]
        return jsonify({"success": True, "count": len(rows), "updates": rows})

    @app.route("/api/update-stats/summary")
    def api_update_summary():
        days = _int_arg("days", 30, hi=3650)
        with _db().reader() as session:
            summary = update_summary(session, days=days)
        return jsonify({"success": True, "days": days, "summary": summary})

    # ── Maintenance ────────────────────────────────────────

    @app.route("/api/maintenance/cleanup", methods=["POST"])
    @require_token
    def api_cleanup():
        days = _int_arg("days", settings.stats_retention_days, hi=3650)
        with _db().transaction() as session:
            deleted = cleanup_update_stats(session, retention_days=days)
        return jsonify({
            "success": True,
            "deleted_records": deleted,
            "retention_days": days,
            "timestamp": datetime.utcnow().isoformat(),
        })

    return app

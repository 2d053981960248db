"""
app.py
------
The Python app for the WRITE service.

Scheduled and administrative triggers for ingestion and aggregation. Every
endpoint except /health requires "Authorization: Bearer <CRON_SECRET>" when
CRON_SECRET is set.

    GET  /cron/ingest                        incremental ETL run
    POST /cron/ingest                        backfill one page of a date range
    GET  /cron/aggregate                     daily (today, yesterday) + summary + chaos
    POST /cron/aggregate                     same, for an explicit daily range
    POST /admin/backfill-daily-aggregates    rebuild the last N days
    POST /admin/fix-chaos                    recompute chaos scores only
    POST /admin/recategorize                 re-run the classifier on stored complaints
    GET  /admin/analyze-other                what lands in "other"
    POST /seed                               load neighborhood boundaries
"""

import logging
from datetime import date, timedelta
from functools import wraps

from flask import Flask, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from write_service import config
from write_service.aggregation import aggregates
from write_service.aggregation.chaos_score import update_chaos_scores
from write_service.consumers import complaint_consumer, nyc311_pipeline
from write_service.errors import ComplaintClubError
from write_service.ingestion.neighborhood_fetcher import fetch_neighborhood_features, load_neighborhoods
from write_service.processing.complaint_processor import parse_datetime

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _parse_date(value, name):
    if value is None:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValueError(f"'{name}' must be a date (YYYY-MM-DD), got {value!r}")


def _parse_int(value, name, default):
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"'{name}' must be an integer, got {value!r}")


def require_cron_secret(view):
    """Reject the request unless it carries the configured bearer token."""

    @wraps(view)
    def wrapper(*args, **kwargs):
        secret = config.CRON_SECRET
        if secret and request.headers.get("Authorization") != f"Bearer {secret}":
            logger.warning(f"Unauthorized request to {request.path}")
            return jsonify({"success": False, "error": "Unauthorized"}), 401
        return view(*args, **kwargs)

    return wrapper


def create_app(session_factory=None):
    """
    Build the write service app. Tests pass a session factory bound to an
    in-memory database; otherwise the configured PostgreSQL one is used.
    """
    if session_factory is None:
        from write_service.db.session import SessionLocal
        session_factory = SessionLocal

    app = Flask(__name__)

    @app.errorhandler(ValueError)
    def handle_bad_input(error):
        return jsonify({"success": False, "error": str(error)}), 400

    @app.errorhandler(ComplaintClubError)
    def handle_run_failure(error):
        app.logger.error(f"{request.path} failed: {error}")
        return jsonify({"success": False, "error": str(error)}), 500

    @app.errorhandler(SQLAlchemyError)
    def handle_database_failure(error):
        app.logger.error(f"{request.path} failed on the database: {error}")
        return jsonify({"success": False, "error": f"Database error: {error.__class__.__name__}"}), 500

    @app.route("/cron/ingest", methods=["GET"])
    @require_cron_secret
    def ingest():
        stats = nyc311_pipeline.run_ingestion(session_factory)
        message = "No new complaints found" if stats["fetched"] == 0 else "ETL completed successfully"
        return jsonify({"success": True, "message": message, "stats": stats})

    @app.route("/cron/ingest", methods=["POST"])
    @require_cron_secret
    def backfill():
        body = request.get_json(silent=True) or {}
        now = aggregates.nyc_now()
        until = parse_datetime(body["until"]) if body.get("until") else now
        since = parse_datetime(body["since"]) if body.get("since") else until - timedelta(days=30)
        if since is None or until is None:
            raise ValueError("'since' and 'until' must be ISO timestamps")

        stats = nyc311_pipeline.run_backfill(
            session_factory,
            since,
            until,
            limit=_parse_int(body.get("limit"), "limit", config.BACKFILL_LIMIT),
            offset=_parse_int(body.get("offset"), "offset", 0),
        )
        return jsonify({"success": True, "message": "Backfill completed", "stats": stats})

    @app.route("/cron/aggregate", methods=["GET", "POST"])
    @require_cron_secret
    def aggregate():
        body = (request.get_json(silent=True) or {}) if request.method == "POST" else {}
        as_of = _parse_date(body.get("as_of"), "as_of") or aggregates.current_date()

        if body.get("start") or body.get("end"):
            start = _parse_date(body.get("start"), "start") or as_of
            end = _parse_date(body.get("end"), "end") or as_of
            daily = aggregates.refresh_daily_range(session_factory, start, end)
            summary = aggregates.refresh_summary(session_factory, as_of=as_of)
            chaos = update_chaos_scores(session_factory)
            report = {"daily": daily, "summary": summary, "chaos": chaos}
        else:
            report = aggregates.full_refresh(session_factory, as_of=as_of)

        return jsonify({
            "success": True,
            "message": "Aggregation completed",
            "as_of": as_of.isoformat(),
            "results": {step: outcome.to_dict() for step, outcome in report.items()},
        })

    @app.route("/admin/backfill-daily-aggregates", methods=["POST"])
    @require_cron_secret
    def backfill_daily_aggregates():
        body = request.get_json(silent=True) or {}
        days = _parse_int(body.get("days"), "days", 30)
        outcome = aggregates.backfill_daily_aggregates(session_factory, days=days)
        return jsonify({
            "success": outcome.failed == 0,
            "message": f"Backfilled daily aggregates for last {days} days",
            "results": outcome.to_dict(),
        })

    @app.route("/admin/fix-chaos", methods=["POST"])
    @require_cron_secret
    def fix_chaos():
        body = request.get_json(silent=True) or {}
        outcome = update_chaos_scores(session_factory, policy=body.get("policy"))
        return jsonify({"success": True, "message": "Chaos scores recalculated", "results": outcome.to_dict()})

    @app.route("/admin/recategorize", methods=["POST"])
    @require_cron_secret
    def recategorize():
        body = request.get_json(silent=True) or {}
        only_other = not body.get("recategorize_all", False) and body.get("only_other", True)
        stats = complaint_consumer.recategorize(session_factory, only_other=bool(only_other))
        return jsonify({"success": True, "message": "Recategorization complete", "stats": stats})

    @app.route("/admin/analyze-other", methods=["GET"])
    @require_cron_secret
    def analyze_other():
        return jsonify({"success": True, **complaint_consumer.analyze_other(session_factory)})

    @app.route("/seed", methods=["POST"])
    @require_cron_secret
    def seed():
        features = fetch_neighborhood_features()
        outcome = load_neighborhoods(session_factory, features)
        return jsonify({
            "success": outcome.failed == 0,
            "message": f"Loaded {outcome.succeeded} neighborhoods",
            "stats": {"residential": len(features), **outcome.to_dict()},
        })

    @app.route("/health")
    def health():
        """Endpoint for checking health of this app (if basic endpoint works or not)."""
        logging.info("Health is okay.")
        return {"status": "ok"}

    return app


if __name__ == "__main__":
    """Called when this app is started."""
    logging.info("The write service Python app has started.")
    create_app().run(host="0.0.0.0", port=5000)

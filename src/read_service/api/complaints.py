# src/read_service/api/complaints.py

from flask import Blueprint, current_app, jsonify, request

from read_service.processors.compare_processor import compare_neighborhoods
from read_service.processors.leaderboard_processor import get_leaderboard
from read_service.processors.nearby_processor import get_nearby_complaints
from read_service.processors.neighborhood_processor import (
    get_neighborhood,
    get_neighborhood_detail,
    get_neighborhood_trends,
    list_neighborhoods,
)


def _int_arg(name, default=None, required=False):
    value = request.args.get(name)
    if value is None or value.strip() == "":
        if required:
            raise ValueError(f"'{name}' is required")
        return default
    try:
        return int(value.strip())
    except ValueError:
        raise ValueError(f"'{name}' must be an integer, got {value!r}")


def _float_arg(name):
    value = request.args.get(name)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError("Valid latitude and longitude are required")


def _neighborhood_id(raw_id):
    """Path ids arrive as strings, sometimes with stray whitespace."""
    try:
        neighborhood_id = int("".join(str(raw_id).split()))
    except ValueError:
        raise ValueError("Invalid neighborhood ID")
    if neighborhood_id <= 0:
        raise ValueError("Invalid neighborhood ID")
    return neighborhood_id


def create_complaints_blueprint(SessionLocal):
    """
    Factory that creates the complaints blueprint with access
    to SessionLocal for DB queries.

    Endpoints:
        GET /api/leaderboard?timeframe=&category=&limit=
        GET /api/neighborhood/<id>
        GET /api/neighborhood/<id>/trends?days=
        GET /api/compare?left=&right=&timeframe=
        GET /api/nearby?lat=&lon=&radius=&limit=
        GET /api/neighborhoods?borough=&search=

    Behavior:
        - Successful responses are {"data": ...}.
        - Bad parameters give 400, unknown neighborhoods 404, anything
          else 500, always as {"data": null, "error": "..."}.
    """
    bp = Blueprint("complaints", __name__, url_prefix="/api")

    @bp.errorhandler(ValueError)
    def bad_request(error):
        return jsonify({"data": None, "error": str(error)}), 400

    @bp.errorhandler(Exception)
    def query_failed(error):
        current_app.logger.error(f"Query failed on {request.path}: {error}")
        return jsonify({"data": None, "error": "Internal server error"}), 500

    def not_found(message="Neighborhood not found"):
        return jsonify({"data": None, "error": message}), 404

    @bp.route("/leaderboard", methods=["GET"])
    def leaderboard():
        """Neighborhoods ranked by complaint volume."""
        db = SessionLocal()
        try:
            payload = get_leaderboard(
                db,
                timeframe=request.args.get("timeframe"),
                category=request.args.get("category"),
                limit=_int_arg("limit", 50),
            )
        finally:
            db.close()
        return jsonify(payload), 200

    @bp.route("/neighborhood/<raw_id>", methods=["GET"])
    def neighborhood_detail(raw_id):
        neighborhood_id = _neighborhood_id(raw_id)
        db = SessionLocal()
        try:
            detail = get_neighborhood_detail(db, neighborhood_id)
        finally:
            db.close()
        if detail is None:
            return not_found()
        return jsonify({"data": detail}), 200

    @bp.route("/neighborhood/<raw_id>/trends", methods=["GET"])
    def neighborhood_trends(raw_id):
        neighborhood_id = _neighborhood_id(raw_id)
        days = _int_arg("days", 30)
        db = SessionLocal()
        try:
            if get_neighborhood(db, neighborhood_id) is None:
                return not_found()
            trends = get_neighborhood_trends(db, neighborhood_id, days=days)
        finally:
            db.close()
        return jsonify({"data": trends}), 200

    @bp.route("/compare", methods=["GET"])
    def compare():
        try:
            left = _int_arg("left", required=True)
            right = _int_arg("right", required=True)
        except ValueError:
            raise ValueError("Both left and right neighborhood IDs are required")

        db = SessionLocal()
        try:
            comparison = compare_neighborhoods(db, left, right, timeframe=request.args.get("timeframe"))
        finally:
            db.close()
        if comparison is None:
            return not_found("One or both neighborhoods not found")
        return jsonify({"data": comparison}), 200

    @bp.route("/nearby", methods=["GET"])
    def nearby():
        lat = _float_arg("lat")
        lon = _float_arg("lon")
        db = SessionLocal()
        try:
            payload = get_nearby_complaints(
                db, lat, lon,
                radius=_int_arg("radius", 500),
                limit=_int_arg("limit", 50),
            )
        finally:
            db.close()
        return jsonify({"data": payload}), 200

    @bp.route("/neighborhoods", methods=["GET"])
    def neighborhoods():
        db = SessionLocal()
        try:
            payload = list_neighborhoods(db, borough=request.args.get("borough"), search=request.args.get("search"))
        finally:
            db.close()
        return jsonify({"data": payload}), 200

    return bp

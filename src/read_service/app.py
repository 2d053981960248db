"""
app.py: Main Flask application for the CQRS Query Side (Read Service) in Complaint Club Data API.

This microservice handles read-optimized operations:
- Event processors for leaderboard, neighborhood, comparison and nearby queries from PostgreSQL.
- RESTful API endpoints (blueprint + flask-restful resources).
- Open API (Swagger) integration for documentation.
- Uses SQLAlchemy for PG interactions; reads only the aggregate and complaint tables.

Run with: python -m read_service.app (starts on port 5001).
Integrates with write_service via shared PG (CQRS separation).
"""

import logging
import os

from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_restful import Api, Resource
from flask_swagger_ui import get_swaggerui_blueprint
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from read_service.api.complaints import create_complaints_blueprint
from read_service.processors.etl_processor import list_etl_runs

logging.basicConfig(level=logging.INFO)

# Swagger UI configuration
SWAGGER_URL = '/swagger'  # URL for Swagger UI (e.g., http://localhost:5001/swagger)
API_URL = '/swagger.json'

# Swagger UI config (passed to blueprint)
SWAGGER_CONFIG = {
    'app_name': "Complaint Club Data API - Read Service",
    'deepLinking': True,
    'defaultModelsExpandDepth': -1,
    'showExtensions': True,
    'showCommonExtensions': True
}

TIMEFRAME_PARAM = {
    "name": "timeframe", "in": "query", "required": False,
    "schema": {"type": "string", "enum": ["today", "week", "month", "rolling90", "all"], "default": "month"},
}
ID_PARAM = {"name": "id", "in": "path", "required": True, "schema": {"type": "integer"}}


def _query_param(name, schema_type, default=None, required=False):
    schema = {"type": schema_type}
    if default is not None:
        schema["default"] = default
    return {"name": name, "in": "query", "required": required, "schema": schema}


SWAGGER_SPEC = {
    "openapi": "3.0.0",
    "info": {"title": "Complaint Club Data API Read Service", "version": "1.0.0"},
    "paths": {
        "/health": {
            "get": {"summary": "Health check", "responses": {"200": {"description": "OK"}}}
        },
        "/api/leaderboard": {
            "get": {
                "summary": "Neighborhoods ranked by NYC 311 complaints",
                "tags": ["Rankings"],
                "parameters": [
                    TIMEFRAME_PARAM,
                    _query_param("category", "string", "all"),
                    _query_param("limit", "integer", 50),
                ],
                "responses": {"200": {"description": "Ranked rows with category counts and chaos score"},
                              "400": {"description": "Unknown timeframe or category"}},
            }
        },
        "/api/neighborhood/{id}": {
            "get": {
                "summary": "Stats, chaos score, 30-day trend and insights for one neighborhood",
                "tags": ["Neighborhoods"],
                "parameters": [ID_PARAM],
                "responses": {"200": {"description": "Neighborhood detail"},
                              "404": {"description": "Neighborhood not found"}},
            }
        },
        "/api/neighborhood/{id}/trends": {
            "get": {
                "summary": "Daily complaint counts per category",
                "tags": ["Neighborhoods"],
                "parameters": [ID_PARAM, _query_param("days", "integer", 30)],
                "responses": {"200": {"description": "One entry per date, oldest first"}},
            }
        },
        "/api/compare": {
            "get": {
                "summary": "Compare two neighborhoods",
                "tags": ["Rankings"],
                "parameters": [
                    _query_param("left", "integer", required=True),
                    _query_param("right", "integer", required=True),
                    TIMEFRAME_PARAM,
                ],
                "responses": {"200": {"description": "Both rows plus overall and per-category winners"},
                              "404": {"description": "One or both neighborhoods not found"}},
            }
        },
        "/api/nearby": {
            "get": {
                "summary": "Complaints near a point and its annoyance score",
                "tags": ["Complaints"],
                "parameters": [
                    _query_param("lat", "number", required=True),
                    _query_param("lon", "number", required=True),
                    _query_param("radius", "integer", 500),
                    _query_param("limit", "integer", 50),
                ],
                "responses": {"200": {"description": "Nearby complaints, category breakdown, annoyance score"},
                              "400": {"description": "Coordinates missing or outside New York City"}},
            }
        },
        "/api/neighborhoods": {
            "get": {
                "summary": "Neighborhood directory",
                "tags": ["Neighborhoods"],
                "parameters": [_query_param("borough", "string"), _query_param("search", "string")],
                "responses": {"200": {"description": "Neighborhoods, grouped by borough"}},
            }
        },
        "/api/etl-runs": {
            "get": {
                "summary": "Recent ingestion runs",
                "tags": ["Operations"],
                "parameters": [_query_param("limit", "integer", 20)],
                "responses": {"200": {"description": "Run provenance, newest first"}},
            }
        },
    },
}


class EtlRuns(Resource):
    """GET /api/etl-runs: ingestion provenance, newest first."""

    def __init__(self, SessionLocal):
        self.SessionLocal = SessionLocal

    def get(self):
        try:
            limit = int(request.args.get("limit", 20))
        except ValueError:
            return {"data": None, "error": "'limit' must be an integer"}, 400

        db = self.SessionLocal()
        try:
            return {"data": list_etl_runs(db, limit=limit)}, 200
        finally:
            db.close()


def create_app(SessionLocal=None):
    """
    Build the read service app. Tests pass a session factory bound to an
    in-memory database; otherwise the shared PostgreSQL one is used.
    """
    if SessionLocal is None:
        from write_service.db.session import SessionLocal

    # Initialize Flask app
    app = Flask(__name__)
    api = Api(app)

    # Use Flask CORS to allow connections from other sites
    CORS(app)

    # Make sure INFO-level logs show up
    app.logger.setLevel("INFO")

    # Create and register the Swagger UI blueprint
    swaggerui_blueprint = get_swaggerui_blueprint(SWAGGER_URL, API_URL, config=SWAGGER_CONFIG)
    app.register_blueprint(swaggerui_blueprint)

    app.register_blueprint(create_complaints_blueprint(SessionLocal))
    api.add_resource(EtlRuns, "/api/etl-runs", resource_class_kwargs={"SessionLocal": SessionLocal})

    # Basic health check endpoint (Query side: Check PG connection)
    @app.route('/health', methods=['GET'])
    def health():
        """
        Health check for read_service: Verifies PG connection for queries.
        Returns: {"status": "ok", "postgres": true}
        """
        try:
            with SessionLocal() as db:
                db.execute(text("SELECT 1"))
            postgres_status = True
        except SQLAlchemyError as e:
            app.logger.error(f"PG health check failed: {e}")
            postgres_status = False

        return jsonify({
            "status": "ok" if postgres_status else "error",
            "service": "read_service",
            "postgres": postgres_status
        })

    @app.route('/swagger.json', methods=['GET'])
    def swagger_spec():
        """
        Open API spec for read_service endpoints.
        """
        return jsonify(SWAGGER_SPEC)

    # Error handler for 404
    @app.errorhandler(404)
    def not_found(error):
        return jsonify({"error": "Endpoint not found"}), 404

    # Error handler for 500
    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({"error": "Internal server error"}), 500

    return app


if __name__ == '__main__':
    # Run the Flask app (debug mode = True for development only).
    debug_mode = os.getenv('FLASK_DEBUG', 'False').lower() == 'true'
    create_app().run(host='0.0.0.0', port=5001, debug=debug_mode)

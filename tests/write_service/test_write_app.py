# tests/write_service/test_write_app.py
"""
Tests for the write service endpoints (cron and admin triggers).
NYC Open Data is mocked at requests.get.
"""

from datetime import date, datetime, timedelta
from unittest.mock import MagicMock

import pytest
import requests
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from write_service import config
from write_service.aggregation.aggregates import nyc_now
from write_service.app import create_app
from write_service.db.models import AggregateDaily, AggregateSummary, Complaint, EtlRun, Neighborhood


@pytest.fixture
def client(session_factory):
    app = create_app(session_factory)
    app.config["TESTING"] = True
    return app.test_client()


@pytest.fixture
def upstream(mocker):
    """requests.get as seen by the NYC 311 fetcher."""
    return mocker.patch("write_service.ingestion.nyc311_fetcher.requests.get")


def api_returns(upstream, body):
    response = MagicMock()
    response.json.return_value = body
    upstream.return_value = response


def count(session_factory, model):
    with session_factory() as session:
        return session.scalar(select(func.count()).select_from(model))


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


def test_cron_secret_required_when_configured(client, monkeypatch):
    monkeypatch.setattr(config, "CRON_SECRET", "s3cret")

    assert client.get("/cron/ingest").status_code == 401
    assert client.get("/cron/ingest", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.post("/admin/fix-chaos").get_json() == {"success": False, "error": "Unauthorized"}
    # health stays open
    assert client.get("/health").status_code == 200


def test_cron_secret_accepted(client, neighborhoods, monkeypatch, upstream):
    monkeypatch.setattr(config, "CRON_SECRET", "s3cret")
    api_returns(upstream, [])

    response = client.get("/cron/ingest", headers={"Authorization": "Bearer s3cret"})

    assert response.status_code == 200


def test_ingest_stores_fetched_complaints(client, session_factory, neighborhoods, upstream, make_record, points):
    created = nyc_now() - timedelta(hours=2)
    api_returns(upstream, [
        make_record("5001", "Noise - Residential", created, point=points["Astoria"]),
        make_record("5002", "Rodent", created, point=points["Harlem"]),
    ])

    response = client.get("/cron/ingest")

    body = response.get_json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["message"] == "ETL completed successfully"
    assert body["stats"]["fetched"] == 2
    assert body["stats"]["inserted"] == 2
    assert count(session_factory, Complaint) == 2


def test_ingest_with_nothing_new(client, neighborhoods, upstream):
    api_returns(upstream, [])

    body = client.get("/cron/ingest").get_json()

    assert body["success"] is True
    assert body["message"] == "No new complaints found"


def test_ingest_upstream_failure_is_500(client, session_factory, neighborhoods, upstream):
    upstream.side_effect = requests.exceptions.ConnectionError("connection refused")

    response = client.get("/cron/ingest")

    assert response.status_code == 500
    assert response.get_json()["success"] is False
    with session_factory() as session:
        assert session.scalars(select(EtlRun.status)).all() == ["failed"]


def test_ingest_without_neighborhoods_is_500(client, upstream):
    api_returns(upstream, [])

    response = client.get("/cron/ingest")

    assert response.status_code == 500
    assert "neighborhoods" in response.get_json()["error"]


def test_ingest_database_failure_is_json_500(client, session_factory, neighborhoods, upstream, mocker):
    mocker.patch(
        "write_service.consumers.nyc311_pipeline.get_watermark",
        side_effect=OperationalError("SELECT", {}, Exception("server closed the connection")),
    )

    response = client.get("/cron/ingest")

    assert response.status_code == 500
    assert response.get_json() == {"success": False, "error": "Database error: OperationalError"}
    upstream.assert_not_called()
    with session_factory() as session:
        assert session.scalars(select(EtlRun.status)).all() == ["failed"]


def test_backfill_page(client, session_factory, neighborhoods, upstream, make_record):
    api_returns(upstream, [make_record("6001", "Rodent", datetime(2024, 1, 5, 9, 0))])

    response = client.post("/cron/ingest", json={
        "since": "2024-01-01T00:00:00", "until": "2024-02-01T00:00:00", "limit": 1,
    })

    stats = response.get_json()["stats"]
    assert response.status_code == 200
    assert stats["inserted"] == 1
    assert stats["has_more"] is True
    assert stats["next_offset"] == 1
    params = upstream.call_args.kwargs["params"]
    assert params["$where"] == "created_date >= '2024-01-01T00:00:00' AND created_date < '2024-02-01T00:00:00'"
    assert count(session_factory, EtlRun) == 0


@pytest.mark.parametrize("body", [
    {"since": "2024-02-01T00:00:00", "until": "2024-01-01T00:00:00"},
    {"since": "not a time", "until": "2024-01-01T00:00:00"},
    {"limit": "many"},
])
def test_backfill_bad_input_is_400(client, neighborhoods, upstream, body):
    api_returns(upstream, [])

    response = client.post("/cron/ingest", json=body)

    assert response.status_code == 400
    assert response.get_json()["success"] is False


def test_aggregate_explicit_range(client, session_factory, neighborhoods, add_complaints):
    day = date(2024, 3, 9)
    add_complaints([
        ("Noise - Residential", datetime(2024, 3, 9, 22, 0), neighborhoods["Astoria"]),
        ("Rodent", datetime(2024, 3, 8, 10, 0), neighborhoods["Astoria"]),
    ])

    response = client.post("/cron/aggregate", json={"as_of": "2024-03-09", "start": "2024-03-01", "end": "2024-03-09"})

    body = response.get_json()
    assert response.status_code == 200
    assert body["as_of"] == day.isoformat()
    assert body["results"]["daily"]["succeeded"] == 9
    assert body["results"]["summary"]["succeeded"] == 3
    assert body["results"]["chaos"]["failed"] == 0
    assert count(session_factory, AggregateDaily) == 2
    with session_factory() as session:
        month = session.scalars(
            select(AggregateSummary)
            .where(AggregateSummary.neighborhood_id == neighborhoods["Astoria"])
            .where(AggregateSummary.timeframe == "month")
        ).one()
    assert month.total == 2
    assert month.rank_in_city == 1


def test_aggregate_default_cycle(client, neighborhoods):
    response = client.get("/cron/aggregate")

    body = response.get_json()
    assert response.status_code == 200
    assert set(body["results"]) == {"daily", "summary", "chaos"}
    assert body["results"]["daily"]["succeeded"] == 2


def test_aggregate_bad_range_is_400(client, neighborhoods):
    response = client.post("/cron/aggregate", json={"start": "2024-03-09", "end": "2024-03-01"})
    assert response.status_code == 400

    response = client.post("/cron/aggregate", json={"as_of": "yesterday"})
    assert response.status_code == 400


def test_aggregate_without_neighborhoods_is_500(client):
    response = client.get("/cron/aggregate")

    assert response.status_code == 500
    assert response.get_json()["success"] is False


def test_backfill_daily_aggregates_endpoint(client, neighborhoods):
    body = client.post("/admin/backfill-daily-aggregates", json={"days": 3}).get_json()

    assert body["success"] is True
    assert body["results"]["succeeded"] == 3


def test_fix_chaos_endpoint(client, session_factory, neighborhoods):
    with session_factory() as session:
        session.add(AggregateSummary(neighborhood_id=neighborhoods["Astoria"], timeframe="month", total=4, noise=2))
        session.commit()

    body = client.post("/admin/fix-chaos", json={"policy": "relative"}).get_json()

    assert body["results"]["succeeded"] == 1
    with session_factory() as session:
        assert session.scalar(select(AggregateSummary.chaos_score)) == 70


def test_fix_chaos_unknown_policy_is_400(client):
    assert client.post("/admin/fix-chaos", json={"policy": "vibes"}).status_code == 400


def test_recategorize_and_analyze_endpoints(client, session_factory):
    with session_factory() as session:
        session.add(Complaint(id="1", complaint_type="Rodent", category="other", created_at=datetime(2024, 3, 1)))
        session.add(Complaint(id="2", complaint_type="Taxi Complaint", category="other", created_at=datetime(2024, 3, 1)))
        session.commit()

    stats = client.post("/admin/recategorize", json={}).get_json()["stats"]
    assert stats["updated"] == 1

    body = client.get("/admin/analyze-other").get_json()
    assert body["success"] is True
    assert body["total_other"] == 1
    assert body["types"][0]["complaint_type"] == "Taxi Complaint"


def test_seed_loads_neighborhoods(client, session_factory, mocker):
    mocker.patch("write_service.app.fetch_neighborhood_features", return_value=[{
        "type": "Feature",
        "properties": {"nta2020": "QN0101", "ntaname": "Astoria", "boroname": "Queens"},
        "geometry": {"type": "MultiPolygon", "coordinates": [[[[0, 0], [1, 0], [1, 1], [0, 0]]]]},
    }])

    body = client.post("/seed").get_json()

    assert body["success"] is True
    assert body["stats"]["residential"] == 1
    assert count(session_factory, Neighborhood) == 1

# tests/conftest.py
"""
Shared fixtures: an in-memory SQLite database with the real schema, a few
square test neighborhoods, and helpers for building 311 records.
"""

import itertools
import json
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from write_service import config
from write_service.db.models import Complaint, Neighborhood
from write_service.db.session import Base, make_session_factory
from write_service.processing.categories import classify

# name, borough, nta_code, (min_lon, min_lat) of a 0.01 degree square
TEST_NEIGHBORHOODS = [
    ("Astoria", "Queens", "QN0101", (-73.93, 40.76)),
    ("Park Slope", "Brooklyn", "BK0601", (-73.99, 40.67)),
    ("Harlem", "Manhattan", "MN1001", (-73.95, 40.80)),
]

# a point inside each square
ASTORIA = (40.765, -73.925)
PARK_SLOPE = (40.675, -73.985)
HARLEM = (40.805, -73.945)


def square(min_lon, min_lat, size=0.01):
    ring = [
        [min_lon, min_lat],
        [min_lon + size, min_lat],
        [min_lon + size, min_lat + size],
        [min_lon, min_lat + size],
        [min_lon, min_lat],
    ]
    return {"type": "MultiPolygon", "coordinates": [[ring]]}


@pytest.fixture(autouse=True)
def single_worker(monkeypatch):
    """SQLite shares one connection across the test, so keep work on one thread."""
    monkeypatch.setattr(config, "INGEST_WORKERS", 1)
    monkeypatch.setattr(config, "AGGREGATION_WORKERS", 1)
    monkeypatch.setattr(config, "CRON_SECRET", None)
    monkeypatch.setattr(config, "SOCRATA_APP_TOKEN", None)


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def neighborhoods(session_factory):
    """Load the test neighborhoods; returns {name: id}."""
    ids = {}
    with session_factory() as session:
        for name, borough, code, (min_lon, min_lat) in TEST_NEIGHBORHOODS:
            neighborhood = Neighborhood(
                name=name, borough=borough, nta_code=code, boundary=json.dumps(square(min_lon, min_lat))
            )
            session.add(neighborhood)
            session.flush()
            ids[name] = neighborhood.id
        session.commit()
    return ids


@pytest.fixture
def make_record():
    """Build a raw NYC 311 API record the way Socrata returns it (all strings)."""

    def _make(unique_key, complaint_type, created, point=ASTORIA, descriptor=None, borough="QUEENS"):
        record = {
            "unique_key": str(unique_key),
            "complaint_type": complaint_type,
            "created_date": created.strftime("%Y-%m-%dT%H:%M:%S.000") if isinstance(created, datetime) else created,
            "borough": borough,
            "incident_zip": "11103",
        }
        if descriptor:
            record["descriptor"] = descriptor
        if point is not None:
            record["latitude"] = str(point[0])
            record["longitude"] = str(point[1])
        return record

    return _make


@pytest.fixture
def add_complaints(session_factory):
    """Insert classified complaints straight into the table."""
    ids = itertools.count(1)

    def _add(rows):
        with session_factory() as session:
            for complaint_type, created_at, neighborhood_id in rows:
                session.add(Complaint(
                    id=f"T{next(ids)}",
                    category=classify(complaint_type),
                    complaint_type=complaint_type,
                    created_at=created_at,
                    neighborhood_id=neighborhood_id,
                ))
            session.commit()

    return _add


@pytest.fixture
def points():
    """A (lat, lon) inside each test neighborhood."""
    return {"Astoria": ASTORIA, "Park Slope": PARK_SLOPE, "Harlem": HARLEM}


@pytest.fixture
def read_client(session_factory):
    """Test client for the read service, bound to the in-memory database."""
    from read_service.app import create_app

    app = create_app(session_factory)
    app.config["TESTING"] = True
    return app.test_client()


@pytest.fixture
def seeded(session_factory, neighborhoods, add_complaints):
    """
    Aggregated complaints as of today (New York):
    Astoria 3 noise today + 1 rat yesterday, Park Slope 2 rats today,
    Harlem nothing. Returns {name: id}.
    """
    from write_service.aggregation.aggregates import current_date, full_refresh

    today = current_date()
    noon = datetime.combine(today, datetime.min.time()) + timedelta(hours=12)
    astoria, park_slope = neighborhoods["Astoria"], neighborhoods["Park Slope"]
    add_complaints([
        ("Noise - Residential", noon, astoria),
        ("Noise - Residential", noon, astoria),
        ("Noise - Street/Sidewalk", noon, astoria),
        ("Rodent", noon - timedelta(days=1), astoria),
        ("Rodent", noon, park_slope),
        ("Rodent", noon, park_slope),
    ])
    full_refresh(session_factory, as_of=today, max_workers=1)
    return neighborhoods

"""
models.py
----------
Defines the PostgreSQL tables for the write service using SQLAlchemy ORM.
Each class here represents one table in the database. The read service
queries the same tables (CQRS: shared store, separate write/read apps).
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Float, Date, DateTime, Text, JSON, ForeignKey, UniqueConstraint, Index
)

from .session import Base

ETL_RUNNING = "running"
ETL_COMPLETED = "completed"
ETL_FAILED = "failed"


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Neighborhood(Base):
    """
    NYC Neighborhood Tabulation Area (NTA 2020).

    Reference data loaded from the NYC Open Data boundary dataset.
    The boundary is stored as GeoJSON (MultiPolygon) text; point-in-polygon
    resolution happens in write_service.ingestion.neighborhood_fetcher.
    """
    __tablename__ = "neighborhoods"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    borough = Column(String(64), nullable=False)

    # Natural key from the boundary dataset (e.g. "BK0101")
    nta_code = Column(String(16), nullable=False, unique=True)

    boundary = Column(Text)


class Complaint(Base):
    """
    One NYC 311 service request as ingested.

    The primary key is the upstream unique_key, so re-ingesting the same
    record is an insert-or-skip, never a duplicate row.
    """
    __tablename__ = "complaints"

    id = Column(String(32), primary_key=True)
    category = Column(String(32), nullable=False, index=True)
    complaint_type = Column(String(255))
    descriptor = Column(String(255))
    created_at = Column(DateTime, nullable=False, index=True)
    latitude = Column(Float)
    longitude = Column(Float)
    incident_zip = Column(String(16))
    borough = Column(String(64))
    neighborhood_id = Column(Integer, ForeignKey("neighborhoods.id"), index=True)

    # Original upstream payload (data lineage)
    raw = Column(JSON)

    ingested_at = Column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_complaints_lat_lon", "latitude", "longitude"),
    )


class AggregateDaily(Base):
    """Complaint count per (neighborhood, date, category)."""
    __tablename__ = "aggregates_daily"

    id = Column(Integer, primary_key=True, autoincrement=True)
    neighborhood_id = Column(Integer, ForeignKey("neighborhoods.id"), nullable=False)
    date = Column(Date, nullable=False, index=True)
    category = Column(String(32), nullable=False)
    count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("neighborhood_id", "date", "category", name="uq_aggregates_daily_key"),
    )


class AggregateSummary(Base):
    """
    Complaint totals per (neighborhood, timeframe), one column per category.

    total always equals the sum of the category columns. chaos_score is
    derived from the month row and copied onto every timeframe.
    """
    __tablename__ = "aggregates_summary"

    id = Column(Integer, primary_key=True, autoincrement=True)
    neighborhood_id = Column(Integer, ForeignKey("neighborhoods.id"), nullable=False)
    timeframe = Column(String(16), nullable=False)
    total = Column(Integer, nullable=False, default=0)

    rats = Column(Integer, nullable=False, default=0)
    noise = Column(Integer, nullable=False, default=0)
    parking = Column(Integer, nullable=False, default=0)
    trash = Column(Integer, nullable=False, default=0)
    heat_water = Column(Integer, nullable=False, default=0)
    construction = Column(Integer, nullable=False, default=0)
    building = Column(Integer, nullable=False, default=0)
    bikes = Column(Integer, nullable=False, default=0)
    other = Column(Integer, nullable=False, default=0)

    chaos_score = Column(Integer, nullable=False, default=0)
    rank_in_city = Column(Integer)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("neighborhood_id", "timeframe", name="uq_aggregates_summary_key"),
        Index("ix_aggregates_summary_timeframe_total", "timeframe", "total"),
    )


class EtlRun(Base):
    """
    Provenance for one ingestion attempt (append-only).

    The most recent completed run's last_complaint_date is the watermark
    the next incremental run fetches from.
    """
    __tablename__ = "etl_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    started_at = Column(DateTime, default=_utcnow, nullable=False)
    completed_at = Column(DateTime)
    status = Column(String(16), nullable=False, default=ETL_RUNNING, index=True)
    records_fetched = Column(Integer, default=0)
    records_inserted = Column(Integer, default=0)
    records_skipped = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)
    last_complaint_date = Column(DateTime)
    error_message = Column(Text)


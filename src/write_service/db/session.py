"""
session.py
-----------
Creates the database engine and session factory for SQLAlchemy.
This connects to PostgreSQL using the connection string from .env
(see write_service.config.PG_DSN).
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from write_service.config import PG_DSN

# Create a SQLAlchemy engine: this manages the connection pool.
# Workers in the ingest/aggregation pools each hold one connection.
engine = create_engine(PG_DSN, pool_pre_ping=True, pool_size=10, max_overflow=20, future=True)

# Create a session factory: this generates new DB sessions on demand
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)

# Base class for ORM models to inherit from (like Complaint)
Base = declarative_base()


def make_session_factory(bind):
    """
    Build a session factory for another engine (tests use in-memory SQLite).
    """
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def create_tables(bind=None):
    """Create all tables if not present."""
    # models must be imported so they register on Base.metadata
    from write_service.db import models  # noqa: F401

    Base.metadata.create_all(bind or engine)

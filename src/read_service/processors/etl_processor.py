# src/read_service/processors/etl_processor.py

"""
ETL run provenance for read operations.
Queries the etl_runs table written by the write service pipeline.
"""

from sqlalchemy import DateTime, text
from sqlalchemy.orm import Session

MAX_RUNS = 100

RUNS_QUERY = text("""
    SELECT id, started_at, completed_at, status, records_fetched, records_inserted,
           records_skipped, records_failed, last_complaint_date, error_message
    FROM etl_runs
    ORDER BY started_at DESC, id DESC
    LIMIT :limit
""").columns(started_at=DateTime, completed_at=DateTime, last_complaint_date=DateTime)


def list_etl_runs(session: Session, limit=20):
    """Most recent ETL runs, newest first."""
    limit = max(1, min(int(limit), MAX_RUNS))

    runs = []
    for row in session.execute(RUNS_QUERY, {"limit": limit}):
        record = dict(row._mapping)
        for key in ("started_at", "completed_at", "last_complaint_date"):
            if record[key] is not None:
                record[key] = record[key].isoformat()
        runs.append(record)
    return runs

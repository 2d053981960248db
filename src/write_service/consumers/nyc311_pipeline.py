"""
Complete NYC 311 pipeline: Fetch → Classify → Store in one command.

Incremental runs pick up where the last completed run stopped (the
watermark stored on etl_runs.last_complaint_date). Every run writes one
etl_runs row, so a failed run is visible and leaves the watermark where it was.

    python -m write_service.consumers.nyc311_pipeline
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from write_service import config
from write_service.aggregation.aggregates import nyc_now
from write_service.consumers.complaint_consumer import ingest_records
from write_service.db.models import ETL_COMPLETED, ETL_FAILED, ETL_RUNNING, EtlRun, _utcnow
from write_service.errors import PreconditionError
from write_service.ingestion import nyc311_fetcher
from write_service.ingestion.neighborhood_fetcher import NeighborhoodResolver
from write_service.outcome import BatchOutcome
from write_service.processing.complaint_processor import (
    clean_data,
    parse_datetime,
    prepare_complaint,
    publish_complaints,
)

logger = logging.getLogger(__name__)


def get_watermark(session) -> Optional[datetime]:
    """last_complaint_date of the most recently completed run, if any."""
    return session.scalar(
        select(EtlRun.last_complaint_date)
        .where(EtlRun.status == ETL_COMPLETED)
        .where(EtlRun.last_complaint_date.is_not(None))
        .order_by(EtlRun.completed_at.desc(), EtlRun.id.desc())
        .limit(1)
    )


def _load_resolver(session_factory, resolver=None) -> NeighborhoodResolver:
    if resolver is None:
        with session_factory() as session:
            resolver = NeighborhoodResolver.from_session(session)
    if len(resolver) == 0:
        raise PreconditionError("No neighborhoods loaded; run the neighborhood seed first")
    return resolver


def _fetch_from_cursor(fetch: Callable, since: datetime, limit: int) -> List[Dict[str, Any]]:
    """
    One page at or after the cursor. A full page made up only of records at
    the cursor itself would come back unchanged on the next run, so in that
    case keep paging by offset until a page reaches past the cursor or runs short.
    """
    records = clean_data(fetch(since, limit))
    page = records
    while len(page) >= limit and all(parse_datetime(record.get("created_date")) == since for record in page):
        logger.info(f"Page of {len(page)} records all at {since.isoformat()}, reading on from offset {len(records)}")
        page = clean_data(fetch(since, limit, len(records)))
        records.extend(page)
    return records


def _start_run(session_factory) -> int:
    with session_factory() as session:
        run = EtlRun(status=ETL_RUNNING, started_at=_utcnow())
        session.add(run)
        session.commit()
        return run.id


def _finish_run(session_factory, run_id: int, **values) -> None:
    with session_factory() as session:
        session.execute(
            update(EtlRun).where(EtlRun.id == run_id).values(completed_at=_utcnow(), **values)
        )
        session.commit()


def run_ingestion(session_factory, fetch: Callable = nyc311_fetcher.fetch_since, now: Optional[datetime] = None,
                  resolver=None, limit: Optional[int] = None, batch_size: Optional[int] = None,
                  max_workers: Optional[int] = None) -> Dict[str, Any]:
    """
    One incremental ETL run.

    Fetches a single page of records created at or after the watermark (default:
    DEFAULT_LOOKBACK_DAYS ago), stores them, and records the new watermark.
    The watermark never moves backwards, even when the page is empty. Any
    run-level error marks the run failed and is re-raised.
    """
    started = time.monotonic()
    run_id = _start_run(session_factory)
    logger.info(f"Started ETL run {run_id}")

    try:
        with session_factory() as session:
            previous = get_watermark(session)
        resolver = _load_resolver(session_factory, resolver)

        now = now or nyc_now()
        since = previous or now - timedelta(days=config.DEFAULT_LOOKBACK_DAYS)
        logger.info(f"Fetching complaints since: {since.isoformat()}")

        records = _fetch_from_cursor(fetch, since, limit or config.FETCH_LIMIT)
        outcome, latest = ingest_records(
            session_factory, records, resolver=resolver, batch_size=batch_size, max_workers=max_workers
        )
        watermark = max(since, latest) if latest else since

        _finish_run(
            session_factory,
            run_id,
            status=ETL_COMPLETED,
            records_fetched=len(records),
            records_inserted=outcome.succeeded,
            records_skipped=outcome.skipped,
            records_failed=outcome.failed,
            last_complaint_date=watermark,
        )
    except Exception as e:
        logger.error(f"ETL run {run_id} failed: {e}")
        try:
            _finish_run(session_factory, run_id, status=ETL_FAILED, error_message=str(e)[:2000])
        except SQLAlchemyError as mark_error:
            logger.error(f"Could not mark ETL run {run_id} as failed: {mark_error}")
        raise

    stats = {
        "run_id": run_id,
        "since": since.isoformat(),
        "fetched": len(records),
        "inserted": outcome.succeeded,
        "skipped": outcome.skipped,
        "errors": outcome.failed,
        "failures": outcome.failures,
        "latest_date": watermark.isoformat(),
        "duration_ms": int((time.monotonic() - started) * 1000),
    }
    logger.info(
        f"ETL run {run_id} complete: fetched {stats['fetched']}, inserted {stats['inserted']}, "
        f"skipped {stats['skipped']}, errors {stats['errors']}, watermark {stats['latest_date']}"
    )
    return stats


def run_backfill(session_factory, since: datetime, until: datetime, limit: Optional[int] = None, offset: int = 0,
                 fetch: Callable = nyc311_fetcher.fetch_range, resolver=None, batch_size: Optional[int] = None,
                 max_workers: Optional[int] = None) -> Dict[str, Any]:
    """
    Load one page of an explicit date range. Already-stored complaints count
    as skipped. Writes no etl_runs row and never touches the watermark, so
    it can run alongside incremental ingestion.
    """
    if since >= until:
        raise ValueError(f"backfill start {since} must be before end {until}")

    started = time.monotonic()
    limit = limit or config.BACKFILL_LIMIT
    resolver = _load_resolver(session_factory, resolver)

    logger.info(f"Backfilling {since.isoformat()} .. {until.isoformat()} (limit {limit}, offset {offset})")
    records = clean_data(fetch(since, until, limit, offset))
    outcome, latest = ingest_records(
        session_factory, records, resolver=resolver, batch_size=batch_size, max_workers=max_workers
    )

    has_more = len(records) >= limit
    stats = {
        "since": since.isoformat(),
        "until": until.isoformat(),
        "fetched": len(records),
        "inserted": outcome.succeeded,
        "skipped": outcome.skipped,
        "errors": outcome.failed,
        "failures": outcome.failures,
        "latest_date": latest.isoformat() if latest else None,
        "has_more": has_more,
        "next_offset": offset + len(records) if has_more else None,
        "duration_ms": int((time.monotonic() - started) * 1000),
    }
    logger.info(f"Backfill page done: {stats['inserted']} inserted, {stats['skipped']} skipped, {stats['errors']} errors")
    return stats


def publish_since(session_factory, since: datetime, fetch: Callable = nyc311_fetcher.fetch_since,
                  limit: Optional[int] = None, resolver=None, producer=None) -> BatchOutcome:
    """
    Fetch and classify a page, then hand it to Kafka instead of the database.
    consume_complaints() stores what is published here.
    """
    resolver = _load_resolver(session_factory, resolver)
    records = clean_data(fetch(since, limit or config.FETCH_LIMIT))

    outcome = BatchOutcome()
    rows = []
    for record in records:
        try:
            rows.append(prepare_complaint(record, resolver))
        except Exception as e:
            outcome.record_failure(record.get("unique_key"), e)

    publish_complaints(rows, producer=producer)
    for _ in rows:
        outcome.record_success()
    return outcome


if __name__ == "__main__":
    from write_service.db.session import SessionLocal

    logging.basicConfig(level=logging.INFO)
    run_ingestion(SessionLocal)

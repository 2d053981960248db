"""
aggregates.py
Daily and summary rollups of complaint counts.

    complaints ──refresh_daily(date)──> aggregates_daily
    aggregates_daily ──refresh_summary()──> aggregates_summary (+ rank_in_city)
    aggregates_summary ──update_chaos_scores()──> chaos_score

Every refresh fully recomputes its unit (one date, one neighborhood) from
the layer below, so it is safe to re-run, to overlap with another run, or
to retry after a partial failure. refresh_summary reads aggregates_daily,
so callers must finish the daily refreshes for the window first.
"""

import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from write_service import config
from write_service.aggregation.chaos_score import update_chaos_scores
from write_service.db.models import AggregateDaily, AggregateSummary, Complaint, Neighborhood
from write_service.errors import PreconditionError
from write_service.outcome import SUCCEEDED, BatchOutcome, run_batch
from write_service.processing.categories import CATEGORIES

logger = logging.getLogger(__name__)

TODAY = "today"
WEEK = "week"
MONTH = "month"
ROLLING_90 = "rolling90"

# Trailing window length in days, inclusive of the reference day
TIMEFRAME_DAYS = {
    TODAY: 1,
    WEEK: 7,
    MONTH: 30,
    ROLLING_90: 90,
}
TIMEFRAMES = tuple(TIMEFRAME_DAYS)

# "all" is what the original product called the 90-day window
TIMEFRAME_ALIASES = {"all": ROLLING_90}


def normalize_timeframe(value: Optional[str], default: str = MONTH) -> str:
    """Map user input (including the legacy "all") onto a known timeframe."""
    if not value:
        return default
    value = value.strip().lower()
    value = TIMEFRAME_ALIASES.get(value, value)
    if value not in TIMEFRAME_DAYS:
        raise ValueError(f"Unknown timeframe '{value}' (expected one of {TIMEFRAMES + tuple(TIMEFRAME_ALIASES)})")
    return value


def nyc_now() -> datetime:
    """Current New York wall-clock time, naive like stored created_at values."""
    return datetime.now(ZoneInfo(config.TIMEZONE)).replace(tzinfo=None)


def current_date() -> date:
    """Today's calendar date in New York."""
    return nyc_now().date()


def timeframe_window(timeframe: str, as_of: date) -> Tuple[date, date]:
    """Inclusive (start, end) dates covered by a timeframe."""
    days = TIMEFRAME_DAYS[timeframe]
    return as_of - timedelta(days=days - 1), as_of


def date_range(start: date, end: date) -> List[date]:
    if start > end:
        raise ValueError(f"start date {start} is after end date {end}")
    return [start + timedelta(days=offset) for offset in range((end - start).days + 1)]


def dense_rank(totals: Iterable[Tuple[int, int]]) -> Dict[int, int]:
    """
    Dense rank of (neighborhood_id, total) pairs by total descending.

    Equal totals share a rank and the next distinct total gets rank + 1.
    Ties are listed by neighborhood_id ascending.
    """
    ranks = {}
    rank = 0
    previous = None
    for neighborhood_id, total in sorted(totals, key=lambda pair: (-(pair[1] or 0), pair[0])):
        total = total or 0
        if total != previous:
            rank += 1
            previous = total
        ranks[neighborhood_id] = rank
    return ranks


# Daily layer

def refresh_daily(session_factory, target_date: date) -> int:
    """
    Rebuild aggregates_daily for one calendar date from the complaints table.

    Delete-then-insert in a single transaction. Complaints without a
    resolved neighborhood are not counted. Returns the number of rows written.
    """
    start = datetime.combine(target_date, time.min)
    end = start + timedelta(days=1)

    with session_factory() as session:
        groups = session.execute(
            select(Complaint.neighborhood_id, Complaint.category, func.count(Complaint.id))
            .where(Complaint.created_at >= start)
            .where(Complaint.created_at < end)
            .where(Complaint.neighborhood_id.is_not(None))
            .group_by(Complaint.neighborhood_id, Complaint.category)
        ).all()

        session.execute(delete(AggregateDaily).where(AggregateDaily.date == target_date))
        if groups:
            session.execute(
                insert(AggregateDaily),
                [
                    {"neighborhood_id": nid, "date": target_date, "category": category, "count": count}
                    for nid, category, count in groups
                ],
            )
        session.commit()

    logger.info(f"Refreshed daily aggregates for {target_date}: {len(groups)} rows")
    return len(groups)


def refresh_daily_range(session_factory, start: date, end: date, max_workers: Optional[int] = None) -> BatchOutcome:
    """
    Refresh every date in [start, end]. Dates are independent, so they run
    concurrently; a failed date is reported and left for the next run.
    """
    dates = date_range(start, end)
    workers = config.AGGREGATION_WORKERS if max_workers is None else max_workers

    def _refresh(target_date):
        refresh_daily(session_factory, target_date)
        return SUCCEEDED

    outcome = run_batch(dates, _refresh, max_workers=workers)
    logger.info(f"Daily refresh {start}..{end}: {outcome.succeeded} ok, {outcome.failed} failed")
    for failure in outcome.failures:
        logger.error(f"Daily refresh failed for {failure['unit']}: {failure['error']}")
    return outcome


def backfill_daily_aggregates(session_factory, days: int = 30, as_of: Optional[date] = None,
                              max_workers: Optional[int] = None) -> BatchOutcome:
    """Refresh the last ``days`` dates, ending today."""
    if days < 1:
        raise ValueError("days must be at least 1")
    as_of = as_of or current_date()
    return refresh_daily_range(session_factory, as_of - timedelta(days=days - 1), as_of, max_workers=max_workers)


# Summary layer

def _window_counts(session, timeframe: str, as_of: date) -> Dict[int, Dict[str, int]]:
    start, end = timeframe_window(timeframe, as_of)
    rows = session.execute(
        select(AggregateDaily.neighborhood_id, AggregateDaily.category, func.sum(AggregateDaily.count))
        .where(AggregateDaily.date >= start)
        .where(AggregateDaily.date <= end)
        .group_by(AggregateDaily.neighborhood_id, AggregateDaily.category)
    ).all()

    counts = defaultdict(dict)
    for neighborhood_id, category, count in rows:
        # Unknown labels (e.g. from an older classifier) fold into "other"
        category = category if category in CATEGORIES else "other"
        counts[neighborhood_id][category] = counts[neighborhood_id].get(category, 0) + int(count or 0)
    return counts


def _write_neighborhood_summary(session_factory, neighborhood_id: int, by_timeframe: Dict[str, Dict[str, int]]) -> str:
    with session_factory() as session:
        existing = {
            row.timeframe: row
            for row in session.scalars(
                select(AggregateSummary).where(AggregateSummary.neighborhood_id == neighborhood_id)
            )
        }
        for timeframe in TIMEFRAMES:
            counts = by_timeframe.get(timeframe, {})
            row = existing.get(timeframe)
            if row is None:
                row = AggregateSummary(neighborhood_id=neighborhood_id, timeframe=timeframe, chaos_score=0)
                session.add(row)
            for category in CATEGORIES:
                setattr(row, category, counts.get(category, 0))
            row.total = sum(counts.get(category, 0) for category in CATEGORIES)
        session.commit()
    return SUCCEEDED


def recompute_ranks(session_factory, timeframes: Sequence[str] = TIMEFRAMES) -> None:
    """Dense-rank every timeframe's rows by total (ties by neighborhood_id)."""
    with session_factory() as session:
        for timeframe in timeframes:
            rows = session.execute(
                select(AggregateSummary.id, AggregateSummary.neighborhood_id, AggregateSummary.total)
                .where(AggregateSummary.timeframe == timeframe)
            ).all()
            if not rows:
                continue
            ranks = dense_rank((nid, total) for _, nid, total in rows)
            session.execute(
                update(AggregateSummary),
                [{"id": row_id, "rank_in_city": ranks[nid]} for row_id, nid, _ in rows],
            )
        session.commit()


def refresh_summary(session_factory, as_of: Optional[date] = None, max_workers: Optional[int] = None) -> BatchOutcome:
    """
    Rebuild aggregates_summary for every neighborhood and timeframe, then
    recompute rank_in_city.

    Neighborhoods with no complaints still get all-zero rows so they show up
    in rankings. Raises PreconditionError when no neighborhoods are loaded.
    """
    as_of = as_of or current_date()
    workers = config.AGGREGATION_WORKERS if max_workers is None else max_workers

    with session_factory() as session:
        neighborhood_ids = list(session.scalars(select(Neighborhood.id).order_by(Neighborhood.id)))
        if not neighborhood_ids:
            raise PreconditionError("No neighborhoods loaded; run the neighborhood seed first")
        counts = {timeframe: _window_counts(session, timeframe, as_of) for timeframe in TIMEFRAMES}

    def _refresh(neighborhood_id):
        by_timeframe = {timeframe: counts[timeframe].get(neighborhood_id, {}) for timeframe in TIMEFRAMES}
        return _write_neighborhood_summary(session_factory, neighborhood_id, by_timeframe)

    outcome = run_batch(neighborhood_ids, _refresh, max_workers=workers)
    for failure in outcome.failures:
        logger.error(f"Summary refresh failed for neighborhood {failure['unit']}: {failure['error']}")

    try:
        recompute_ranks(session_factory)
    except SQLAlchemyError as e:
        logger.error(f"Rank recompute failed as of {as_of}: {e}")
        outcome.record_failure("ranks", e)

    logger.info(
        f"Refreshed summary aggregates as of {as_of}: "
        f"{outcome.succeeded} neighborhoods ok, {outcome.failed} failed"
    )
    return outcome


def full_refresh(session_factory, as_of: Optional[date] = None, policy: Optional[str] = None,
                 max_workers: Optional[int] = None) -> Dict[str, BatchOutcome]:
    """
    The periodic maintenance cycle: today's and yesterday's daily rows,
    then the summary rollup, then chaos scores.
    """
    as_of = as_of or current_date()
    daily = refresh_daily_range(session_factory, as_of - timedelta(days=1), as_of, max_workers=max_workers)
    summary = refresh_summary(session_factory, as_of=as_of, max_workers=max_workers)
    chaos = update_chaos_scores(session_factory, policy=policy)
    return {"daily": daily, "summary": summary, "chaos": chaos}

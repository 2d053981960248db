"""
chaos_score.py
Composite 0-100 "chaos score" for a neighborhood.

    chaos = 100 * ( 0.50 * min(total   / max_total,   1)
                  + 0.20 * min(noise   / max_noise,   1)
                  + 0.15 * min(rats    / max_rats,    1)
                  + 0.10 * min(parking / max_parking, 1)
                  + 0.05 * min(trash   / max_trash,   1) )

Two maxima policies are supported (CHAOS_MAXIMA_POLICY):
- "fixed": calibration constants, comparable across time.
- "relative" (default): the largest month value of each dimension across
  all neighborhoods, so the busiest neighborhood anchors the scale.

The score is always computed from the month timeframe and then copied onto
every timeframe row of that neighborhood; daily and weekly volumes are too
sparse to score on their own.
"""

import logging
import math
from typing import Dict, Mapping, Optional

from sqlalchemy import func, select, update

from write_service import config
from write_service.db.models import AggregateSummary
from write_service.outcome import BatchOutcome

logger = logging.getLogger(__name__)

WEIGHTS = {
    "total": 0.5,
    "noise": 0.2,
    "rats": 0.15,
    "parking": 0.1,
    "trash": 0.05,
}

DIMENSIONS = tuple(WEIGHTS)

FIXED_MAXIMA = {
    "total": 5000,
    "noise": 1500,
    "rats": 800,
    "parking": 1000,
    "trash": 500,
}

POLICY_FIXED = "fixed"
POLICY_RELATIVE = "relative"
POLICIES = (POLICY_FIXED, POLICY_RELATIVE)

SCORING_TIMEFRAME = "month"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def score(counts: Mapping[str, float], maxima: Optional[Mapping[str, float]] = None) -> int:
    """
    Score one set of counts against the given maxima.

    Missing counts are 0; missing or non-positive maxima are 1. The result
    is always an int in [0, 100].
    """
    maxima = maxima if maxima is not None else FIXED_MAXIMA
    weighted = 0.0
    for dimension, weight in WEIGHTS.items():
        count = max(float(counts.get(dimension) or 0), 0.0)
        maximum = float(maxima.get(dimension) or 0)
        if maximum <= 0:
            maximum = 1.0
        weighted += min(count / maximum, 1.0) * weight

    return max(0, min(100, _round_half_up(weighted * 100)))


def describe(chaos_score: int) -> Dict[str, str]:
    """Human label for a score band."""
    if chaos_score >= 80:
        return {"label": "Total Chaos", "emoji": "🔥"}
    if chaos_score >= 60:
        return {"label": "Very Chaotic", "emoji": "😱"}
    if chaos_score >= 40:
        return {"label": "Chaotic", "emoji": "😤"}
    if chaos_score >= 20:
        return {"label": "Somewhat Calm", "emoji": "😐"}
    return {"label": "Peaceful", "emoji": "😌"}


def relative_maxima(session) -> Dict[str, int]:
    """Largest month value per dimension across all neighborhoods."""
    row = session.execute(
        select(*[func.max(getattr(AggregateSummary, d)) for d in DIMENSIONS])
        .where(AggregateSummary.timeframe == SCORING_TIMEFRAME)
    ).one()
    return {dimension: (value or 1) for dimension, value in zip(DIMENSIONS, row)}


def resolve_maxima(session, policy: Optional[str] = None) -> Dict[str, int]:
    policy = (policy or config.CHAOS_MAXIMA_POLICY).lower()
    if policy == POLICY_FIXED:
        return dict(FIXED_MAXIMA)
    if policy == POLICY_RELATIVE:
        return relative_maxima(session)
    raise ValueError(f"Unknown chaos maxima policy '{policy}' (expected one of {POLICIES})")


def update_chaos_scores(session_factory, policy: Optional[str] = None) -> BatchOutcome:
    """
    Recompute chaos_score for every neighborhood from its month row and
    write it onto all of that neighborhood's timeframe rows.

    One neighborhood failing to update does not stop the others.
    """
    with session_factory() as session:
        maxima = resolve_maxima(session, policy)
        month_rows = session.execute(
            select(AggregateSummary.neighborhood_id, *[getattr(AggregateSummary, d) for d in DIMENSIONS])
            .where(AggregateSummary.timeframe == SCORING_TIMEFRAME)
            .order_by(AggregateSummary.neighborhood_id)
        ).all()

    logger.info(f"Scoring {len(month_rows)} neighborhoods with maxima {maxima}")

    outcome = BatchOutcome()
    for row in month_rows:
        neighborhood_id = row[0]
        counts = dict(zip(DIMENSIONS, row[1:]))
        chaos = score(counts, maxima)
        try:
            with session_factory() as session:
                session.execute(
                    update(AggregateSummary)
                    .where(AggregateSummary.neighborhood_id == neighborhood_id)
                    .values(chaos_score=chaos)
                )
                session.commit()
            outcome.record_success()
        except Exception as e:
            logger.error(f"Failed to write chaos score for neighborhood {neighborhood_id}: {e}")
            outcome.record_failure(f"neighborhood:{neighborhood_id}", e)

    return outcome

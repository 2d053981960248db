# src/read_service/processors/compare_processor.py

"""
Head-to-head comparison of two neighborhoods for one timeframe.
"""

from sqlalchemy import text
from sqlalchemy.orm import Session

from read_service.processors.leaderboard_processor import SUMMARY_COLUMNS, summary_row_to_dict
from write_service.aggregation.aggregates import normalize_timeframe
from write_service.processing.categories import CATEGORIES

LEFT = "left"
RIGHT = "right"
TIE = "tie"


def winner(left_count, right_count):
    """Which side has more complaints ("winning" means the more chaotic one)."""
    if left_count > right_count:
        return LEFT
    if right_count > left_count:
        return RIGHT
    return TIE


def _summary_for(session, neighborhood_id, timeframe):
    row = session.execute(text(f"""
        SELECT
            s.neighborhood_id,
            n.name,
            n.borough,
            s.total,
            {SUMMARY_COLUMNS},
            s.chaos_score,
            s.rank_in_city
        FROM aggregates_summary s
        JOIN neighborhoods n ON n.id = s.neighborhood_id
        WHERE s.neighborhood_id = :id AND s.timeframe = :timeframe
    """), {"id": neighborhood_id, "timeframe": timeframe}).first()
    return summary_row_to_dict(row._mapping) if row else None


def compare_neighborhoods(session: Session, left_id, right_id, timeframe="month"):
    """
    Compare two neighborhoods' summary rows.

    Returns None when either side has no summary for the timeframe.
    """
    timeframe = normalize_timeframe(timeframe)
    left = _summary_for(session, left_id, timeframe)
    right = _summary_for(session, right_id, timeframe)
    if left is None or right is None:
        return None

    return {
        "left": left,
        "right": right,
        "winner": winner(left["total"], right["total"]),
        "category_winners": {
            category: winner(left["category_counts"][category], right["category_counts"][category])
            for category in CATEGORIES
        },
        "timeframe": timeframe,
    }

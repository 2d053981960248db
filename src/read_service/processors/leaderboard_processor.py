# src/read_service/processors/leaderboard_processor.py

"""
Leaderboard processor for read operations.
Ranks neighborhoods from the aggregates_summary table.
"""

from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.orm import Session

from write_service.aggregation.aggregates import normalize_timeframe
from write_service.processing.categories import CATEGORIES

MAX_LIMIT = 100
DEFAULT_LIMIT = 50

SUMMARY_COLUMNS = ", ".join(f"s.{category}" for category in CATEGORIES)


def normalize_category(category):
    """'all' or one of the category columns; anything else is rejected."""
    category = (category or "all").strip().lower()
    if category != "all" and category not in CATEGORIES:
        raise ValueError(f"Unknown category '{category}' (expected 'all' or one of {', '.join(CATEGORIES)})")
    return category


def clamp_limit(limit, default=DEFAULT_LIMIT, maximum=MAX_LIMIT):
    if limit is None:
        return default
    return max(1, min(int(limit), maximum))


def summary_row_to_dict(m):
    """Shape one aggregates_summary + neighborhoods row for the API."""
    return {
        "neighborhood_id": m["neighborhood_id"],
        "neighborhood_name": m["name"],
        "borough": m["borough"],
        "total": m["total"] or 0,
        "chaos_score": m["chaos_score"] or 0,
        "rank_in_city": m["rank_in_city"],
        "category_counts": {category: m[category] or 0 for category in CATEGORIES},
    }


def get_leaderboard(session: Session, timeframe="month", category="all", limit=DEFAULT_LIMIT):
    """
    Retrieve the neighborhood leaderboard for one timeframe.

    Rows are ordered by total (or by the chosen category's count) descending,
    ties by neighborhood id. For category "all" the rank is the stored
    rank_in_city; for a single category it is a dense rank on that count.

    Args:
        session: SQLAlchemy database session
        timeframe: today, week, month or rolling90 ("all" is accepted as rolling90)
        category: "all" or a category name
        limit: number of rows, capped at 100

    Returns:
        {"data": [...], "meta": {...}}
    """
    timeframe = normalize_timeframe(timeframe)
    category = normalize_category(category)
    limit = clamp_limit(limit)
    order_column = "total" if category == "all" else category

    # order_column is one of the fixed column names validated above
    result = session.execute(text(f"""
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
        WHERE s.timeframe = :timeframe
        ORDER BY s.{order_column} DESC, s.neighborhood_id ASC
        LIMIT :limit
    """), {"timeframe": timeframe, "limit": limit})

    leaderboard = []
    rank = 0
    previous = None
    for row in result:
        entry = summary_row_to_dict(row._mapping)
        if category == "all":
            entry["rank"] = entry["rank_in_city"]
        else:
            # rows arrive sorted, so a running dense rank matches the full table
            count = entry["category_counts"][category]
            if count != previous:
                rank += 1
                previous = count
            entry["rank"] = rank
        leaderboard.append(entry)

    return {
        "data": leaderboard,
        "meta": {
            "category": category,
            "timeframe": timeframe,
            "count": len(leaderboard),
            "generated_at": datetime.now(timezone.utc).isoformat(),
        },
    }

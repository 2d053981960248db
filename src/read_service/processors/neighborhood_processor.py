# src/read_service/processors/neighborhood_processor.py

"""
Neighborhood processor for read operations.
Detail pages, daily trends and the neighborhood directory.
"""

from datetime import timedelta

from sqlalchemy import Date, bindparam, text
from sqlalchemy.orm import Session

from write_service.aggregation.aggregates import TIMEFRAMES, current_date
from write_service.aggregation.chaos_score import describe
from write_service.processing.categories import CATEGORIES, CATEGORY_CONFIG, OTHER

MAX_TREND_DAYS = 90
MAX_INSIGHTS = 4

SUMMARY_COLUMNS = ", ".join(CATEGORIES)

TRENDS_QUERY = text("""
    SELECT date, category, count
    FROM aggregates_daily
    WHERE neighborhood_id = :neighborhood_id
      AND date >= :start
      AND date <= :end
    ORDER BY date ASC, category ASC
""").bindparams(bindparam("start", type_=Date), bindparam("end", type_=Date)).columns(date=Date)


def get_neighborhood(session: Session, neighborhood_id):
    """id, name, borough and nta_code of one neighborhood, or None."""
    row = session.execute(text("""
        SELECT id, name, borough, nta_code
        FROM neighborhoods
        WHERE id = :id
    """), {"id": neighborhood_id}).first()
    return dict(row._mapping) if row else None


def get_summary_stats(session: Session, neighborhood_id):
    """Per-timeframe counts, rank and chaos score for one neighborhood."""
    result = session.execute(text(f"""
        SELECT timeframe, total, {SUMMARY_COLUMNS}, chaos_score, rank_in_city
        FROM aggregates_summary
        WHERE neighborhood_id = :id
    """), {"id": neighborhood_id})

    stats = {}
    for row in result:
        m = row._mapping
        stats[m["timeframe"]] = {
            "total": m["total"] or 0,
            **{category: m[category] or 0 for category in CATEGORIES},
            "chaos_score": m["chaos_score"] or 0,
            "rank": m["rank_in_city"],
        }
    # keep a stable timeframe order in the payload
    return {timeframe: stats[timeframe] for timeframe in TIMEFRAMES if timeframe in stats}


def get_neighborhood_trends(session: Session, neighborhood_id, days=30, as_of=None):
    """
    Daily complaint counts for the last ``days`` days (at most 90), one entry
    per date, zero-filled, oldest first.
    """
    days = max(1, min(int(days), MAX_TREND_DAYS))
    end = as_of or current_date()
    start = end - timedelta(days=days - 1)

    by_date = {start + timedelta(days=offset): {category: 0 for category in CATEGORIES} for offset in range(days)}
    result = session.execute(TRENDS_QUERY, {"neighborhood_id": neighborhood_id, "start": start, "end": end})
    for row in result:
        m = row._mapping
        counts = by_date.get(m["date"])
        if counts is None:
            continue
        category = m["category"] if m["category"] in counts else OTHER
        counts[category] += m["count"] or 0

    return [
        {"date": day.isoformat(), "total": sum(counts.values()), **counts}
        for day, counts in sorted(by_date.items())
    ]


def top_category(counts):
    """(category, count) with the highest count; earlier categories win ties."""
    best = max(CATEGORIES, key=lambda category: (counts.get(category, 0), -CATEGORIES.index(category)))
    return best, counts.get(best, 0)


def generate_insights(stats, name):
    """Short human-readable observations about a neighborhood (at most four)."""
    insights = []
    month = stats.get("month")
    week = stats.get("week")
    if not month:
        return insights

    rank = month.get("rank")
    if rank is not None and rank <= 3:
        insights.append(f"🏆 {name} is one of NYC's top 3 complaint hotspots!")
    elif rank is not None and rank <= 10:
        insights.append(f"🔥 {name} ranks #{rank} in NYC for complaints")

    category, count = top_category({c: month.get(c, 0) for c in CATEGORIES if c != OTHER})
    if count > 0 and month["total"] > 0:
        share = int(count / month["total"] * 100 + 0.5)
        insights.append(f"{CATEGORY_CONFIG[category]['label']} complaints make up {share}% of all issues")

    if week and month["total"] > 0:
        weekly_average = month["total"] / 4
        if week["total"] > weekly_average * 1.5:
            insights.append("📈 Complaints are up this week compared to the monthly average")
        elif week["total"] < weekly_average * 0.5:
            insights.append("📉 Complaints are down this week - things are improving!")

    if month.get("rats", 0) > 100:
        insights.append(f"🐀 {month['rats']} rat sightings this month - watch your step!")

    return insights[:MAX_INSIGHTS]


def get_neighborhood_detail(session: Session, neighborhood_id, as_of=None):
    """
    Everything the neighborhood page shows, or None for an unknown id.

    A neighborhood that has never been aggregated still returns, with empty
    stats and a chaos score of 0.
    """
    neighborhood = get_neighborhood(session, neighborhood_id)
    if neighborhood is None:
        return None

    stats = get_summary_stats(session, neighborhood_id)
    month = stats.get("month") or stats.get("rolling90") or {category: 0 for category in CATEGORIES}
    chaos_score = month.get("chaos_score", 0)
    descriptor = describe(chaos_score)
    category, count = top_category(month)

    return {
        "id": neighborhood["id"],
        "name": neighborhood["name"],
        "borough": neighborhood["borough"],
        "nta_code": neighborhood["nta_code"],
        "chaos_score": chaos_score,
        "chaos_label": descriptor["label"],
        "chaos_emoji": descriptor["emoji"],
        "top_category": category,
        "top_category_count": count,
        "stats": stats,
        "trends": get_neighborhood_trends(session, neighborhood_id, days=30, as_of=as_of),
        "insights": generate_insights(stats, neighborhood["name"]),
    }


def list_neighborhoods(session: Session, borough=None, search=None):
    """All neighborhoods by name, optionally filtered, plus a per-borough index."""
    query = "SELECT id, name, borough FROM neighborhoods WHERE 1 = 1"
    params = {}
    if borough:
        query += " AND LOWER(borough) = LOWER(:borough)"
        params["borough"] = borough
    if search:
        query += " AND LOWER(name) LIKE LOWER(:search)"
        params["search"] = f"%{search}%"
    query += " ORDER BY name ASC, id ASC"

    neighborhoods = [dict(row._mapping) for row in session.execute(text(query), params)]

    by_borough = {}
    for n in neighborhoods:
        by_borough.setdefault(n["borough"], []).append({"id": n["id"], "name": n["name"]})

    return {
        "neighborhoods": neighborhoods,
        "by_borough": by_borough,
        "boroughs": sorted(by_borough),
    }

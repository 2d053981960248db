# src/read_service/processors/nearby_processor.py

"""
"What's happening on my block": complaints near a point, plus an
annoyance score summarizing how noisy, recent and close they are.
"""

import math
from collections import Counter
from datetime import timedelta

from sqlalchemy import DateTime, Float, bindparam, text
from sqlalchemy.orm import Session

from write_service.aggregation.aggregates import nyc_now

EARTH_RADIUS_METERS = 6371000
METERS_PER_DEGREE_LAT = 111320

DEFAULT_RADIUS = 500
MAX_RADIUS = 2000
DEFAULT_LIMIT = 50
MAX_LIMIT = 100
LOOKBACK_DAYS = 30

# (min_lat, max_lat, min_lon, max_lon)
NYC_BOUNDS = (40.4, 41.0, -74.3, -73.6)

ANNOYANCE_WEIGHTS = {
    "noise": 1.5,
    "rats": 1.3,
    "trash": 1.2,
    "parking": 1.0,
    "heat_water": 0.8,
    "other": 0.7,
}

CANDIDATES_QUERY = text("""
    SELECT c.id, c.category, c.complaint_type, c.descriptor, c.created_at,
           c.latitude, c.longitude, n.name AS neighborhood_name
    FROM complaints c
    LEFT JOIN neighborhoods n ON n.id = c.neighborhood_id
    WHERE c.latitude BETWEEN :min_lat AND :max_lat
      AND c.longitude BETWEEN :min_lon AND :max_lon
      AND c.created_at >= :since
""").bindparams(
    bindparam("min_lat", type_=Float),
    bindparam("max_lat", type_=Float),
    bindparam("min_lon", type_=Float),
    bindparam("max_lon", type_=Float),
    bindparam("since", type_=DateTime),
).columns(created_at=DateTime)


def haversine_meters(lat1, lon1, lat2, lon2):
    """Great-circle distance between two points, in meters."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(math.sqrt(a))


def within_nyc(lat, lon):
    min_lat, max_lat, min_lon, max_lon = NYC_BOUNDS
    return min_lat <= lat <= max_lat and min_lon <= lon <= max_lon


def annoyance_score(complaints, now):
    """
    0-100. Each complaint contributes category weight x closeness x recency,
    each factor floored at 0.1; the sum is log-scaled so a handful of
    complaints does not max it out.
    """
    if not complaints:
        return 0

    weighted = 0.0
    for complaint in complaints:
        distance_factor = max(0.1, 1 - complaint["distance_meters"] / 500)
        days_since = (now - complaint["created_at"]).total_seconds() / 86400
        recency_factor = max(0.1, 1 - days_since / 30)
        weighted += distance_factor * recency_factor * ANNOYANCE_WEIGHTS.get(complaint["category"], 1)

    return min(100, int(math.log10(weighted + 1) * 35 + 0.5))


def get_nearby_complaints(session: Session, lat, lon, radius=DEFAULT_RADIUS, limit=DEFAULT_LIMIT, now=None):
    """
    Complaints from the last 30 days within ``radius`` meters of (lat, lon),
    closest first (newest first at equal distance).

    Raises ValueError for coordinates outside New York City or a
    non-positive radius.
    """
    lat, lon = float(lat), float(lon)
    if not within_nyc(lat, lon):
        raise ValueError("Coordinates must be within New York City")
    radius = min(int(radius), MAX_RADIUS)
    if radius <= 0:
        raise ValueError("radius must be positive")
    limit = max(1, min(int(limit), MAX_LIMIT))
    now = now or nyc_now()

    # bounding box first, exact distance after
    d_lat = radius / METERS_PER_DEGREE_LAT
    d_lon = radius / (METERS_PER_DEGREE_LAT * math.cos(math.radians(lat)))
    result = session.execute(CANDIDATES_QUERY, {
        "min_lat": lat - d_lat,
        "max_lat": lat + d_lat,
        "min_lon": lon - d_lon,
        "max_lon": lon + d_lon,
        "since": now - timedelta(days=LOOKBACK_DAYS),
    })

    nearby = []
    for row in result:
        m = row._mapping
        distance = haversine_meters(lat, lon, m["latitude"], m["longitude"])
        if distance > radius:
            continue
        nearby.append({
            "id": m["id"],
            "category": m["category"],
            "type": m["complaint_type"],
            "description": m["descriptor"],
            "created_at": m["created_at"],
            "distance_meters": distance,
            "neighborhood": m["neighborhood_name"],
        })

    nearby.sort(key=lambda c: (c["distance_meters"], -c["created_at"].timestamp()))
    nearby = nearby[:limit]
    score = annoyance_score(nearby, now)

    for complaint in nearby:
        complaint["created_at"] = complaint["created_at"].isoformat()
        complaint["distance_meters"] = int(round(complaint["distance_meters"]))

    return {
        "complaints": nearby,
        "summary": {
            "total": len(nearby),
            "radius_meters": radius,
            "annoyance_score": score,
            "category_breakdown": dict(Counter(c["category"] for c in nearby)),
        },
        "location": {"lat": lat, "lon": lon},
    }

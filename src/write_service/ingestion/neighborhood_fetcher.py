"""
neighborhood_fetcher.py
Downloads NYC Neighborhood Tabulation Area (NTA 2020) boundaries and turns
them into rows of the neighborhoods table.

Responsibility:
    - fetch the boundary GeoJSON from NYC Open Data
    - drop non-residential NTAs (parks, cemeteries, airports, Rikers)
    - store each boundary as MultiPolygon GeoJSON
    - resolve a complaint's (lat, lon) to a neighborhood id
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from shapely.geometry import Point, shape
from sqlalchemy import select

from write_service import config
from write_service.db.models import Neighborhood
from write_service.errors import UpstreamFetchError
from write_service.ingestion.nyc311_fetcher import get_json
from write_service.outcome import SUCCEEDED, BatchOutcome, run_batch

logger = logging.getLogger(__name__)

EXCLUDED_CODE_SUFFIXES = ("98", "99")
EXCLUDED_NAME_FRAGMENTS = ("park-cemetery", "airport", "rikers", "cemetery")


def is_residential(feature: Dict[str, Any]) -> bool:
    properties = feature.get("properties") or {}
    code = str(properties.get("nta2020") or "")
    name = str(properties.get("ntaname") or "").lower()

    if not code or code.endswith(EXCLUDED_CODE_SUFFIXES):
        return False
    return not any(fragment in name for fragment in EXCLUDED_NAME_FRAGMENTS)


def as_multipolygon(geometry: Dict[str, Any]) -> Dict[str, Any]:
    """Wrap a Polygon so every stored boundary has the same geometry type."""
    if geometry.get("type") == "Polygon":
        return {"type": "MultiPolygon", "coordinates": [geometry["coordinates"]]}
    return geometry


def fetch_neighborhood_features(url: Optional[str] = None) -> List[Dict[str, Any]]:
    """Fetch residential NTA features, geometries normalized to MultiPolygon."""
    url = url or config.NTA_API_URL
    geojson = get_json(url, params={"$limit": 500})

    if not isinstance(geojson, dict) or "features" not in geojson:
        raise UpstreamFetchError(f"Expected a GeoJSON FeatureCollection from {url}")

    features = []
    for feature in geojson["features"]:
        if not feature.get("geometry") or not is_residential(feature):
            continue
        features.append({**feature, "geometry": as_multipolygon(feature["geometry"])})

    logger.info(f"Fetched {len(geojson['features'])} NTA boundaries, {len(features)} residential")
    return features


def load_neighborhoods(session_factory, features: Iterable[Dict[str, Any]]) -> BatchOutcome:
    """
    Upsert neighborhoods by nta_code. Re-running with the same features
    leaves the table unchanged; one bad feature does not stop the rest.
    """

    def _upsert(feature):
        properties = feature["properties"]
        code = properties["nta2020"]
        with session_factory() as session:
            neighborhood = session.scalars(
                select(Neighborhood).where(Neighborhood.nta_code == code)
            ).first()
            if neighborhood is None:
                neighborhood = Neighborhood(nta_code=code)
                session.add(neighborhood)
            neighborhood.name = properties["ntaname"]
            neighborhood.borough = properties["boroname"]
            neighborhood.boundary = json.dumps(as_multipolygon(feature["geometry"]))
            session.commit()
        return SUCCEEDED

    outcome = run_batch(features, _upsert, max_workers=1)
    for failure in outcome.failures:
        logger.error(f"Failed to load neighborhood: {failure['error']}")
    logger.info(f"Loaded {outcome.succeeded} neighborhoods, {outcome.failed} errors")
    return outcome


class NeighborhoodResolver:
    """
    Point-in-polygon lookup over the loaded neighborhood boundaries.

    Each polygon's bounding box is checked before the exact containment test,
    so most neighborhoods are rejected with four comparisons.
    """

    def __init__(self, boundaries: Iterable[Tuple[int, Dict[str, Any]]]):
        self._polygons = []
        for neighborhood_id, geometry in boundaries:
            polygon = shape(geometry)
            self._polygons.append((neighborhood_id, polygon.bounds, polygon))

    def __len__(self):
        return len(self._polygons)

    @classmethod
    def from_session(cls, session) -> "NeighborhoodResolver":
        rows = session.execute(
            select(Neighborhood.id, Neighborhood.boundary)
            .where(Neighborhood.boundary.is_not(None))
            .order_by(Neighborhood.id)
        ).all()
        return cls((neighborhood_id, json.loads(boundary)) for neighborhood_id, boundary in rows)

    def resolve(self, latitude: Optional[float], longitude: Optional[float]) -> Optional[int]:
        """Neighborhood id containing the point, or None (missing coordinates included)."""
        if latitude is None or longitude is None:
            return None

        point = Point(longitude, latitude)
        for neighborhood_id, (min_x, min_y, max_x, max_y), polygon in self._polygons:
            if not (min_x <= longitude <= max_x and min_y <= latitude <= max_y):
                continue
            if polygon.contains(point):
                return neighborhood_id
        return None

"""
nyc311_fetcher.py
This code retrieves raw NYC 311 service requests from the NYC Open Data
(Socrata) API. It only fetches; classification and storage happen in
processing/complaint_processor.py and consumers/complaint_consumer.py.

Pages are requested oldest-first so that an incremental run that hits the
page limit still advances the watermark through the gap instead of skipping it.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from write_service import config
from write_service.errors import UpstreamFetchError

logger = logging.getLogger(__name__)

# Fields we need from the API
FIELDS = ",".join([
    "unique_key",
    "complaint_type",
    "descriptor",
    "created_date",
    "latitude",
    "longitude",
    "borough",
    "incident_zip",
])

# Socrata rejects $limit above this
MAX_PAGE_SIZE = 50000


def format_soql_datetime(value: datetime) -> str:
    """Floating timestamp literal as the API expects it (YYYY-MM-DDTHH:MM:SS)."""
    return value.strftime("%Y-%m-%dT%H:%M:%S")


def _headers() -> Dict[str, str]:
    headers = {"Accept": "application/json"}
    if config.SOCRATA_APP_TOKEN:
        headers["X-App-Token"] = config.SOCRATA_APP_TOKEN
    return headers


def get_json(url: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[int] = None) -> Any:
    """
    GET a Socrata resource and parse the JSON body.

    Raises UpstreamFetchError for HTTP errors, connection problems and
    bodies that are not valid JSON.
    """
    try:
        response = requests.get(url, params=params, headers=_headers(), timeout=timeout or config.REQUEST_TIMEOUT)
        response.raise_for_status()
        return response.json()

    except requests.exceptions.HTTPError as httpError:
        code = httpError.response.status_code if httpError.response is not None else None

        # Handle HTTP errors
        if code == 404:
            error = f"Error 404: Unable to get JSON from {url} because page not found. Error: {httpError}"
        elif code in (500, 502, 503):
            error = f"Error {code}: Unable to get JSON from {url} because the other server is not working. Error: {httpError}"
        elif code == 429:
            error = f"Error 429: NYC Open Data is throttling requests from {url}; set SOCRATA_APP_TOKEN. Error: {httpError}"
        else:
            error = f"Unknown HTTP Error {code}: Unable to get JSON from {url}. Error: {httpError}"

        logger.error(error)
        raise UpstreamFetchError(error, status_code=code) from httpError

    except (json.JSONDecodeError, ValueError) as jsonError:
        # If JSON data is not valid
        error = f"The JSON data from {url} is not valid. Error: {jsonError}"
        logger.error(error)
        raise UpstreamFetchError(error) from jsonError

    except requests.exceptions.RequestException as requestError:
        # If something wrong with the connection
        error = f"Something went wrong with the connection to {url}. Error: {requestError}"
        logger.error(error)
        raise UpstreamFetchError(error) from requestError


def _fetch_page(where: str, limit: int, offset: int = 0) -> List[Dict[str, Any]]:
    params = {
        "$select": FIELDS,
        "$where": where,
        "$order": "created_date ASC, unique_key ASC",
        "$limit": min(max(int(limit), 1), MAX_PAGE_SIZE),
    }
    if offset:
        params["$offset"] = int(offset)

    logger.info(f"Fetching from {config.NYC311_API_URL} where {where} (limit {params['$limit']}, offset {offset})")
    records = get_json(config.NYC311_API_URL, params=params)

    if not isinstance(records, list):
        raise UpstreamFetchError(f"Expected a JSON array from {config.NYC311_API_URL}, got {type(records).__name__}")

    logger.info(f"Fetched {len(records)} records")
    return records


def fetch_since(since: datetime, limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
    """One page of records created at or after ``since``, oldest first.

    The boundary is inclusive so records sharing the watermark timestamp are
    not lost when a page ends partway through them; the re-read ones are
    skipped as duplicates.
    """
    where = f"created_date >= '{format_soql_datetime(since)}'"
    return _fetch_page(where, limit or config.FETCH_LIMIT, offset)


def fetch_range(since: datetime, until: datetime, limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
    """One page of records with since <= created_date < until, used by backfills."""
    where = (
        f"created_date >= '{format_soql_datetime(since)}' "
        f"AND created_date < '{format_soql_datetime(until)}'"
    )
    return _fetch_page(where, limit or config.BACKFILL_LIMIT, offset)

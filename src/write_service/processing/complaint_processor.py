"""
complaint_processor.py
Turns raw NYC 311 API records into rows for the complaints table.

    raw record ──validate (jsonschema)──> classify ──> resolve neighborhood ──> row values

Rows can also be published to Kafka (CLASSIFIED_TOPIC) so another worker
can store them with consumers/complaint_consumer.consume_complaints.
"""

import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from jsonschema import ValidationError, validate
from kafka import KafkaProducer
from kafka.errors import NoBrokersAvailable

from write_service import config
from write_service.errors import ComplaintClubError, RecordValidationError
from write_service.processing.categories import classify

logger = logging.getLogger(__name__)

# Minimum shape of an upstream record; everything else is optional
RECORD_SCHEMA = {
    "type": "object",
    "required": ["unique_key", "complaint_type", "created_date"],
    "properties": {
        "unique_key": {"type": ["string", "integer"], "minLength": 1},
        "complaint_type": {"type": ["string", "null"]},
        "descriptor": {"type": ["string", "null"]},
        "created_date": {"type": "string", "minLength": 1},
        "latitude": {"type": ["string", "number", "null"]},
        "longitude": {"type": ["string", "number", "null"]},
        "borough": {"type": ["string", "null"]},
        "incident_zip": {"type": ["string", "null"]},
    },
}

DATETIME_FORMATS = [
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %H:%M:%S",
    "%Y-%m-%d",
]


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse an upstream timestamp into a naive New York local datetime.

    Socrata floating timestamps ("2024-01-15T10:30:00.000") are already local.
    Timestamps with an explicit offset are converted. Returns None when the
    value cannot be parsed.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        if not value or not str(value).strip():
            return None
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"

        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            parsed = None
            for fmt in DATETIME_FORMATS:
                try:
                    parsed = datetime.strptime(text.split(".")[0], fmt)
                    break
                except ValueError:
                    continue
        if parsed is None:
            return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(ZoneInfo(config.TIMEZONE)).replace(tzinfo=None)
    return parsed


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def clean_data(raw_data: Any) -> List[Dict[str, Any]]:
    """
    Standardize whatever the API returned into a list of dictionaries,
    one per record. Non-dictionary items are wrapped so they fail validation
    (and get counted) instead of disappearing.
    """
    if raw_data is None:
        return []
    if isinstance(raw_data, dict):
        return [raw_data]
    if isinstance(raw_data, list):
        return [item if isinstance(item, dict) else {"data": item} for item in raw_data]
    return [{"data": raw_data}]


def prepare_complaint(record: Dict[str, Any], resolver=None) -> Dict[str, Any]:
    """
    Validate, classify and locate one upstream record.

    Raises RecordValidationError when the record is missing a key field or
    its created_date cannot be parsed. A neighborhood_id already present on
    the record is kept; otherwise the resolver (if any) looks it up.
    """
    try:
        validate(instance=record, schema=RECORD_SCHEMA)
    except ValidationError as error:
        raise RecordValidationError(f"Invalid 311 record: {error.message}") from error

    created_at = parse_datetime(record["created_date"])
    if created_at is None:
        raise RecordValidationError(f"Unparseable created_date {record['created_date']!r}")

    latitude = _to_float(record.get("latitude"))
    longitude = _to_float(record.get("longitude"))

    neighborhood_id = record.get("neighborhood_id")
    if neighborhood_id is None and resolver is not None:
        neighborhood_id = resolver.resolve(latitude, longitude)

    return {
        "id": str(record["unique_key"]),
        "category": classify(record.get("complaint_type")),
        "complaint_type": record.get("complaint_type"),
        "descriptor": record.get("descriptor"),
        "created_at": created_at,
        "latitude": latitude,
        "longitude": longitude,
        "incident_zip": record.get("incident_zip"),
        "borough": record.get("borough"),
        "neighborhood_id": neighborhood_id,
        "raw": record,
    }


def to_message(values: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-safe copy of prepared row values for Kafka."""
    message = dict(values)
    if isinstance(message.get("created_at"), datetime):
        message["created_at"] = message["created_at"].isoformat()
    return message


def _make_producer():
    return KafkaProducer(
        bootstrap_servers=config.KAFKA_BOOTSTRAP.split(","),
        value_serializer=lambda v: json.dumps(v).encode("utf-8"),
        retries=3,
        request_timeout_ms=10000,
        reconnect_backoff_ms=1000,
    )


def publish_complaints(rows: List[Dict[str, Any]], producer=None, topic: Optional[str] = None) -> int:
    """
    Send prepared complaint rows to Kafka, keyed by complaint id.
    Returns how many were sent.
    """
    topic = topic or config.CLASSIFIED_TOPIC
    if not rows:
        logger.info("No complaints to publish")
        return 0

    # Kafka may still be starting, so try 3 times
    for attempt in range(3):
        try:
            if producer is None:
                producer = _make_producer()
            for values in rows:
                producer.send(topic, key=values["id"].encode("utf-8"), value=to_message(values))
            producer.flush()
            logger.info(f"Published {len(rows)} complaints to {topic}")
            return len(rows)
        except NoBrokersAvailable:
            logger.error(f"Kafka producer attempt {attempt + 1} failed (NoBrokersAvailable), retrying in 5s...")
            time.sleep(5)

    raise ComplaintClubError(
        f"Failed to connect to Kafka at {config.KAFKA_BOOTSTRAP} after 3 attempts. Ensure that Kafka is running."
    )

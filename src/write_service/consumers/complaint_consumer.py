"""
complaint_consumer.py
Stores classified complaints in PostgreSQL.

Two ways in:
    - ingest_records(): a page fetched by the ETL pipeline, stored in
      concurrent batches
    - consume_complaints(): messages on the Kafka topic written by
      processing/complaint_processor.publish_complaints

Both go through store_complaint(), which inserts or skips by complaint id,
so replaying a page or a topic never creates duplicates.
"""

import json
import logging
import time
from collections import Counter, defaultdict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from kafka import KafkaConsumer
from sqlalchemy import func, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from write_service import config
from write_service.db.models import Complaint
from write_service.outcome import SKIPPED, SUCCEEDED, BatchOutcome, run_batch
from write_service.processing.categories import OTHER, classify
from write_service.processing.complaint_processor import parse_datetime, prepare_complaint

logger = logging.getLogger(__name__)

INSERTED = "inserted"
DUPLICATE = "skipped"

COMPLAINT_COLUMNS = (
    "id", "category", "complaint_type", "descriptor", "created_at", "latitude", "longitude",
    "incident_zip", "borough", "neighborhood_id", "raw",
)


def retry_database_operation(func, max_retries=3, delay=2):
    """
    Retry database operations on failure
    func: function to retry
    max_retries: maximum number of retry attempts
    delay: seconds to wait between retries
    """
    for attempt in range(max_retries):
        try:
            return func()
        except IntegrityError:
            # constraint violations won't succeed on retry
            raise
        except SQLAlchemyError as e:
            if attempt == max_retries - 1:
                raise
            logger.warning(f"Database error (attempt {attempt + 1}/{max_retries}): {e}")
            time.sleep(delay)


def upsert_complaint(session, values: Dict[str, Any]) -> str:
    """
    Insert one complaint unless its id already exists.
    Returns "inserted" or "skipped". Does not commit.
    """
    values = {column: values.get(column) for column in COMPLAINT_COLUMNS}
    dialect = session.get_bind().dialect.name

    if dialect == "postgresql":
        statement = postgresql.insert(Complaint).values(**values).on_conflict_do_nothing(index_elements=["id"])
    elif dialect == "sqlite":
        statement = sqlite.insert(Complaint).values(**values).on_conflict_do_nothing(index_elements=["id"])
    else:
        # no ON CONFLICT here: only an existing id counts as a duplicate
        if session.get(Complaint, values["id"]) is not None:
            return DUPLICATE
        statement = insert(Complaint).values(**values)

    # any IntegrityError from here on is a bad row (NOT NULL, foreign key), not a duplicate
    result = session.execute(statement)
    return INSERTED if result.rowcount else DUPLICATE


def store_complaint(session_factory, values: Dict[str, Any], retry_delay: float = 2) -> str:
    """Insert-or-skip in its own session. Returns SUCCEEDED or SKIPPED."""

    def insert_record():
        with session_factory() as session:
            status = upsert_complaint(session, values)
            session.commit()
            return status

    status = retry_database_operation(insert_record, delay=retry_delay)
    return SUCCEEDED if status == INSERTED else SKIPPED


def _batches(items: List[Any], size: int) -> Iterable[List[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def ingest_records(session_factory, records: List[Dict[str, Any]], resolver=None,
                   batch_size: Optional[int] = None, max_workers: Optional[int] = None) -> Tuple[BatchOutcome, Any]:
    """
    Validate, classify and store a page of upstream records.

    Returns the outcome (inserted = succeeded, duplicate = skipped, invalid or
    failed insert = failed) and the latest created_at among valid records,
    or None if there were none.
    """
    batch_size = batch_size or config.BATCH_SIZE
    workers = config.INGEST_WORKERS if max_workers is None else max_workers

    outcome = BatchOutcome()
    latest = None

    for number, batch in enumerate(_batches(records, batch_size), start=1):
        prepared = {}
        ids = []
        for record in batch:
            key = record.get("unique_key") if isinstance(record, dict) else None
            try:
                values = prepare_complaint(record, resolver)
            except Exception as e:
                logger.warning(f"Skipping invalid record {key}: {e}")
                outcome.record_failure(key, e)
                continue
            prepared[values["id"]] = values
            ids.append(values["id"])
            if latest is None or values["created_at"] > latest:
                latest = values["created_at"]

        batch_outcome = run_batch(ids, lambda complaint_id: store_complaint(session_factory, prepared[complaint_id]),
                                  max_workers=workers)
        for failure in batch_outcome.failures:
            logger.error(f"Failed to insert complaint {failure['unit']}: {failure['error']}")
        outcome.merge(batch_outcome)

        logger.info(
            f"Batch {number}: {len(batch)} records "
            f"({outcome.succeeded} inserted, {outcome.skipped} skipped, {outcome.failed} failed so far)"
        )

    return outcome, latest


def consume_complaints(session_factory, topic: Optional[str] = None, max_messages: Optional[int] = None,
                       group_id: Optional[str] = None, consumer=None) -> BatchOutcome:
    """Consume classified complaints from Kafka and store them in PostgreSQL"""
    topic = topic or config.CLASSIFIED_TOPIC

    # Use a transient consumer (no group) by default to avoid committed offsets.
    # Pass group_id explicitly if you want group behavior.
    if consumer is None:
        consumer = KafkaConsumer(
            topic,
            bootstrap_servers=config.KAFKA_BOOTSTRAP.split(","),
            value_deserializer=lambda m: json.loads(m.decode("utf-8")),
            auto_offset_reset="earliest",
            enable_auto_commit=True,
            group_id=group_id,
            consumer_timeout_ms=10000,
        )
    logger.info(f"Started consuming from topic: {topic}")

    outcome = BatchOutcome()
    message_count = 0
    try:
        for message in consumer:
            values = dict(message.value)
            complaint_id = values.get("id")
            try:
                values["created_at"] = parse_datetime(values.get("created_at"))
                if not complaint_id or values["created_at"] is None:
                    raise ValueError(f"message is missing id or created_at: {values}")
                if store_complaint(session_factory, values) == SKIPPED:
                    outcome.record_skip()
                else:
                    outcome.record_success()
                    logger.info(f"Inserted complaint {complaint_id}")
            except Exception as e:
                logger.error(f"Failed to insert complaint {complaint_id} after retries: {e}")
                outcome.record_failure(complaint_id, e)

            message_count += 1
            if max_messages and message_count >= max_messages:
                logger.info(f"reached max_messages({max_messages}), stopping")
                break
    except KeyboardInterrupt:
        logger.info("Consumer stopped by user")
    finally:
        consumer.close()

    return outcome


def recategorize(session_factory, only_other: bool = True, limit: int = 10000) -> Dict[str, Any]:
    """
    Re-run the classifier over stored complaints and fix any whose category
    changed. Aggregates are not touched; run a daily backfill afterwards.
    """
    with session_factory() as session:
        query = select(Complaint.id, Complaint.complaint_type, Complaint.category).order_by(Complaint.id)
        if only_other:
            query = query.where(Complaint.category == OTHER)
        complaints = session.execute(query.limit(limit)).all()

        changes = Counter()
        updated = unchanged = 0
        for complaint_id, complaint_type, old_category in complaints:
            if not complaint_type:
                unchanged += 1
                continue
            new_category = classify(complaint_type)
            if new_category == old_category:
                unchanged += 1
                continue
            session.execute(update(Complaint).where(Complaint.id == complaint_id).values(category=new_category))
            changes[(old_category, new_category)] += 1
            updated += 1
        session.commit()

    logger.info(f"Recategorized {len(complaints)} complaints: {updated} updated, {unchanged} unchanged")
    return {
        "processed": len(complaints),
        "updated": updated,
        "unchanged": unchanged,
        "category_changes": [
            {"from": old, "to": new, "count": count}
            for (old, new), count in changes.most_common()
        ],
    }


def analyze_other(session_factory, limit: int = 10000, samples: int = 5) -> Dict[str, Any]:
    """Which complaint types end up in "other", most frequent first."""
    with session_factory() as session:
        total = session.scalar(select(func.count(Complaint.id)).where(Complaint.category == OTHER))
        rows = session.execute(
            select(Complaint.complaint_type, Complaint.descriptor)
            .where(Complaint.category == OTHER)
            .order_by(Complaint.created_at.desc())
            .limit(limit)
        ).all()

    counts = Counter()
    descriptors = defaultdict(list)
    for complaint_type, descriptor in rows:
        complaint_type = complaint_type or "Unknown"
        counts[complaint_type] += 1
        if descriptor and descriptor not in descriptors[complaint_type] and len(descriptors[complaint_type]) < samples:
            descriptors[complaint_type].append(descriptor)

    return {
        "total_other": total or 0,
        "analyzed": len(rows),
        "unique_types": len(counts),
        "types": [
            {"complaint_type": complaint_type, "count": count, "sample_descriptors": descriptors[complaint_type]}
            for complaint_type, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        ],
    }


if __name__ == "__main__":
    from write_service.db.session import SessionLocal

    logging.basicConfig(level=logging.INFO)
    result = consume_complaints(SessionLocal)
    logger.info(f"Consumer finished: {result.to_dict()}")

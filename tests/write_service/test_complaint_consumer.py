# tests/write_service/test_complaint_consumer.py
"""
Tests for storing complaints: insert-or-skip, page ingestion, the Kafka
consumer loop (mocked consumer) and the recategorize/analyze admin helpers.
"""

from datetime import datetime
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from write_service.consumers.complaint_consumer import (
    DUPLICATE,
    INSERTED,
    analyze_other,
    consume_complaints,
    ingest_records,
    recategorize,
    retry_database_operation,
    store_complaint,
    upsert_complaint,
)
from write_service.db.models import Complaint
from write_service.ingestion.neighborhood_fetcher import NeighborhoodResolver
from write_service.outcome import SKIPPED, SUCCEEDED
from write_service.processing.complaint_processor import prepare_complaint, to_message

CREATED = datetime(2024, 3, 1, 9, 0)


def count_complaints(session_factory):
    with session_factory() as session:
        return session.scalar(select(func.count(Complaint.id)))


@pytest.fixture
def resolver(session_factory, neighborhoods):
    with session_factory() as session:
        return NeighborhoodResolver.from_session(session)


def test_upsert_inserts_then_skips(session_factory, make_record):
    values = prepare_complaint(make_record("100", "Rodent", CREATED))

    with session_factory() as session:
        assert upsert_complaint(session, values) == INSERTED
        session.commit()
    with session_factory() as session:
        assert upsert_complaint(session, values) == DUPLICATE
        session.commit()

    assert count_complaints(session_factory) == 1


def test_store_complaint_reports_status(session_factory, make_record):
    values = prepare_complaint(make_record("101", "Rodent", CREATED))

    assert store_complaint(session_factory, values) == SUCCEEDED
    assert store_complaint(session_factory, values) == SKIPPED


def test_store_complaint_raises_on_constraint_violation(session_factory, make_record):
    values = prepare_complaint(make_record("102", "Rodent", CREATED))
    values["category"] = None

    with pytest.raises(IntegrityError):
        store_complaint(session_factory, values, retry_delay=0)
    assert count_complaints(session_factory) == 0


def test_retry_database_operation_does_not_retry_integrity_errors(mocker):
    sleep = mocker.patch("write_service.consumers.complaint_consumer.time.sleep")
    operation = MagicMock(side_effect=IntegrityError("stmt", {}, Exception("NOT NULL constraint failed")))

    with pytest.raises(IntegrityError):
        retry_database_operation(operation, max_retries=3)
    assert operation.call_count == 1
    sleep.assert_not_called()


def test_ingest_records_counts_constraint_violations_as_failed(session_factory, make_record, mocker):
    def drop_category(record, resolver=None):
        values = prepare_complaint(record, resolver)
        if values["id"] == "2":
            values["category"] = None
        return values

    mocker.patch("write_service.consumers.complaint_consumer.prepare_complaint", side_effect=drop_category)
    records = [make_record(key, "Rodent", CREATED) for key in ("1", "2", "3")]

    outcome, _ = ingest_records(session_factory, records, max_workers=1)

    assert (outcome.succeeded, outcome.skipped, outcome.failed) == (2, 0, 1)
    assert outcome.failures[0]["unit"] == "2"
    assert count_complaints(session_factory) == 2


def test_retry_database_operation_retries_then_succeeds(mocker):
    sleep = mocker.patch("write_service.consumers.complaint_consumer.time.sleep")
    operation = MagicMock(side_effect=[OperationalError("stmt", {}, Exception("db down")), "ok"])

    assert retry_database_operation(operation, delay=1) == "ok"
    assert operation.call_count == 2
    sleep.assert_called_once_with(1)


def test_retry_database_operation_gives_up(mocker):
    mocker.patch("write_service.consumers.complaint_consumer.time.sleep")
    operation = MagicMock(side_effect=OperationalError("stmt", {}, Exception("db down")))

    with pytest.raises(OperationalError):
        retry_database_operation(operation, max_retries=3)
    assert operation.call_count == 3


def test_ingest_records_counts_inserted_duplicate_and_invalid(session_factory, neighborhoods, resolver,
                                                              make_record, points):
    records = [
        make_record("1", "Noise - Residential", datetime(2024, 3, 1, 8, 0), point=points["Astoria"]),
        make_record("2", "Rodent", datetime(2024, 3, 1, 10, 0), point=points["Park Slope"]),
        make_record("3", "Illegal Parking", datetime(2024, 3, 1, 9, 0), point=None),
        make_record("4", "Rodent", "not a date"),
        {"complaint_type": "Rodent"},
    ]

    outcome, latest = ingest_records(session_factory, records, resolver=resolver, batch_size=2, max_workers=1)

    assert outcome.succeeded == 3
    assert outcome.skipped == 0
    assert outcome.failed == 2
    assert latest == datetime(2024, 3, 1, 10, 0)

    with session_factory() as session:
        stored = {c.id: c for c in session.scalars(select(Complaint))}
    assert stored["1"].neighborhood_id == neighborhoods["Astoria"]
    assert stored["1"].category == "noise"
    assert stored["2"].neighborhood_id == neighborhoods["Park Slope"]
    assert stored["3"].neighborhood_id is None
    assert stored["1"].raw["unique_key"] == "1"

    # replaying the same page is a no-op
    replay, _ = ingest_records(session_factory, records[:3], resolver=resolver, max_workers=1)
    assert (replay.succeeded, replay.skipped, replay.failed) == (0, 3, 0)
    assert count_complaints(session_factory) == 3


def test_ingest_records_empty_page(session_factory):
    outcome, latest = ingest_records(session_factory, [], max_workers=1)

    assert outcome.processed == 0
    assert latest is None


def message(values):
    return SimpleNamespace(value=to_message(values))


def test_consume_complaints_stores_messages(session_factory, make_record):
    first = prepare_complaint(make_record("200", "Rodent", CREATED))
    second = prepare_complaint(make_record("201", "Illegal Parking", CREATED))
    consumer = MagicMock()
    consumer.__iter__.return_value = iter([
        message(first),
        message(first),
        SimpleNamespace(value={"id": "202", "created_at": "garbage"}),
        message(second),
    ])

    outcome = consume_complaints(session_factory, consumer=consumer)

    assert (outcome.succeeded, outcome.skipped, outcome.failed) == (2, 1, 1)
    consumer.close.assert_called_once()
    with session_factory() as session:
        assert session.get(Complaint, "200").created_at == CREATED


def test_consume_complaints_stops_at_max_messages(session_factory, make_record):
    consumer = MagicMock()
    consumer.__iter__.return_value = iter([
        message(prepare_complaint(make_record(str(key), "Rodent", CREATED))) for key in range(5)
    ])

    outcome = consume_complaints(session_factory, consumer=consumer, max_messages=2)

    assert outcome.succeeded == 2
    assert count_complaints(session_factory) == 2


def _store_raw(session_factory, rows):
    with session_factory() as session:
        for complaint_id, complaint_type, category, descriptor in rows:
            session.add(Complaint(
                id=complaint_id, complaint_type=complaint_type, category=category,
                descriptor=descriptor, created_at=CREATED,
            ))
        session.commit()


def test_recategorize_fixes_stale_categories(session_factory):
    _store_raw(session_factory, [
        ("1", "Rodent", "other", None),
        ("2", "Rodent", "other", None),
        ("3", "Taxi Complaint", "other", None),
        ("4", None, "other", None),
        ("5", "Illegal Parking", "trash", None),
    ])

    result = recategorize(session_factory)

    assert result["processed"] == 4
    assert result["updated"] == 2
    assert result["unchanged"] == 2
    assert result["category_changes"] == [{"from": "other", "to": "rats", "count": 2}]
    with session_factory() as session:
        assert session.get(Complaint, "1").category == "rats"
        assert session.get(Complaint, "5").category == "trash"


def test_recategorize_all_categories(session_factory):
    _store_raw(session_factory, [("5", "Illegal Parking", "trash", None)])

    result = recategorize(session_factory, only_other=False)

    assert result["updated"] == 1
    assert result["category_changes"] == [{"from": "trash", "to": "parking", "count": 1}]


def test_analyze_other_groups_types(session_factory):
    _store_raw(session_factory, [
        ("1", "Taxi Complaint", "other", "Driver Complaint"),
        ("2", "Taxi Complaint", "other", "Driver Complaint"),
        ("3", "Taxi Complaint", "other", "Overcharge"),
        ("4", "Animal Abuse", "other", None),
        ("5", "Rodent", "rats", "Rat Sighting"),
    ])

    result = analyze_other(session_factory)

    assert result["total_other"] == 4
    assert result["analyzed"] == 4
    assert result["unique_types"] == 2
    assert result["types"][0]["complaint_type"] == "Taxi Complaint"
    assert result["types"][0]["count"] == 3
    assert sorted(result["types"][0]["sample_descriptors"]) == ["Driver Complaint", "Overcharge"]
    assert result["types"][1]["complaint_type"] == "Animal Abuse"
    assert result["types"][1]["sample_descriptors"] == []


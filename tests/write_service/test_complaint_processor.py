# tests/write_service/test_complaint_processor.py
"""
Tests for turning raw 311 records into complaint rows, and for publishing
them to Kafka (the producer is always mocked).
"""

from datetime import datetime
from unittest.mock import MagicMock

import pytest
from kafka.errors import NoBrokersAvailable

from write_service.errors import ComplaintClubError, RecordValidationError
from write_service.processing import complaint_processor
from write_service.processing.complaint_processor import (
    clean_data,
    parse_datetime,
    prepare_complaint,
    publish_complaints,
    to_message,
)


@pytest.mark.parametrize("value, expected", [
    ("2024-01-15T10:30:00.000", datetime(2024, 1, 15, 10, 30)),
    ("2024-01-15T10:30:00", datetime(2024, 1, 15, 10, 30)),
    ("2024-01-15 10:30:00", datetime(2024, 1, 15, 10, 30)),
    ("01/15/2024 10:30:00 AM", datetime(2024, 1, 15, 10, 30)),
    # UTC converted to New York (EST in January)
    ("2024-01-15T15:30:00Z", datetime(2024, 1, 15, 10, 30)),
    ("2024-07-15T14:30:00+00:00", datetime(2024, 7, 15, 10, 30)),
])
def test_parse_datetime(value, expected):
    assert parse_datetime(value) == expected


@pytest.mark.parametrize("value", [None, "", "   ", "yesterday-ish"])
def test_parse_datetime_unparseable(value):
    assert parse_datetime(value) is None


def test_clean_data():
    assert clean_data(None) == []
    assert clean_data({"unique_key": "1"}) == [{"unique_key": "1"}]
    assert clean_data([{"a": 1}, "oops"]) == [{"a": 1}, {"data": "oops"}]
    assert clean_data("text") == [{"data": "text"}]


def test_prepare_complaint_builds_row(make_record):
    record = make_record(
        "58001", "Noise - Residential", datetime(2024, 3, 1, 23, 15), descriptor="Loud Music/Party"
    )
    resolver = MagicMock()
    resolver.resolve.return_value = 7

    row = prepare_complaint(record, resolver)

    assert row["id"] == "58001"
    assert row["category"] == "noise"
    assert row["complaint_type"] == "Noise - Residential"
    assert row["descriptor"] == "Loud Music/Party"
    assert row["created_at"] == datetime(2024, 3, 1, 23, 15)
    assert row["latitude"] == pytest.approx(40.765)
    assert row["longitude"] == pytest.approx(-73.925)
    assert row["borough"] == "QUEENS"
    assert row["incident_zip"] == "11103"
    assert row["neighborhood_id"] == 7
    assert row["raw"] is record
    resolver.resolve.assert_called_once_with(pytest.approx(40.765), pytest.approx(-73.925))


def test_prepare_complaint_without_coordinates(make_record):
    record = make_record("58002", "Rodent", datetime(2024, 3, 1), point=None)
    resolver = MagicMock()
    resolver.resolve.return_value = None

    row = prepare_complaint(record, resolver)

    assert row["latitude"] is None
    assert row["longitude"] is None
    assert row["neighborhood_id"] is None
    assert row["category"] == "rats"


def test_prepare_complaint_keeps_existing_neighborhood(make_record):
    record = make_record("58003", "Rodent", datetime(2024, 3, 1))
    record["neighborhood_id"] = 3
    resolver = MagicMock()

    row = prepare_complaint(record, resolver)

    assert row["neighborhood_id"] == 3
    resolver.resolve.assert_not_called()


def test_prepare_complaint_accepts_integer_key(make_record):
    record = make_record("1", "Rodent", datetime(2024, 3, 1))
    record["unique_key"] = 12345

    assert prepare_complaint(record)["id"] == "12345"


def test_prepare_complaint_null_type_is_other(make_record):
    record = make_record("58004", None, datetime(2024, 3, 1))

    assert prepare_complaint(record)["category"] == "other"


@pytest.mark.parametrize("missing", ["unique_key", "complaint_type", "created_date"])
def test_prepare_complaint_requires_key_fields(make_record, missing):
    record = make_record("58005", "Rodent", datetime(2024, 3, 1))
    del record[missing]

    with pytest.raises(RecordValidationError):
        prepare_complaint(record)


def test_prepare_complaint_rejects_bad_created_date(make_record):
    record = make_record("58006", "Rodent", "sometime last week")

    with pytest.raises(RecordValidationError, match="created_date"):
        prepare_complaint(record)


def test_prepare_complaint_rejects_non_dict():
    with pytest.raises(RecordValidationError):
        prepare_complaint({"data": "oops"})


def test_to_message_serializes_datetimes(make_record):
    row = prepare_complaint(make_record("58007", "Rodent", datetime(2024, 3, 1, 9, 0)))

    message = to_message(row)

    assert message["created_at"] == "2024-03-01T09:00:00"
    assert row["created_at"] == datetime(2024, 3, 1, 9, 0)


def test_publish_complaints_sends_keyed_messages(make_record):
    rows = [
        prepare_complaint(make_record("1", "Rodent", datetime(2024, 3, 1))),
        prepare_complaint(make_record("2", "Illegal Parking", datetime(2024, 3, 1))),
    ]
    producer = MagicMock()

    sent = publish_complaints(rows, producer=producer, topic="test-topic")

    assert sent == 2
    assert producer.send.call_count == 2
    first = producer.send.call_args_list[0]
    assert first.args == ("test-topic",)
    assert first.kwargs["key"] == b"1"
    assert first.kwargs["value"]["category"] == "rats"
    producer.flush.assert_called_once()


def test_publish_nothing_returns_zero():
    producer = MagicMock()

    assert publish_complaints([], producer=producer) == 0
    producer.send.assert_not_called()


def test_publish_retries_until_kafka_is_up(make_record, mocker):
    rows = [prepare_complaint(make_record("1", "Rodent", datetime(2024, 3, 1)))]
    producer = MagicMock()
    make_producer = mocker.patch.object(
        complaint_processor, "_make_producer", side_effect=[NoBrokersAvailable(), producer]
    )
    sleep = mocker.patch("write_service.processing.complaint_processor.time.sleep")

    assert publish_complaints(rows) == 1
    assert make_producer.call_count == 2
    sleep.assert_called_once_with(5)


def test_publish_gives_up_after_three_attempts(make_record, mocker):
    rows = [prepare_complaint(make_record("1", "Rodent", datetime(2024, 3, 1)))]
    mocker.patch.object(complaint_processor, "_make_producer", side_effect=NoBrokersAvailable())
    mocker.patch("write_service.processing.complaint_processor.time.sleep")

    with pytest.raises(ComplaintClubError, match="Kafka"):
        publish_complaints(rows)

from datetime import datetime, timedelta, timezone

from datetime_utils import UTC, ensure_utc, minutes_since, parse_rfc3339, to_rfc3339_utc


def test_parse_rfc3339_variants():
    assert parse_rfc3339("2024-03-01T10:00:00Z") == datetime(2024, 3, 1, 10, 0, tzinfo=UTC)
    assert parse_rfc3339("2024-03-01T10:00:00.5Z").microsecond == 500000
    assert parse_rfc3339("2024-03-01 12:00:00+02:00") == datetime(2024, 3, 1, 10, 0, tzinfo=UTC)
    assert parse_rfc3339("2024-03-01T10:00:00.123456789-01:00") == datetime(
        2024, 3, 1, 11, 0, 0, 123456, tzinfo=UTC
    )


def test_parse_rfc3339_rejects_garbage():
    assert parse_rfc3339(None) is None
    assert parse_rfc3339("   ") is None
    assert parse_rfc3339("yesterday") is None


def test_naive_values_are_treated_as_utc():
    naive = datetime(2024, 3, 1, 10, 0)
    assert ensure_utc(naive) == datetime(2024, 3, 1, 10, 0, tzinfo=UTC)
    shifted = datetime(2024, 3, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    assert ensure_utc(shifted).hour == 10


def test_to_rfc3339_drops_fraction():
    value = datetime(2024, 3, 1, 10, 0, 5, 999999, tzinfo=UTC)
    assert to_rfc3339_utc(value) == "2024-03-01T10:00:05Z"
    assert to_rfc3339_utc(None) is None


def test_minutes_since():
    now = datetime(2024, 3, 1, 10, 30, tzinfo=UTC)
    assert minutes_since(None, now) is None
    assert minutes_since(now - timedelta(minutes=12, seconds=59), now) == 12
    # clock skew never yields a negative age
    assert minutes_since(now + timedelta(minutes=5), now) == 0

"""Tests for UTC epoch normalization."""

from datetime import datetime, timedelta, timezone

import pytest

from issue_pipeline.timestamps import (
    format_epoch, is_strictly_after, parse_iso8601, to_epoch
)


class TestParseIso8601:
    """Tests for parse_iso8601."""

    def test_zulu_suffix(self):
        """A trailing Z means UTC."""
        assert parse_iso8601("2024-01-01T00:00:00Z") == 1704067200

    def test_offsets_normalize_to_same_instant(self):
        """The same instant written with different offsets compares equal."""
        utc = parse_iso8601("2024-06-01T12:00:00+00:00")
        berlin = parse_iso8601("2024-06-01T14:00:00+02:00")
        new_york = parse_iso8601("2024-06-01T08:00:00-04:00")
        assert utc == berlin == new_york

    def test_naive_timestamp_is_utc(self):
        """A timestamp without offset is read as UTC."""
        assert parse_iso8601("2024-01-01T00:00:00") == 1704067200

    def test_invalid_raises(self):
        """Garbage is rejected."""
        with pytest.raises(ValueError):
            parse_iso8601("yesterday")


class TestToEpoch:
    """Tests for to_epoch."""

    def test_none_and_empty(self):
        assert to_epoch(None) is None
        assert to_epoch("") is None

    def test_numbers_pass_through(self):
        assert to_epoch(1704067200) == 1704067200
        assert to_epoch(1704067200.9) == 1704067200
        assert to_epoch("1704067200") == 1704067200

    def test_datetime(self):
        """Aware and naive datetimes are both handled."""
        aware = datetime(2024, 1, 1, 1, 0, tzinfo=timezone(timedelta(hours=1)))
        naive = datetime(2024, 1, 1, 0, 0)
        assert to_epoch(aware) == 1704067200
        assert to_epoch(naive) == 1704067200

    def test_bool_rejected(self):
        with pytest.raises(TypeError):
            to_epoch(True)


class TestComparisons:
    """Tests for is_strictly_after and format_epoch."""

    def test_strictly_after(self):
        assert is_strictly_after(11, 10)
        assert not is_strictly_after(10, 10)
        assert not is_strictly_after(9, 10)

    def test_unknown_is_never_after(self):
        """A missing instant never counts as later."""
        assert not is_strictly_after(None, 10)
        assert not is_strictly_after(10, None)

    def test_format_epoch(self):
        assert format_epoch(1704067200) == "2024-01-01 00:00:00 UTC"

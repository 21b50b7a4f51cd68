"""Activity stream entry parsing tests."""

from datetime import datetime, timezone

import pytest

from engage.errors import ValidationError
from engage.gamification.worker import parse_activity


class TestParseActivity:
    """Test decoding of raw stream fields."""

    def test_minimal_entry(self):
        assert parse_activity({"user_id": "u1", "kind": "login"}) == ("u1", "login", None, None)

    def test_counters_and_timestamp(self):
        user_id, kind, counters, occurred_at = parse_activity({
            "user_id": "u1",
            "kind": "content_watched",
            "counters": '{"movies_watched": 10}',
            "occurred_at": "2024-01-02T08:00:00+00:00",
        })
        assert counters == {"movies_watched": 10}
        assert occurred_at == datetime(2024, 1, 2, 8, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "raw",
        [
            {"kind": "login"},
            {"user_id": "u1"},
            {"user_id": "u1", "kind": "login", "counters": "not json"},
            {"user_id": "u1", "kind": "login", "counters": "[1, 2]"},
            {"user_id": "u1", "kind": "login", "occurred_at": "yesterday"},
        ],
    )
    def test_malformed_entries_are_rejected(self, raw):
        with pytest.raises(ValidationError):
            parse_activity(raw)

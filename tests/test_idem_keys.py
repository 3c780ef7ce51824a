"""Tests for dedupe key construction and time buckets."""

from datetime import datetime, timedelta, timezone

from propagent.idem_keys import day_bucket, hour_bucket, make_dedupe_key


class TestMakeDedupeKey:
    def test_format(self):
        assert make_dedupe_key("event", "PM_DUE-pm-1", "prop-1", "2026-03-02T15") == (
            "event|PM_DUE-pm-1|prop-1|2026-03-02T15"
        )

    def test_pure(self):
        args = ("schedule", "scan", "prop-1", "2026-03-02")
        assert make_dedupe_key(*args) == make_dedupe_key(*args)

    def test_empty_property_segment(self):
        assert make_dedupe_key("schedule", "scan", None, "2026-03-02") == "schedule|scan||2026-03-02"
        assert make_dedupe_key("schedule", "scan", "", "2026-03-02") == "schedule|scan||2026-03-02"

    def test_distinct_inputs_give_distinct_keys(self):
        keys = {
            make_dedupe_key("event", "a", "p1", "b1"),
            make_dedupe_key("event", "a", "p2", "b1"),
            make_dedupe_key("event", "b", "p1", "b1"),
            make_dedupe_key("schedule", "a", "p1", "b1"),
            make_dedupe_key("event", "a", "p1", "b2"),
        }
        assert len(keys) == 5


class TestBuckets:
    def test_hour_bucket(self):
        assert hour_bucket(datetime(2026, 3, 2, 15, 59, tzinfo=timezone.utc)) == "2026-03-02T15"

    def test_hour_bucket_converts_to_utc(self):
        est = timezone(timedelta(hours=-5))
        assert hour_bucket(datetime(2026, 3, 2, 22, 30, tzinfo=est)) == "2026-03-03T03"

    def test_day_bucket(self):
        assert day_bucket(datetime(2026, 3, 2, 23, 59, tzinfo=timezone.utc)) == "2026-03-02"

from __future__ import annotations

import unittest
from datetime import datetime, timezone

from hashtag_importer.normalize import (
    canonical_tag,
    normalize,
    parse_timestamp,
    record_from_item,
)
from hashtag_importer.records import HashtagRecord

_NOW = datetime(2025, 12, 1, 12, 0, tzinfo=timezone.utc)


class TestCanonicalTag(unittest.TestCase):
    def test_case_and_hash_prefix(self) -> None:
        self.assertEqual(canonical_tag("#Foo"), "foo")
        self.assertEqual(canonical_tag("foo"), "foo")
        self.assertEqual(canonical_tag("  #FOO  "), "foo")

    def test_strips_diacritics_and_punctuation(self) -> None:
        self.assertEqual(canonical_tag("#Café"), "cafe")
        self.assertEqual(canonical_tag("#street-workout!"), "streetworkout")
        self.assertEqual(canonical_tag("#push_ups2025"), "push_ups2025")

    def test_keeps_non_latin_letters(self) -> None:
        self.assertEqual(canonical_tag("#Привет"), "привет")
        self.assertEqual(canonical_tag("#筋トレ"), "筋トレ")

    def test_empty_results(self) -> None:
        self.assertEqual(canonical_tag("#"), "")
        self.assertEqual(canonical_tag("  "), "")
        self.assertEqual(canonical_tag("#!!!"), "")


class TestParseTimestamp(unittest.TestCase):
    def test_variants(self) -> None:
        expected = datetime(2025, 12, 1, 0, 0, tzinfo=timezone.utc)
        self.assertEqual(parse_timestamp("2025-12-01T00:00:00Z"), expected)
        self.assertEqual(parse_timestamp("2025-12-01T01:00:00+01:00"), expected)
        self.assertEqual(parse_timestamp("2025-12-01T00:00:00"), expected)
        self.assertEqual(parse_timestamp(expected.timestamp()), expected)
        self.assertIsNone(parse_timestamp(None))
        self.assertIsNone(parse_timestamp(""))

    def test_rejects_garbage(self) -> None:
        with self.assertRaises(ValueError):
            parse_timestamp("yesterday")
        with self.assertRaises(ValueError):
            parse_timestamp(True)


class TestRecordFromItem(unittest.TestCase):
    def test_field_variants(self) -> None:
        rec = record_from_item({"name": "Calisthenics", "postsCount": 12, "id": 7})
        self.assertEqual(rec.tag, "Calisthenics")
        self.assertEqual(rec.metric, 12)
        self.assertEqual(rec.source_id, "7")

        rec = record_from_item({"hashtag": "#pullups", "timestamp": "2025-12-01T00:00:00Z"})
        self.assertEqual(rec.tag, "#pullups")
        self.assertIsNone(rec.metric)
        self.assertEqual(rec.observed_at, "2025-12-01T00:00:00Z")

    def test_missing_tag(self) -> None:
        self.assertEqual(record_from_item({"count": 3}).tag, "")


class TestNormalize(unittest.TestCase):
    def test_merges_case_variants(self) -> None:
        records = [
            HashtagRecord(tag="#Foo", metric=3),
            HashtagRecord(tag="#foo", metric=2),
            HashtagRecord(tag="#bar", metric=1),
        ]
        result = normalize(records, default_observed_at=_NOW)

        self.assertEqual(result.dropped, 0)
        self.assertEqual([(e.tag, e.metric) for e in result.entities], [("bar", 1), ("foo", 5)])

    def test_timestamps_span_observations(self) -> None:
        records = [
            HashtagRecord(tag="foo", observed_at="2025-12-01T10:00:00Z"),
            HashtagRecord(tag="FOO", observed_at="2025-12-01T08:00:00Z"),
            HashtagRecord(tag="foo", observed_at="2025-12-01T09:00:00Z"),
        ]
        (entity,) = normalize(records, default_observed_at=_NOW).entities

        self.assertEqual(entity.metric, 3)
        self.assertEqual(entity.first_seen, datetime(2025, 12, 1, 8, 0, tzinfo=timezone.utc))
        self.assertEqual(entity.last_seen, datetime(2025, 12, 1, 10, 0, tzinfo=timezone.utc))

    def test_missing_values_use_defaults(self) -> None:
        (entity,) = normalize([HashtagRecord(tag="foo", metric=None)], default_observed_at=_NOW).entities
        self.assertEqual(entity.metric, 1)
        self.assertEqual(entity.first_seen, _NOW)
        self.assertEqual(entity.last_seen, _NOW)

    def test_drops_malformed_records_with_reasons(self) -> None:
        records = [
            HashtagRecord(tag=""),
            HashtagRecord(tag="#"),
            HashtagRecord(tag="foo", metric=-1),
            HashtagRecord(tag="foo", metric=True),
            HashtagRecord(tag="foo", metric="many"),
            HashtagRecord(tag="foo", metric=1.5),
            HashtagRecord(tag="foo", observed_at="not a date"),
            HashtagRecord(tag="ok", metric="4"),
        ]
        result = normalize(records, default_observed_at=_NOW)

        self.assertEqual([(e.tag, e.metric) for e in result.entities], [("ok", 4)])
        self.assertEqual(result.dropped, 7)
        self.assertEqual(
            dict(result.drop_reasons),
            {"empty_tag": 2, "invalid_metric": 4, "invalid_timestamp": 1},
        )

    def test_numeric_lookalike_metrics_are_dropped(self) -> None:
        records = [
            HashtagRecord(tag="ok", metric="²"),
            HashtagRecord(tag="ok", metric="½"),
            HashtagRecord(tag="ok", metric="9" * 5000),
            HashtagRecord(tag="ok", metric=2**63),
            HashtagRecord(tag="ok", metric=str(2**63)),
            HashtagRecord(tag="ok", metric=float("inf")),
            HashtagRecord(tag="ok", metric="٣"),
            HashtagRecord(tag="big", metric=2**63 - 1),
        ]
        result = normalize(records, default_observed_at=_NOW)

        self.assertEqual(result.dropped, 6)
        self.assertEqual(dict(result.drop_reasons), {"invalid_metric": 6})
        self.assertEqual([(e.tag, e.metric) for e in result.entities], [("big", 2**63 - 1), ("ok", 3)])

    def test_order_independent(self) -> None:
        records = [
            HashtagRecord(tag="#Zed", metric=2, observed_at="2025-12-01T01:00:00Z"),
            HashtagRecord(tag="#zed", metric=5, observed_at="2025-12-01T03:00:00Z"),
            HashtagRecord(tag="#Álpha", metric=1, observed_at="2025-12-01T02:00:00Z"),
            HashtagRecord(tag="#alpha", metric=1, observed_at="2025-12-01T00:30:00Z"),
        ]

        forward = normalize(records, default_observed_at=_NOW).entities
        backward = normalize(list(reversed(records)), default_observed_at=_NOW).entities

        self.assertEqual(list(forward), list(backward))
        self.assertEqual([(e.tag, e.metric) for e in forward], [("alpha", 2), ("zed", 7)])

    def test_empty_input(self) -> None:
        result = normalize([], default_observed_at=_NOW)
        self.assertEqual(list(result.entities), [])
        self.assertEqual(result.dropped, 0)


if __name__ == "__main__":
    unittest.main()

from __future__ import annotations

import unittest
from typing import Any

from apify_client.errors import ApifyApiError

from hashtag_importer.apify_source import (
    ApifyDatasetSource,
    classify_apify_exception,
    records_from_apify_item,
)
from hashtag_importer.errors import FatalError, TransientError


class _FakeApiError(ApifyApiError):
    def __init__(self, status_code: int) -> None:
        Exception.__init__(self, f"HTTP {status_code}")
        self.status_code = status_code


class ReadTimeout(Exception):
    pass


class _FakePage:
    def __init__(self, items: list[Any]) -> None:
        self.items = items


class _FakeDatasetClient:
    def __init__(self, items: list[Any], error: Exception | None = None) -> None:
        self._items = items
        self._error = error
        self.calls: list[dict[str, Any]] = []

    def list_items(self, *, offset: int = 0, limit: int | None = None, clean: bool | None = None) -> _FakePage:
        self.calls.append({"offset": offset, "limit": limit, "clean": clean})
        if self._error is not None:
            raise self._error
        end = len(self._items) if limit is None else offset + limit
        return _FakePage(self._items[offset:end])


class _FakeApifyClient:
    def __init__(self, items: list[Any], error: Exception | None = None) -> None:
        self.dataset_ids: list[str] = []
        self._dataset_client = _FakeDatasetClient(items, error)

    def dataset(self, dataset_id: str) -> _FakeDatasetClient:
        self.dataset_ids.append(dataset_id)
        return self._dataset_client


class TestApifyDatasetSource(unittest.TestCase):
    def test_pages_by_offset(self) -> None:
        items = [{"name": f"tag{i}", "postsCount": i} for i in range(5)]
        fake = _FakeApifyClient(items)
        source = ApifyDatasetSource("token", "ds_1", page_size=3, client=fake)  # type: ignore[arg-type]

        first = source.fetch(None)
        self.assertEqual([r.tag for r in first.records], ["tag0", "tag1", "tag2"])
        self.assertEqual(first.next_cursor, "3")
        self.assertTrue(first.full_page)

        second = source.fetch("3")
        self.assertEqual([r.metric for r in second.records], [3, 4])
        self.assertEqual(second.next_cursor, "5")
        self.assertFalse(second.full_page)

        done = source.fetch("5")
        self.assertEqual(done.next_cursor, "5")
        self.assertTrue(done.exhausted("5"))

        self.assertEqual(fake.dataset_ids, ["ds_1", "ds_1", "ds_1"])
        self.assertEqual(
            fake._dataset_client.calls[1],
            {"offset": 3, "limit": 3, "clean": True},
        )

    def test_post_items_expand_hashtags(self) -> None:
        item = {
            "id": "p1",
            "timestamp": "2025-12-01T00:00:00.000Z",
            "hashtags": ["calisthenics", "Pullups", 7],
        }
        records = records_from_apify_item(item)

        self.assertEqual([r.tag for r in records], ["calisthenics", "Pullups", ""])
        self.assertEqual(records[0].source_id, "p1:calisthenics")
        self.assertEqual(records[1].observed_at, "2025-12-01T00:00:00.000Z")

    def test_full_page_counts_items_not_records(self) -> None:
        items = [{"id": "p1", "hashtags": ["a", "b", "c"]}, {"id": "p2", "hashtags": ["d"]}]
        source = ApifyDatasetSource(
            "token", "ds_1", page_size=2, client=_FakeApifyClient(items)  # type: ignore[arg-type]
        )
        page = source.fetch(None)
        self.assertEqual(len(page.records), 4)
        self.assertEqual(page.next_cursor, "2")
        self.assertTrue(page.full_page)

    def test_errors_are_classified(self) -> None:
        source = ApifyDatasetSource(
            "token", "ds_1", page_size=2, client=_FakeApifyClient([], _FakeApiError(503))  # type: ignore[arg-type]
        )
        with self.assertRaises(TransientError):
            source.fetch(None)

        source = ApifyDatasetSource(
            "token", "ds_1", page_size=2, client=_FakeApifyClient([], _FakeApiError(401))  # type: ignore[arg-type]
        )
        with self.assertRaises(FatalError) as ctx:
            source.fetch(None)
        self.assertEqual(ctx.exception.reason, "http_401")

    def test_requires_dataset(self) -> None:
        with self.assertRaises(ValueError):
            ApifyDatasetSource("token", "  ", page_size=2, client=_FakeApifyClient([]))  # type: ignore[arg-type]


class TestClassifyApifyException(unittest.TestCase):
    def test_transient(self) -> None:
        for exc in (_FakeApiError(429), _FakeApiError(500), ConnectionError("reset"), TimeoutError(), ReadTimeout()):
            self.assertIsInstance(classify_apify_exception(exc, context="x"), TransientError, msg=repr(exc))

    def test_fatal(self) -> None:
        for exc in (_FakeApiError(400), _FakeApiError(404), ValueError("bad")):
            self.assertIsInstance(classify_apify_exception(exc, context="x"), FatalError, msg=repr(exc))


if __name__ == "__main__":
    unittest.main()

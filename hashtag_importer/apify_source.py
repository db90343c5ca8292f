from __future__ import annotations

from typing import Any, Mapping

from apify_client import ApifyClient
from apify_client.errors import ApifyApiError

from .errors import FatalError, TransientError
from .normalize import record_from_item
from .records import HashtagRecord
from .source import FetchResult, offset_position


def _extract_status_code(exc: BaseException) -> int | None:
    for attr in ("status_code", "statusCode", "status", "http_status"):
        val = getattr(exc, attr, None)
        if val is None:
            continue
        try:
            return int(val)
        except (TypeError, ValueError):
            continue
    return None


def _looks_like_timeout_or_connection(exc: BaseException) -> bool:
    # httpx and urllib3 error types both carry these words in their names.
    name = type(exc).__name__.casefold()
    mod = type(exc).__module__.casefold()
    return any(word in name or word in mod for word in ("timeout", "connect"))


def classify_apify_exception(exc: BaseException, *, context: str) -> Exception:
    """
    Map an Apify client failure to TransientError or FatalError.

    Transient: network/connection errors, HTTP 429 and HTTP 500+.
    """
    if isinstance(exc, ApifyApiError):
        code = _extract_status_code(exc)
        reason = f"http_{code}" if code is not None else "http_status"
        if code == 429 or (isinstance(code, int) and code >= 500):
            return TransientError(f"{context}: {exc}", reason=reason)
        return FatalError(f"{context}: {exc}", reason=reason)

    if isinstance(exc, (ConnectionError, TimeoutError)) or _looks_like_timeout_or_connection(exc):
        return TransientError(f"{context}: {exc}", reason="network_error")

    return FatalError(f"Unexpected error, {context}: {exc}")


def records_from_apify_item(item: Mapping[str, Any]) -> list[HashtagRecord]:
    """
    Records for one dataset item.

    Post items (hashtag scraper output) yield one record per hashtag. Hashtag items
    (`name` + `postsCount`) yield a single record carrying that count.
    """
    hashtags = item.get("hashtags")
    if isinstance(hashtags, list):
        sid = str(item.get("id") or item.get("shortCode") or "").strip()
        observed = item.get("timestamp")
        out: list[HashtagRecord] = []
        for tag in hashtags:
            out.append(
                HashtagRecord(
                    tag=tag if isinstance(tag, str) else "",
                    metric=1,
                    observed_at=observed,
                    source_id=f"{sid}:{tag}" if sid else None,
                )
            )
        return out

    return [record_from_item(item)]


class ApifyDatasetSource:
    """
    Reads hashtag data from an Apify dataset, paging by item offset.

    Typically pointed at the default dataset of an Instagram hashtag scraper Actor run.
    """

    def __init__(
        self,
        token: str,
        dataset_id: str,
        *,
        page_size: int,
        client: ApifyClient | None = None,
    ) -> None:
        ds = (dataset_id or "").strip()
        if not ds:
            raise ValueError("dataset_id must be a non-empty string")
        if page_size <= 0:
            raise ValueError("page_size must be positive")

        self._dataset_id = ds
        self.page_size = int(page_size)

        if client is not None:
            self._client = client
        else:
            # Client-level retries are disabled; the pump owns retry timing.
            self._client = ApifyClient(token=token, max_retries=0)

    def cursor_position(self, cursor: str | None) -> int:
        return offset_position(cursor)

    def fetch(self, cursor: str | None) -> FetchResult:
        offset = self.cursor_position(cursor)

        try:
            page = self._client.dataset(self._dataset_id).list_items(
                offset=offset,
                limit=self.page_size,
                clean=True,
            )
        except Exception as e:
            raise classify_apify_exception(
                e, context=f"reading dataset items ({self._dataset_id})"
            ) from e

        items = list(getattr(page, "items", None) or [])
        records: list[HashtagRecord] = []
        for item in items:
            if isinstance(item, Mapping):
                records.extend(records_from_apify_item(item))
            else:
                records.append(HashtagRecord(tag=""))

        if not items:
            return FetchResult(records=[], next_cursor=cursor, full_page=False)

        return FetchResult(
            records=records,
            next_cursor=str(offset + len(items)),
            full_page=len(items) >= self.page_size,
        )

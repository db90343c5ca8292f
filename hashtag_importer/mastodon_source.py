from __future__ import annotations

from typing import Any, Mapping, Sequence

import requests

from .errors import FatalError, TransientError
from .rate_limit import RateLimiter
from .records import HashtagRecord
from .source import FetchResult, offset_position
from .versions import user_agent

# The hashtag timeline endpoint refuses larger pages.
MAX_PAGE_SIZE = 40
REQUEST_TIMEOUT_SECONDS = 20.0

_RETRYABLE_STATUS = (408, 425, 429)


def base_url(endpoint: str) -> str:
    e = (endpoint or "").strip().rstrip("/")
    if not e:
        raise ValueError("endpoint must be non-empty")
    if "://" not in e:
        e = f"https://{e}"
    return e


def _parse_retry_after(headers: Mapping[str, Any] | None) -> float | None:
    if not headers:
        return None
    val = headers.get("Retry-After")
    if val is None:
        return None
    try:
        return float(str(val).strip())
    except ValueError:
        return None


def _body_excerpt(response: requests.Response, *, limit: int = 500) -> str:
    try:
        text = response.text or ""
    except (UnicodeError, LookupError):
        return "<unreadable body>"
    text = text.strip()
    if len(text) > limit:
        return text[: limit - 1] + "…"
    return text


def _status_max_id(statuses: Sequence[Mapping[str, Any]]) -> int | None:
    best: int | None = None
    for s in statuses:
        raw = s.get("id")
        try:
            sid = int(str(raw))
        except (TypeError, ValueError):
            continue
        if best is None or sid > best:
            best = sid
    return best


class MastodonHashtagSource:
    """
    Reads a Mastodon hashtag timeline forward from a status id.

    The cursor is the highest status id already imported; each page asks for statuses
    strictly newer than it via `min_id`. Every tag on every status becomes one record.
    """

    def __init__(
        self,
        endpoint: str,
        hashtag: str,
        *,
        token: str | None = None,
        any_hashtags: Sequence[str] = (),
        page_size: int = MAX_PAGE_SIZE,
        session: requests.Session | None = None,
        rate_limiter: RateLimiter | None = None,
        timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        tag = (hashtag or "").strip().lstrip("#")
        if not tag:
            raise ValueError("hashtag must be non-empty")
        if page_size <= 0:
            raise ValueError("page_size must be positive")

        self._url = f"{base_url(endpoint)}/api/v1/timelines/tag/{tag}"
        self._any = [a.strip().lstrip("#") for a in any_hashtags if (a or "").strip()]
        self.page_size = min(int(page_size), MAX_PAGE_SIZE)
        self._timeout = float(timeout_seconds)
        self._limiter = rate_limiter

        self._session = session or requests.Session()
        self._session.headers["User-Agent"] = user_agent()
        if token:
            self._session.headers["Authorization"] = f"Bearer {token}"

    @property
    def url(self) -> str:
        return self._url

    def cursor_position(self, cursor: str | None) -> int:
        return offset_position(cursor)

    def _params(self, cursor: str | None) -> list[tuple[str, str]]:
        params: list[tuple[str, str]] = [("limit", str(self.page_size))]
        params.extend(("any[]", a) for a in self._any)
        if cursor is not None:
            params.append(("min_id", str(cursor)))
        return params

    def _get(self, cursor: str | None) -> requests.Response:
        if self._limiter is not None and not self._limiter.wait():
            raise TransientError(
                f"Request to {self._url} abandoned while waiting for the rate limit",
                reason="interrupted",
            )

        try:
            response = self._session.get(
                self._url,
                params=self._params(cursor),
                timeout=self._timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientError(
                f"Hashtag timeline request failed ({self._url}): {e}",
                reason="network_error",
            ) from e
        except requests.RequestException as e:
            raise FatalError(f"Hashtag timeline request rejected ({self._url}): {e}") from e

        code = int(response.status_code)
        if code < 400:
            return response

        detail = f"Got response {code} from {self._url}: {_body_excerpt(response)}"
        if code in _RETRYABLE_STATUS or code >= 500:
            raise TransientError(
                detail,
                reason=f"http_{code}",
                retry_after_seconds=_parse_retry_after(response.headers),
            )
        raise FatalError(detail, reason=f"http_{code}")

    def fetch(self, cursor: str | None) -> FetchResult:
        # Validates the cursor before any request goes out.
        self.cursor_position(cursor)

        response = self._get(cursor)
        try:
            payload = response.json()
        except ValueError as e:
            raise FatalError(
                f"Hashtag timeline body is not valid JSON ({self._url})", reason="schema"
            ) from e

        if not isinstance(payload, list):
            raise FatalError(
                f"Hashtag timeline body is not a list ({self._url})", reason="schema"
            )

        statuses = [s for s in payload if isinstance(s, Mapping)]
        records: list[HashtagRecord] = []
        for s in statuses:
            sid = str(s.get("id") or "").strip()
            created_at = s.get("created_at")
            tags = s.get("tags")
            if not isinstance(tags, list):
                continue
            for t in tags:
                name = t.get("name") if isinstance(t, Mapping) else None
                records.append(
                    HashtagRecord(
                        tag=name if isinstance(name, str) else "",
                        metric=1,
                        observed_at=created_at,
                        source_id=f"{sid}:{name}" if sid else None,
                    )
                )

        max_id = _status_max_id(statuses)
        next_cursor = cursor
        if max_id is not None and max_id > self.cursor_position(cursor):
            next_cursor = str(max_id)

        return FetchResult(
            records=records,
            next_cursor=next_cursor,
            full_page=len(payload) >= self.page_size,
        )

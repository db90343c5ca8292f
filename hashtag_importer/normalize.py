from __future__ import annotations

import unicodedata
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

from .records import HashtagEntity, HashtagRecord

# Largest value the store can hold (signed 64-bit).
MAX_METRIC = 2**63 - 1


@dataclass(frozen=True)
class NormalizeResult:
    entities: Sequence[HashtagEntity]
    dropped: int = 0
    drop_reasons: Mapping[str, int] = field(default_factory=dict)


class _Dropped(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def _coerce_str(value: Any) -> str | None:
    if isinstance(value, str):
        s = value.strip()
        return s if s else None
    return None


def _coerce_id(value: Any) -> str | None:
    if isinstance(value, str):
        v = value.strip()
        return v if v else None
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def _first_present(item: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for k in keys:
        if k in item and item[k] is not None:
            return item[k]
    return None


def _is_tag_char(ch: str) -> bool:
    if ch == "_":
        return True
    cat = unicodedata.category(ch)
    return cat.startswith("L") or cat == "Nd"


def canonical_tag(text: str) -> str:
    """
    Canonical (dedup key) form of a hashtag.

    Diacritics are removed, case is folded, and anything outside letters, digits and
    underscore is stripped. Returns "" when nothing usable is left.
    """
    if not isinstance(text, str):
        return ""

    decomposed = unicodedata.normalize("NFKD", text)
    without_marks = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    folded = without_marks.casefold().strip()
    if folded.startswith("#"):
        folded = folded[1:]

    return "".join(ch for ch in folded if _is_tag_char(ch))


def _coerce_metric(value: Any) -> int:
    if value is None:
        return 1
    if isinstance(value, bool):
        raise _Dropped("invalid_metric")
    if isinstance(value, int):
        n = value
    elif isinstance(value, float):
        if not value.is_integer():
            raise _Dropped("invalid_metric")
        n = int(value)
    elif isinstance(value, str) and value.strip().isdecimal():
        try:
            n = int(value.strip())
        except ValueError as e:
            # Longer than int() accepts.
            raise _Dropped("invalid_metric") from e
    else:
        raise _Dropped("invalid_metric")

    if n < 0 or n > MAX_METRIC:
        raise _Dropped("invalid_metric")
    return n


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse an ISO-8601 string, epoch seconds, or datetime into an aware UTC datetime.

    Returns None for a missing value and raises ValueError for one that cannot be parsed.
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, bool):
        raise ValueError("boolean is not a timestamp")
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(float(value), tz=timezone.utc)
    elif isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        if s.endswith("Z") or s.endswith("z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    else:
        raise ValueError(f"unsupported timestamp type: {type(value).__name__}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def record_from_item(item: Mapping[str, Any]) -> HashtagRecord:
    """
    Best-effort extraction of a raw hashtag record from a source item.

    Tolerates the common field name variants; validation happens in `normalize`.
    """
    tag = _coerce_str(_first_present(item, ("tag", "hashtag", "name", "text"))) or ""
    metric = _first_present(item, ("count", "metric", "postsCount", "uses"))
    observed_at = _first_present(
        item, ("observed_at", "timestamp", "created_at", "createdAt", "date")
    )
    source_id = _coerce_id(_first_present(item, ("id", "source_id", "sourceId")))

    return HashtagRecord(
        tag=tag,
        metric=metric,
        observed_at=observed_at,
        source_id=source_id,
    )


def normalize(
    records: Iterable[HashtagRecord],
    *,
    default_observed_at: datetime,
) -> NormalizeResult:
    """
    Canonicalize and merge raw records into one entity per canonical tag.

    Malformed records are dropped and counted by reason; this never fails the batch.
    Entities come back sorted by tag so the input order does not matter.
    """
    default_ts = parse_timestamp(default_observed_at)
    if default_ts is None:
        raise ValueError("default_observed_at is required")

    merged: dict[str, HashtagEntity] = {}
    reasons: Counter[str] = Counter()

    for rec in records:
        try:
            tag = canonical_tag(rec.tag)
            if not tag:
                raise _Dropped("empty_tag")

            metric = _coerce_metric(rec.metric)

            try:
                observed = parse_timestamp(rec.observed_at)
            except (ValueError, OverflowError, OSError) as e:
                raise _Dropped("invalid_timestamp") from e
            if observed is None:
                observed = default_ts
        except _Dropped as d:
            reasons[d.reason] += 1
            continue

        prev = merged.get(tag)
        if prev is None:
            merged[tag] = HashtagEntity(
                tag=tag,
                metric=metric,
                first_seen=observed,
                last_seen=observed,
            )
            continue

        merged[tag] = HashtagEntity(
            tag=tag,
            metric=prev.metric + metric,
            first_seen=min(prev.first_seen, observed),
            last_seen=max(prev.last_seen, observed),
        )

    entities = [merged[k] for k in sorted(merged)]
    return NormalizeResult(
        entities=entities,
        dropped=sum(reasons.values()),
        drop_reasons=dict(reasons),
    )

from __future__ import annotations

from typing import Any, Mapping

from .pump import STATUS_FATAL, STATUS_SHUTDOWN, PumpResult


def build_summary(result: PumpResult) -> dict[str, Any]:
    """Final run summary, printed on exit and stored with the run record."""
    st = result.state
    status = (result.status or "").strip() or "unknown"

    if status == STATUS_SHUTDOWN:
        headline = "Importer stopped after a shutdown request."
    elif status == STATUS_FATAL:
        headline = f"Importer halted on a fatal error: {result.error}"
    else:
        headline = f"Importer stopped with status={status}."

    return {
        "status": status,
        "summary": headline,
        "cycles": int(st.cycles),
        "records_processed": int(st.records_fetched),
        "entities_written": int(st.entities_written),
        "dropped": int(st.dropped),
        "drop_reasons": dict(sorted(st.drop_reasons.items())),
        "last_cursor": st.cursor,
        "cursor_version": int(st.cursor_version),
        "last_success_at": st.last_success_at.isoformat() if st.last_success_at else None,
        "error": result.error,
    }


def format_summary(summary: Mapping[str, Any]) -> str:
    keys = (
        "status",
        "cycles",
        "records_processed",
        "entities_written",
        "dropped",
        "last_cursor",
        "cursor_version",
        "last_success_at",
    )
    lines = [f"{k}={'' if summary.get(k) is None else summary.get(k)}" for k in keys]

    error = summary.get("error")
    if error:
        lines.append(f"error={error}")
    return "\n".join(lines)

"""JSONL journal of poll events, one file per UTC day."""

from __future__ import annotations

import json
import threading
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

EVENT_TYPES = (
    "poll_start",
    "evaluation",
    "trade_created",
    "swap_result",
    "risk_block",
    "poll_end",
    "stale_pending",
    "error",
)


class JournalStore:
    """Append-only record of what each poll saw and did.

    Payloads carry `user_id`, which is what `load_recent` filters on.
    """

    def __init__(self, journal_dir: Path) -> None:
        self._journal_dir = journal_dir
        self._journal_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def append(self, event_type: str, payload: dict[str, Any]) -> None:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"unsupported_event_type: {event_type}")
        now = datetime.now(timezone.utc)
        line = json.dumps(
            {"timestamp": now.isoformat(), "event_type": event_type, "payload": payload},
            ensure_ascii=True,
            default=str,
        )
        with self._lock, self._day_file(now.date()).open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    def load_recent(
        self,
        limit: int,
        *,
        event_type: str | None = None,
        user_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Newest `limit` matching events, returned oldest first."""
        if limit <= 0:
            return []

        newest_first: list[dict[str, Any]] = []
        for day_file in sorted(self._journal_dir.glob("*.jsonl"), reverse=True):
            for line in reversed(day_file.read_text(encoding="utf-8").splitlines()):
                if not line.strip():
                    continue
                event = json.loads(line)
                if event_type is not None and event.get("event_type") != event_type:
                    continue
                if user_id is not None and event.get("payload", {}).get("user_id") != user_id:
                    continue
                newest_first.append(event)
                if len(newest_first) >= limit:
                    return newest_first[::-1]
        return newest_first[::-1]

    def _day_file(self, day: date) -> Path:
        return self._journal_dir / f"{day.isoformat()}.jsonl"

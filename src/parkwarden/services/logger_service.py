from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from parkwarden.storage import MessagePackStore

MAX_LOG_ROWS = 2000

LogListener = Callable[[dict[str, object]], None]


class LoggerService:
    """Event log kept in the store, echoed to stdout and appended to a plain log file.

    Rows look like ``{"ts": iso8601, "event": "supervisor.server_down", "data": {...}}``.
    Listeners get every row; a failing listener never blocks the others.
    """

    def __init__(self, store: MessagePackStore, log_file: Path | None = None) -> None:
        self.store = store
        self.log_file = log_file
        self._listeners: list[LogListener] = []

    def subscribe(self, listener: LogListener) -> None:
        self._listeners.append(listener)

    def log(self, event: str, **data: object) -> None:
        now = datetime.now(tz=timezone.utc)
        row = {"ts": now.isoformat(), "event": event, "data": data}
        logs = self.store.data.setdefault("logs", [])
        logs.append(row)
        if len(logs) > MAX_LOG_ROWS:
            del logs[: len(logs) - MAX_LOG_ROWS]
        self.store.touch()
        line = format_log_line(now, event, data)
        print(line)
        self._append_to_file(line)
        for listener in self._listeners:
            try:
                listener(row)
            except Exception:  # noqa: BLE001
                continue

    def recent(self, prefix: str = "", limit: int = 20) -> list[dict[str, object]]:
        rows = [row for row in self.store.data.get("logs", []) if str(row.get("event", "")).startswith(prefix)]
        return rows[-limit:]

    def _append_to_file(self, line: str) -> None:
        if self.log_file is None:
            return
        try:
            with self.log_file.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as exc:
            print(f"[parkwarden] cannot write {self.log_file}: {exc}")


def format_log_line(ts: datetime, event: str, data: dict[str, object]) -> str:
    fields = " ".join(f"{key}={value}" for key, value in data.items())
    stamp = ts.strftime("%Y-%m-%d %H:%M:%S")
    return f"[{stamp}] {event} {fields}".rstrip()

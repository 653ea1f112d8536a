from __future__ import annotations

import contextlib
import json
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterator


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class EventLog:
    """
    Structured JSON logging for the token vending machine.

    One instance lives for the whole Lambda process and is handed to every
    component that logs. Each request produces one wide event; components add
    standalone warning/error lines for anomalies they swallow.

    Never put credential material, passwords, password hashes or device keys
    into an event.
    """

    def __init__(self, *, schema_version: str, sink: Callable[[str], None] = print) -> None:
        self.schema_version = schema_version
        self._sink = sink

    def emit(self, event: dict[str, Any]) -> None:
        payload = {"schema_version": self.schema_version, **event}
        self._sink(json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))

    def _line(self, level: str, name: str, fields: dict[str, Any]) -> None:
        self.emit({"event": name, "level": level, "ts": _now_iso(), **fields})

    def info(self, name: str, **fields: Any) -> None:
        self._line("info", name, fields)

    def warning(self, name: str, **fields: Any) -> None:
        self._line("warning", name, fields)

    def error(self, name: str, exc: BaseException | None = None, **fields: Any) -> None:
        if exc is not None:
            fields["error"] = {"type": type(exc).__name__, "message": str(exc)}
        self._line("error", name, fields)

    @contextlib.contextmanager
    def request(self, name: str, *, request_id: str) -> Iterator[dict[str, Any]]:
        start = time.time()
        wide_event: dict[str, Any] = {
            "event": name,
            "request_id": request_id,
            "ts": _now_iso(),
        }
        try:
            yield wide_event
        finally:
            wide_event["duration_ms"] = int((time.time() - start) * 1000)
            self.emit(wide_event)

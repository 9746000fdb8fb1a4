from __future__ import annotations

import json
import logging
import os
import threading
import time
from typing import Any, Dict, List, Optional

LOG = logging.getLogger(__name__)

STATUS_EVENT = "job.status"

_EVENTS: List[Dict[str, Any]] = []
_LOCK = threading.Lock()


def emit_event(name: str, payload: Optional[Dict[str, Any]] = None) -> None:
    """Record a pipeline event in-process and optionally append it to a JSON-lines file.

    Stage transitions, per-item completions and failures are all emitted
    here. Set ``UGC_TELEMETRY_LOG`` to persist them; tests read them back
    with `get_events()`.
    """
    ev: Dict[str, Any] = {"name": name, "payload": payload or {}, "ts": time.time()}
    with _LOCK:
        _EVENTS.append(ev)
    log_path = os.environ.get("UGC_TELEMETRY_LOG")
    if log_path:
        try:
            with open(log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(ev, default=str) + "\n")
        except OSError:
            LOG.debug("Could not append telemetry event to %s", log_path, exc_info=True)


def get_events(name: Optional[str] = None) -> List[Dict[str, Any]]:
    """Return a copy of recorded events, optionally filtered by name."""
    with _LOCK:
        events = list(_EVENTS)
    if name is None:
        return events
    return [ev for ev in events if ev["name"] == name]


def status_history(job_id: str) -> List[str]:
    """Statuses a job was moved through, in emission order."""
    return [
        ev["payload"].get("status")
        for ev in get_events(STATUS_EVENT)
        if ev["payload"].get("job_id") == job_id
    ]


def clear_events() -> None:
    with _LOCK:
        _EVENTS.clear()


__all__ = ["STATUS_EVENT", "emit_event", "get_events", "status_history", "clear_events"]

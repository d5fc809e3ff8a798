"""
Run event log (NDJSON) and the human-readable run log sink.
"""

import json
import re
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

from .state import get_run_dir

SECRETISH = re.compile(r"(?i)(secret|token|password|apikey|api_key)")


def emit_event(run_id: str, event_type: str, data: Dict[str, Any]) -> None:
    """
    Append an event to the run's events.ndjson file.
    
    Args:
        run_id: Run ID
        event_type: Event type (e.g., "INIT", "PUSH_START", "ERROR")
        data: Event data
    """
    events_file = get_run_dir(run_id) / "events.ndjson"
    
    event = {
        "ts": datetime.now().isoformat(),
        "type": event_type,
        "data": data
    }
    
    with open(events_file, "a") as f:
        f.write(json.dumps(event, default=str) + "\n")
        f.flush()


def read_events(run_id: str) -> List[Dict[str, Any]]:
    """
    Read all events from a run's events.ndjson file.
    
    Args:
        run_id: Run ID
        
    Returns:
        List of events
    """
    events_file = get_run_dir(run_id) / "events.ndjson"
    
    if not events_file.exists():
        return []
    
    events = []
    with open(events_file, "r") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue  # Skip malformed lines
    
    return events


def get_status_from_events(run_id: str) -> str:
    """
    Derive a coarse run status from the last meaningful event.
    
    Args:
        run_id: Run ID
        
    Returns:
        Status string
    """
    events = [e for e in read_events(run_id) if e.get("type") != EventTypes.LINE]
    if not events:
        return "unknown"
    
    last = events[-1]
    event_type = last.get("type", "")
    
    if event_type == EventTypes.DONE:
        return "succeeded" if last.get("data", {}).get("success") else "failed"
    
    status_map = {
        EventTypes.INIT: "queued",
        EventTypes.CONNECT: "connecting",
        EventTypes.SERVICES_LISTED: "reconciling",
        EventTypes.SERVICE_CREATE: "reconciling",
        EventTypes.SERVICE_DELETE: "reconciling",
        EventTypes.SERVICE_SKIP: "reconciling",
        EventTypes.STAGED: "staging",
        EventTypes.MANIFESTS_RESOLVED: "resolving",
        EventTypes.PUSH_START: "pushing",
        EventTypes.PUSH_OK: "pushing",
        EventTypes.PUSH_FAILED: "pushing",
        EventTypes.APP_LOG: "pushing",
        EventTypes.ROUTES: "pushing",
        EventTypes.ROUTES_FAILED: "pushing",
        EventTypes.CLEANUP: "cleanup",
        EventTypes.ERROR: "failed",
    }
    
    return status_map.get(event_type, "unknown")


def tail_events(run_id: str, follow: bool = False, poll_interval: float = 0.1) -> Iterator[Dict[str, Any]]:
    """
    Generator that yields events as they're written.
    
    Args:
        run_id: Run ID
        follow: If True, keep watching until a DONE event arrives
        poll_interval: Seconds between file size checks
        
    Yields:
        Event dictionaries
    """
    events_file = get_run_dir(run_id) / "events.ndjson"
    
    if not events_file.exists():
        return
    
    position = 0
    while True:
        try:
            with open(events_file, "r") as f:
                f.seek(position)
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        event = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    yield event
                    if event.get("type") == EventTypes.DONE:
                        return
                position = f.tell()
        except FileNotFoundError:
            return
        
        if not follow:
            return
        time.sleep(poll_interval)


def redact_env(env: Dict[str, str]) -> Dict[str, str]:
    """Mask values of environment variables whose names look secret."""
    return {k: ("[REDACTED]" if SECRETISH.search(k) else v) for k, v in env.items()}


class RunLog:
    """
    Line-oriented log sink for one orchestration run.
    
    Lines go to ``echo`` (the operator's stream) and, when the run has an
    on-disk directory, are mirrored into its event log together with the
    structured events.
    """
    
    def __init__(self, run_id: Optional[str] = None, echo: Optional[Callable[[str], None]] = None):
        self.run_id = run_id
        self._echo = echo
        self.lines: List[str] = []
    
    def line(self, text: str) -> None:
        self.lines.append(text)
        if self._echo is not None:
            self._echo(text)
        if self.run_id:
            emit_event(self.run_id, EventTypes.LINE, {"text": text})
    
    def event(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        if self.run_id:
            emit_event(self.run_id, event_type, data or {})


class EventTypes:
    INIT = "INIT"
    CONNECT = "CONNECT"
    SERVICES_LISTED = "SERVICES_LISTED"
    SERVICE_CREATE = "SERVICE_CREATE"
    SERVICE_DELETE = "SERVICE_DELETE"
    SERVICE_SKIP = "SERVICE_SKIP"
    STAGED = "STAGED"
    MANIFESTS_RESOLVED = "MANIFESTS_RESOLVED"
    PUSH_START = "PUSH_START"
    PUSH_OK = "PUSH_OK"
    PUSH_FAILED = "PUSH_FAILED"
    APP_LOG = "APP_LOG"
    ROUTES = "ROUTES"
    ROUTES_FAILED = "ROUTES_FAILED"
    CLEANUP = "CLEANUP"
    ERROR = "ERROR"
    DONE = "DONE"
    LINE = "LINE"

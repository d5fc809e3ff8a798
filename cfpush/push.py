"""
Pushes resolved manifests and surfaces their logs and routes.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .errors import DeployError, ErrorKind
from .events import EventTypes, RunLog
from .manifest import ResolvedManifest
from .platform.base import PlatformClient

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1
ABORT_GRACE = 10.0


@dataclass
class PushOutcome:
    app_name: Optional[str]
    succeeded: bool = False
    discovered_routes: List[str] = field(default_factory=list)
    error: Optional[DeployError] = None
    route_error: Optional[str] = None
    log_error: Optional[str] = None

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "app_name": self.app_name,
            "succeeded": self.succeeded,
            "discovered_routes": self.discovered_routes,
            "error": self.error.to_dict() if self.error else None,
            "route_error": self.route_error,
            "log_error": self.log_error,
        }


def call_with_timeout(fn: Callable[[], Any], timeout: float, what: str,
                      cancel_event: Optional[threading.Event] = None,
                      timeout_kind: ErrorKind = ErrorKind.PUSH_TIMEOUT,
                      abort: Optional[Callable[[], None]] = None) -> Any:
    """
    Run ``fn`` on a daemon worker thread and wait at most ``timeout`` seconds.

    On cancellation or Ctrl-C, ``abort`` is invoked to stop the call in
    flight. Whenever the wait ends early the worker is given ``ABORT_GRACE``
    seconds to wind down before the error is raised; a call that enforces
    its own deadline is expected to give up on timeout by itself.

    Raises:
        DeployError: ``timeout_kind`` when the budget runs out, INTERRUPTED
            when ``cancel_event`` is set or the wait is interrupted;
            otherwise whatever ``fn`` raised
    """
    outcome: Dict[str, Any] = {}
    done = threading.Event()

    def runner():
        try:
            outcome["value"] = fn()
        except BaseException as e:
            outcome["error"] = e
        finally:
            done.set()

    def stop(error: DeployError) -> DeployError:
        if abort is not None and error.kind is ErrorKind.INTERRUPTED:
            abort()
        worker.join(ABORT_GRACE)
        if worker.is_alive():
            logger.warning(f"{what} still running {ABORT_GRACE}s after it was aborted")
        return error

    worker = threading.Thread(target=runner, name=f"cfpush-{what}", daemon=True)
    worker.start()

    deadline = time.monotonic() + timeout
    try:
        while not done.is_set():
            if cancel_event is not None and cancel_event.is_set():
                raise stop(DeployError(ErrorKind.INTERRUPTED, f"{what} interrupted"))
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise stop(DeployError(timeout_kind, f"{what} did not finish within {timeout}s"))
            done.wait(min(POLL_INTERVAL, remaining))
    except KeyboardInterrupt:
        raise stop(DeployError(ErrorKind.INTERRUPTED, f"{what} interrupted"))

    error = outcome.get("error")
    if isinstance(error, KeyboardInterrupt):
        raise DeployError(ErrorKind.INTERRUPTED, f"{what} interrupted")
    if error is not None:
        raise error
    return outcome.get("value")


def _is_interrupt(error: Exception) -> bool:
    return isinstance(error, DeployError) and error.kind is ErrorKind.INTERRUPTED


class PushExecutor:
    """
    Pushes each manifest under a per-manifest time budget.

    A failed push does not stop the remaining manifests; cancellation does.
    """

    def __init__(self, client: PlatformClient, timeout: float, log: Optional[RunLog] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.client = client
        self.timeout = timeout
        self.log = log or RunLog()
        self.cancel_event = cancel_event
        self.interrupted: Optional[DeployError] = None
        self.outcomes: List[PushOutcome] = []

    def push_all(self, manifests: List[ResolvedManifest]) -> List[PushOutcome]:
        """
        Push every manifest in order.

        Outcomes gathered so far stay on ``self.outcomes`` when the run is
        cancelled or interrupted part way.
        """
        for manifest in manifests:
            if self.cancel_event is not None and self.cancel_event.is_set():
                self.interrupted = DeployError(ErrorKind.INTERRUPTED, "Run cancelled before pushing remaining applications")
            if self.interrupted is not None:
                break
            try:
                self.outcomes.append(self.push_one(manifest))
            except KeyboardInterrupt:
                self.client.cancel()
                self.interrupted = DeployError(ErrorKind.INTERRUPTED, f"Push of {manifest.name} interrupted")
                self.log.line(self.interrupted.describe())
        return self.outcomes

    def push_one(self, manifest: ResolvedManifest) -> PushOutcome:
        name = manifest.name
        outcome = PushOutcome(app_name=name)
        self.log.line(f"Pushing {name} ({manifest.summary()})")
        self.log.event(EventTypes.PUSH_START, {"app": name})

        try:
            call_with_timeout(lambda: self.client.push_manifest(manifest, timeout=self.timeout),
                              self.timeout, f"push of {name}", self.cancel_event,
                              abort=self.client.cancel)
            outcome.succeeded = True
            self.log.event(EventTypes.PUSH_OK, {"app": name})
        except DeployError as e:
            outcome.error = e
        except Exception as e:
            logger.exception(f"Push of {name} raised an unexpected error")
            outcome.error = DeployError(ErrorKind.PUSH_FAILED, f"Push of {name} failed: {e}")

        if outcome.error is not None:
            self.log.line(outcome.error.describe())
            self.log.event(EventTypes.PUSH_FAILED, {"app": name, **outcome.error.to_dict()})
            if outcome.error.kind is ErrorKind.INTERRUPTED:
                self.interrupted = outcome.error
                return outcome

        try:
            self._print_recent_logs(name, outcome)
            if outcome.succeeded and not manifest.no_route:
                self._discover_routes(name, outcome)
        except DeployError as e:
            self.interrupted = e
            self.log.line(e.describe())

        return outcome

    def _print_recent_logs(self, name: Optional[str], outcome: PushOutcome) -> None:
        try:
            lines = call_with_timeout(lambda: list(self.client.fetch_recent_logs(name, timeout=self.timeout)),
                                      self.timeout, f"log fetch for {name}", self.cancel_event,
                                      abort=self.client.cancel)
        except Exception as e:
            if _is_interrupt(e):
                raise
            self._log_fetch_failed(name, outcome, e)
            return
        for line in lines:
            self.log.line(line)
        self.log.event(EventTypes.APP_LOG, {"app": name, "count": len(lines)})

    def _discover_routes(self, name: Optional[str], outcome: PushOutcome) -> None:
        try:
            routes = call_with_timeout(lambda: list(self.client.list_routes(name, timeout=self.timeout)),
                                       self.timeout, f"route lookup for {name}", self.cancel_event,
                                       abort=self.client.cancel)
        except Exception as e:
            if _is_interrupt(e):
                raise
            self._route_lookup_failed(name, outcome, e)
            return
        outcome.discovered_routes = routes
        for route in routes:
            self.log.line(f"Application {name} is available at {route}")
        self.log.event(EventTypes.ROUTES, {"app": name, "routes": routes})

    def _log_fetch_failed(self, name: Optional[str], outcome: PushOutcome, error: Exception) -> None:
        outcome.log_error = str(error)
        logger.warning(f"Could not fetch recent logs for {name}: {error}")
        self.log.line(f"WARNING: could not fetch recent logs for {name}: {error}")

    def _route_lookup_failed(self, name: Optional[str], outcome: PushOutcome, error: Exception) -> None:
        outcome.route_error = str(error)
        logger.warning(f"Route lookup for {name} failed: {error}")
        self.log.line(f"WARNING: route lookup for {name} failed: {error}")
        self.log.event(EventTypes.ROUTES_FAILED, {"app": name, "error": str(error)})

"""
Main orchestrator for a deployment run.

Sequence: resolve connection -> reconcile services -> stage artifact ->
resolve manifests -> push each -> clean up staged artifact.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import DeployConfig
from .connection import ConnectionFactory, ProxyPolicy
from .credentials import CredentialStore, default_store, require_credentials
from .endpoint import resolve_target
from .errors import DeployError, ErrorKind
from .events import EventTypes, RunLog
from .ids import new_run_id
from .manifest import InlineManifest, resolve_manifests
from .platform.base import ClientFactory, PlatformClient
from .push import PushExecutor, PushOutcome
from .services import reconcile_services
from .staging import ExecutionContext, StagedArtifact, stage_artifact
from .state import create_run_dir, write_result_json
from .tokens import BuildContext, TokenExpander

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    run_id: Optional[str]
    success: bool
    outcomes: List[PushOutcome] = field(default_factory=list)
    error: Optional[DeployError] = None
    skipped: bool = False

    @property
    def routes(self) -> List[str]:
        return [route for outcome in self.outcomes for route in outcome.discovered_routes]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "success": self.success,
            "skipped": self.skipped,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "routes": self.routes,
            "error": self.error.to_dict() if self.error else None,
        }


class Orchestrator:
    """
    Runs one deployment described by a DeployConfig.

    The orchestrator owns the connection handle, the staged artifact and the
    accumulated push outcomes for the duration of ``run``.
    """

    def __init__(self, config: DeployConfig, context: ExecutionContext, client_factory: ClientFactory,
                 credential_store: Optional[CredentialStore] = None,
                 proxy_policy: Optional[ProxyPolicy] = None,
                 build_context: Optional[BuildContext] = None,
                 log: Optional[RunLog] = None,
                 cancel_event: Optional[threading.Event] = None,
                 temp_root: Optional[Path] = None,
                 persist: bool = False):
        self.config = config
        self.context = context
        self.factory = ConnectionFactory(client_factory, proxy_policy)
        self.credential_store = credential_store or default_store()
        self.build_context = build_context or BuildContext.from_environ(context.workspace)
        self.cancel_event = cancel_event or threading.Event()
        self.temp_root = temp_root
        self._client: Optional[PlatformClient] = None

        self.run_id = new_run_id() if persist else None
        if self.run_id:
            create_run_dir(self.run_id)
        self.log = log or RunLog()
        if self.run_id and self.log.run_id is None:
            self.log.run_id = self.run_id

    def cancel(self) -> None:
        """
        Request cancellation; the current step fails with INTERRUPTED.

        Safe to call from a signal handler or another thread. A platform call
        in flight is aborted as well.
        """
        self.cancel_event.set()
        client = self._client
        if client is not None:
            client.cancel()

    def _check_cancelled(self, step: str) -> None:
        if self.cancel_event.is_set():
            raise DeployError(ErrorKind.INTERRUPTED, f"Run cancelled before {step}")

    def run(self) -> RunResult:
        log = self.log
        config = self.config
        expander = TokenExpander(self.build_context)
        staged: Optional[StagedArtifact] = None
        client: Optional[PlatformClient] = None
        executor: Optional[PushExecutor] = None
        error: Optional[DeployError] = None

        log.line("Cloud Foundry push:")
        log.event(EventTypes.INIT, {
            "target": config.target,
            "organization": config.organization,
            "space": config.space,
            "timeout": config.timeout,
            "services": [s.name for s in config.services],
            "manifest": config.manifest.value,
        })

        try:
            endpoint = resolve_target(config.target)
            credentials = require_credentials(self.credential_store, config.credentials_id, config.target)
            handle = self.factory.connect(endpoint, credentials, config.self_signed,
                                          config.organization, config.space)
            client = self.factory.client(handle)
            self._client = client
            if self.cancel_event.is_set():
                client.cancel()
            log.event(EventTypes.CONNECT, {"api": endpoint.base_url, "proxy": handle.proxy.url if handle.proxy else None})

            self._check_cancelled("service reconciliation")
            reconcile_services(client, config.service_requests(), log=log)

            self._check_cancelled("staging")
            source = config.manifest.to_source()
            sub_path = None
            if isinstance(source, InlineManifest) and source.path and source.path.strip():
                sub_path = expander.expand(source.path)
            staged = stage_artifact(self.context, sub_path, log=log, temp_root=self.temp_root)

            self._check_cancelled("manifest resolution")
            manifests = resolve_manifests(source, staged.path, expander,
                                          path_is_rooted=staged.transferred and sub_path is not None)
            log.event(EventTypes.MANIFESTS_RESOLVED, {"apps": [m.name for m in manifests]})

            self._check_cancelled("push")
            executor = PushExecutor(client, config.timeout, log, self.cancel_event)
            executor.push_all(manifests)
            if executor.interrupted is not None:
                error = executor.interrupted
        except DeployError as e:
            error = e
        except KeyboardInterrupt:
            error = DeployError(ErrorKind.INTERRUPTED, "Run interrupted")
        except Exception as e:
            logger.exception("Unexpected failure during deployment run")
            error = DeployError(ErrorKind.PLATFORM_API_ERROR, f"Unexpected error: {e}")
        finally:
            if staged is not None and staged.transferred:
                staged.cleanup()
                log.event(EventTypes.CLEANUP, {"staging": "removed"})
            if client is not None:
                self._client = None
                client.close()

        outcomes: List[PushOutcome] = list(executor.outcomes) if executor is not None else []
        if error is not None:
            log.line(error.describe())
            log.event(EventTypes.ERROR, error.to_dict())

        failed = [o for o in outcomes if not o.succeeded]
        success = error is None and not failed
        if failed and error is None:
            log.line(f"ERROR: {len(failed)} of {len(outcomes)} application(s) failed to push: "
                     f"{', '.join(str(o.app_name) for o in failed)}")

        result = RunResult(run_id=self.run_id, success=success, outcomes=outcomes, error=error)
        log.event(EventTypes.DONE, {"success": success})
        if self.run_id:
            write_result_json(self.run_id, result.to_dict())
        return result

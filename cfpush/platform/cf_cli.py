"""
Platform client backed by the ``cf`` command-line tool.

Every client gets its own ``CF_HOME`` so concurrent runs never share login
or target state. The password is handed over through ``CF_PASSWORD`` and
never appears on a command line.
"""

import logging
import os
import re
import shutil
import subprocess
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..connection import ConnectionHandle, fetch_endpoint_info
from ..errors import DeployError, ErrorKind, PlatformApiError
from ..services import ServiceInventoryEntry
from .base import PlatformClient

logger = logging.getLogger(__name__)

TLS_MARKERS = ("x509", "certificate", "ssl validation", "tls:")
UNREACHABLE_MARKERS = ("no such host", "dial tcp", "connection refused", "i/o timeout",
                       "network is unreachable", "request error")
AUTH_MARKERS = ("credentials were rejected", "authentication has failed", "invalid_grant",
                "unauthorized", "bad credentials")
CF_CODE = re.compile(r"\b(CF-[A-Za-z]+)\b")
STATUS_CODE = re.compile(r"\b(?:status code|Status Code)[: ]+(\d{3})\b")

POLL_INTERVAL = 0.1
STOP_GRACE = 5.0


def classify_cf_output(output: str) -> ErrorKind:
    """Map cf CLI error output to an ErrorKind."""
    lowered = output.lower()
    if any(marker in lowered for marker in TLS_MARKERS):
        return ErrorKind.TLS_UNTRUSTED
    if any(marker in lowered for marker in UNREACHABLE_MARKERS):
        return ErrorKind.CONNECTION_UNREACHABLE
    if any(marker in lowered for marker in AUTH_MARKERS):
        return ErrorKind.AUTH_REJECTED
    return ErrorKind.PLATFORM_API_ERROR


def _tail(output: str, lines: int = 40) -> str:
    kept = [line for line in output.splitlines() if line.strip()]
    return "\n".join(kept[-lines:])


def _stop(process: subprocess.Popen) -> None:
    """Terminate a child, escalating to kill when it ignores SIGTERM."""
    process.terminate()
    try:
        process.communicate(timeout=STOP_GRACE)
    except subprocess.TimeoutExpired:
        process.kill()
        process.communicate()


class CfCliClient(PlatformClient):
    """Drives ``cf`` as a subprocess for one orchestration run."""

    def __init__(self, handle: ConnectionHandle, cf_binary: Optional[str] = None, home: Optional[Path] = None):
        self.handle = handle
        self.cf_binary = cf_binary or os.environ.get("CFPUSH_CF_BINARY", "cf")
        self._home = Path(home) if home else None
        self._owns_home = home is None
        self._logged_in = False
        self._cancelled = threading.Event()

    @property
    def home(self) -> Path:
        if self._home is None:
            self._home = Path(tempfile.mkdtemp(prefix="cfpush-cf-home-"))
        return self._home

    def _env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env["CF_HOME"] = str(self.home)
        env["CF_COLOR"] = "false"
        env.pop("CF_USERNAME", None)
        env.pop("CF_PASSWORD", None)
        for key in ("http_proxy", "https_proxy", "HTTP_PROXY", "HTTPS_PROXY"):
            env.pop(key, None)
        if self.handle.proxy is not None:
            env["https_proxy"] = self.handle.proxy.url
            env["http_proxy"] = self.handle.proxy.url
        return env

    def _run(self, args: List[str], timeout: Optional[float] = None,
             failure_kind: Optional[ErrorKind] = None,
             extra_env: Optional[Dict[str, str]] = None) -> subprocess.CompletedProcess:
        """
        Run one cf command.

        Args:
            args: Arguments after the binary name
            timeout: Seconds before the process is killed
            failure_kind: Kind for non-zero exits that are not connectivity
                or authentication problems (defaults to PLATFORM_API_ERROR)
            extra_env: Additional environment variables

        Returns:
            The completed process

        Raises:
            DeployError: on missing binary, timeout, cancellation or non-zero exit
        """
        if self._cancelled.is_set():
            raise DeployError(ErrorKind.INTERRUPTED, f"'cf {args[0]}' not started, client was cancelled")

        command = [self.cf_binary] + args
        env = self._env()
        if extra_env:
            env.update(extra_env)
        logger.debug(f"Running {' '.join(command)}")
        try:
            process = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                                       text=True, env=env)
        except FileNotFoundError:
            raise DeployError(ErrorKind.PLATFORM_API_ERROR,
                              f"cf CLI not found ({self.cf_binary}); set CFPUSH_CF_BINARY")

        deadline = time.monotonic() + timeout if timeout else None
        while True:
            try:
                stdout, stderr = process.communicate(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if self._cancelled.is_set():
                    _stop(process)
                    raise DeployError(ErrorKind.INTERRUPTED, f"'cf {args[0]}' was cancelled")
                if deadline is not None and time.monotonic() >= deadline:
                    _stop(process)
                    raise DeployError(ErrorKind.PUSH_TIMEOUT, f"'cf {args[0]}' did not finish within {timeout}s")

        result = subprocess.CompletedProcess(command, process.returncode, stdout, stderr)
        if result.returncode != 0:
            output = (result.stdout or "") + "\n" + (result.stderr or "")
            kind = classify_cf_output(output)
            if kind is ErrorKind.PLATFORM_API_ERROR and failure_kind is not None:
                kind = failure_kind
            code = CF_CODE.search(output)
            status = STATUS_CODE.search(output)
            raise PlatformApiError(
                f"'cf {args[0]}' failed with exit code {result.returncode}",
                status=int(status.group(1)) if status else None,
                code=code.group(1) if code else None,
                description=_tail(output),
                kind=kind,
            )
        return result

    def _ensure_login(self) -> None:
        if self._logged_in:
            return
        handle = self.handle
        api_args = ["api", handle.endpoint.base_url]
        if handle.self_signed:
            api_args.append("--skip-ssl-validation")
        self._run(api_args)

        if handle.credentials is None:
            raise DeployError(ErrorKind.CREDENTIALS_MISSING, "No credentials have been given.")
        self._run(["auth"], extra_env={
            "CF_USERNAME": handle.credentials.username,
            "CF_PASSWORD": handle.credentials.password,
        })

        target_args = ["target"]
        if handle.organization:
            target_args += ["-o", handle.organization]
        if handle.space:
            target_args += ["-s", handle.space]
        if len(target_args) > 1:
            self._run(target_args)
        self._logged_in = True

    def get_endpoint_info(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        return fetch_endpoint_info(self.handle, timeout)

    def list_service_instances(self) -> List[ServiceInventoryEntry]:
        self._ensure_login()
        result = self._run(["services"])
        return [ServiceInventoryEntry(name) for name in parse_services_table(result.stdout)]

    def create_service_instance(self, service_type: str, plan: str, name: str) -> None:
        self._ensure_login()
        self._run(["create-service", service_type, plan, name])

    def delete_service_instance(self, name: str) -> None:
        self._ensure_login()
        self._run(["delete-service", name, "-f"])

    def push_manifest(self, manifest, timeout: Optional[float] = None) -> None:
        if not manifest.name:
            raise DeployError(ErrorKind.MANIFEST_INVALID, "Application name is required to push")
        self._ensure_login()
        manifest_file = self.home / f"manifest-{manifest.name}.yml"
        with open(manifest_file, "w") as f:
            yaml.safe_dump(manifest.to_cf_dict(), f, default_flow_style=False, sort_keys=False)
        try:
            result = self._run(["push", "-f", str(manifest_file)], timeout=timeout,
                               failure_kind=ErrorKind.PUSH_FAILED)
        finally:
            manifest_file.unlink(missing_ok=True)
        for line in result.stdout.splitlines():
            logger.debug(f"[cf push {manifest.name}] {line}")

    def list_routes(self, app_name: str, timeout: Optional[float] = None) -> List[str]:
        self._ensure_login()
        result = self._run(["app", app_name], timeout=timeout)
        return parse_app_routes(result.stdout)

    def fetch_recent_logs(self, app_name: str, timeout: Optional[float] = None) -> List[str]:
        self._ensure_login()
        result = self._run(["logs", app_name, "--recent"], timeout=timeout)
        return [line for line in result.stdout.splitlines()
                if line.strip() and not line.startswith("Retrieving logs for app")]

    def cancel(self) -> None:
        self._cancelled.set()

    def close(self) -> None:
        if self._owns_home and self._home is not None:
            shutil.rmtree(self._home, ignore_errors=True)
            self._home = None
        self._logged_in = False
        self.handle.close()


def parse_services_table(output: str) -> List[str]:
    """Service instance names from ``cf services`` output."""
    names = []
    in_table = False
    for line in output.splitlines():
        if not in_table:
            if line.startswith("name ") or line.strip() == "name":
                in_table = True
            continue
        if not line.strip():
            continue
        names.append(line.split()[0])
    return names


def parse_app_routes(output: str) -> List[str]:
    """Routes listed on the ``routes:`` line of ``cf app`` output."""
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.startswith("routes:") or stripped.startswith("urls:"):
            value = stripped.split(":", 1)[1]
            return [r.strip() for r in value.split(",") if r.strip()]
    return []


def cf_cli_factory(handle: ConnectionHandle) -> PlatformClient:
    return CfCliClient(handle)

"""
Shared fixtures: an in-memory platform client and isolated run state.
"""

import threading
from typing import Dict, List, Optional

import pytest

from cfpush.errors import DeployError, ErrorKind, PlatformApiError
from cfpush.platform.base import PlatformClient
from cfpush.services import ServiceInventoryEntry


class FakePlatformClient(PlatformClient):
    """Records every call; failures and delays are configured per app or service."""

    def __init__(self, handle=None, services: Optional[List[str]] = None):
        self.handle = handle
        self.services: List[str] = list(services or [])
        self.calls: List[tuple] = []
        self.pushed: List = []
        self.routes: Dict[str, List[str]] = {}
        self.logs: Dict[str, List[str]] = {}
        self.push_failures: Dict[str, Exception] = {}
        self.push_delays: Dict[str, float] = {}
        self.route_failures: Dict[str, Exception] = {}
        self.log_failures: Dict[str, Exception] = {}
        self.create_failures: Dict[str, Exception] = {}
        self.list_failure: Optional[Exception] = None
        self.info: Dict = {"api_version": "2.150.0"}
        self.info_failure: Optional[Exception] = None
        self.closed = False
        self.cancelled = threading.Event()

    def get_endpoint_info(self, timeout=None):
        self.calls.append(("info",))
        if self.info_failure is not None:
            raise self.info_failure
        return dict(self.info)

    def list_service_instances(self):
        self.calls.append(("list_services",))
        if self.list_failure is not None:
            raise self.list_failure
        return [ServiceInventoryEntry(name) for name in self.services]

    def create_service_instance(self, service_type, plan, name):
        self.calls.append(("create", service_type, plan, name))
        if name in self.create_failures:
            raise self.create_failures[name]
        self.services.append(name)

    def delete_service_instance(self, name):
        self.calls.append(("delete", name))
        self.services.remove(name)

    def push_manifest(self, manifest, timeout=None):
        self.calls.append(("push", manifest.name))
        delay = self.push_delays.get(manifest.name)
        if delay and self.cancelled.wait(delay):
            raise DeployError(ErrorKind.INTERRUPTED, f"push of {manifest.name} aborted")
        if manifest.name in self.push_failures:
            raise self.push_failures[manifest.name]
        self.pushed.append(manifest)

    def list_routes(self, app_name, timeout=None):
        self.calls.append(("routes", app_name))
        if app_name in self.route_failures:
            raise self.route_failures[app_name]
        return self.routes.get(app_name, [])

    def fetch_recent_logs(self, app_name, timeout=None):
        self.calls.append(("logs", app_name))
        if app_name in self.log_failures:
            raise self.log_failures[app_name]
        return self.logs.get(app_name, [])

    def cancel(self):
        self.cancelled.set()

    def close(self):
        self.closed = True


def platform_error(message="boom", status=502, code="CF-Unknown"):
    return PlatformApiError(message, status=status, code=code, description="platform said no")


@pytest.fixture
def fake_client():
    return FakePlatformClient()


@pytest.fixture
def client_factory(fake_client):
    """A ClientFactory handing out ``fake_client`` and recording handles."""
    handles = []

    def factory(handle):
        handles.append(handle)
        fake_client.handle = handle
        return fake_client

    factory.handles = handles
    return factory


@pytest.fixture(autouse=True)
def cfpush_home(tmp_path, monkeypatch):
    home = tmp_path / "cfpush-home"
    monkeypatch.setenv("CFPUSH_HOME", str(home))
    return home


@pytest.fixture
def push_error():
    return DeployError(ErrorKind.PUSH_FAILED, "staging failed")

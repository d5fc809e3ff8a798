"""
Tests for the cf CLI platform client with subprocess.Popen patched out.
"""

import stat
import subprocess
import sys
import threading
import time
from unittest.mock import patch

import pytest
import yaml

from cfpush.connection import ConnectionHandle, ProxyDescriptor
from cfpush.credentials import Credentials
from cfpush.endpoint import resolve_target
from cfpush.errors import DeployError, ErrorKind, PlatformApiError
from cfpush.manifest import ResolvedManifest
from cfpush.platform.cf_cli import CfCliClient, classify_cf_output, parse_app_routes, parse_services_table
from cfpush.push import PushExecutor

SERVICES_OUTPUT = """Getting services in org acme / space dev as deployer...

name    service    plan    bound apps   last operation
db      postgres   small   shop         create succeeded
cache   redis      tiny                 create succeeded
"""

APP_OUTPUT = """Showing health and status for app shop in org acme / space dev as deployer...

name:              shop
requested state:   started
routes:            shop.example.com, shop.apps.internal
last uploaded:     Mon 19 Oct 10:00:00 UTC 2026
"""


class FakePopen:
    """
    Stands in for ``subprocess.Popen``.

    ``respond(command)`` returns ``(stdout, stderr, returncode)``; commands
    named in ``hang`` never finish until terminated.
    """

    def __init__(self, respond=None, hang=()):
        self.respond = respond or (lambda command: ("", "", 0))
        self.hang = set(hang)
        self.calls = []
        self.terminated = []

    def __call__(self, command, **kwargs):
        self.calls.append((command, kwargs))
        return FakeProcess(self, command)

    def commands(self):
        return [command[1:] for command, _ in self.calls]


class FakeProcess:
    def __init__(self, owner, command):
        self.owner = owner
        self.command = command
        self.returncode = None
        self.stopped = False

    def communicate(self, timeout=None):
        if self.stopped:
            self.returncode = -15
            return "", ""
        if self.command[1] in self.owner.hang:
            time.sleep(timeout or 0)
            raise subprocess.TimeoutExpired(self.command, timeout)
        stdout, stderr, self.returncode = self.owner.respond(self.command)
        return stdout, stderr

    def terminate(self):
        self.stopped = True
        self.owner.terminated.append(self.command[1])

    def kill(self):
        self.stopped = True


@pytest.fixture
def handle():
    return ConnectionHandle(
        endpoint=resolve_target("https://api.example.com"),
        credentials=Credentials("deployer", "s3cret"),
        self_signed=True,
        proxy=ProxyDescriptor("proxy.corp", 3128),
        organization="acme",
        space="dev",
    )


@pytest.fixture
def client(handle, tmp_path):
    cf = CfCliClient(handle, cf_binary="cf", home=tmp_path / "cf-home")
    (tmp_path / "cf-home").mkdir()
    return cf


def test_login_sequence_runs_once(client):
    popen = FakePopen(lambda command: (SERVICES_OUTPUT, "", 0))
    with patch("cfpush.platform.cf_cli.subprocess.Popen", popen):
        assert [e.name for e in client.list_service_instances()] == ["db", "cache"]
        client.list_service_instances()

    assert popen.commands() == [
        ["api", "https://api.example.com", "--skip-ssl-validation"],
        ["auth"],
        ["target", "-o", "acme", "-s", "dev"],
        ["services"],
        ["services"],
    ]


def test_password_is_passed_through_environment(client):
    popen = FakePopen()
    with patch("cfpush.platform.cf_cli.subprocess.Popen", popen):
        client.create_service_instance("postgres", "small", "db")

    auth_command, auth_kwargs = popen.calls[1]
    assert "s3cret" not in auth_command
    env = auth_kwargs["env"]
    assert env["CF_USERNAME"] == "deployer"
    assert env["CF_PASSWORD"] == "s3cret"
    assert env["https_proxy"] == "http://proxy.corp:3128"
    assert popen.commands()[-1] == ["create-service", "postgres", "small", "db"]


def test_delete_service_is_forced(client):
    popen = FakePopen()
    with patch("cfpush.platform.cf_cli.subprocess.Popen", popen):
        client.delete_service_instance("db")
    assert popen.commands()[-1] == ["delete-service", "db", "-f"]


def test_push_writes_single_app_manifest(client, tmp_path):
    written = {}

    def respond(command):
        if command[1] == "push":
            with open(command[3]) as f:
                written.update(yaml.safe_load(f))
        return "", "", 0

    with patch("cfpush.platform.cf_cli.subprocess.Popen", FakePopen(respond)):
        client.push_manifest(ResolvedManifest(name="shop", path=tmp_path, memory_mb=512,
                                              hosts=["shop"], domains=["example.com"]), timeout=30)

    app, = written["applications"]
    assert app["name"] == "shop"
    assert app["memory"] == "512M"
    assert app["routes"] == [{"route": "shop.example.com"}]
    assert not list((tmp_path / "cf-home").glob("manifest-*.yml"))


def test_failed_push_is_push_failed(client, tmp_path):
    def respond(command):
        if command[1] == "push":
            return "Staging app...", "Error staging application: StagingError - CF-StagingError", 1
        return "", "", 0

    with patch("cfpush.platform.cf_cli.subprocess.Popen", FakePopen(respond)):
        with pytest.raises(PlatformApiError) as exc:
            client.push_manifest(ResolvedManifest(name="shop", path=tmp_path))
    assert exc.value.kind is ErrorKind.PUSH_FAILED
    assert exc.value.code == "CF-StagingError"


def test_push_timeout_terminates_the_process(client, tmp_path):
    popen = FakePopen(hang=["push"])
    with patch("cfpush.platform.cf_cli.subprocess.Popen", popen):
        with pytest.raises(DeployError) as exc:
            client.push_manifest(ResolvedManifest(name="shop", path=tmp_path), timeout=0.3)
    assert exc.value.kind is ErrorKind.PUSH_TIMEOUT
    assert popen.terminated == ["push"]
    assert not list((tmp_path / "cf-home").glob("manifest-*.yml"))


def test_cancel_terminates_running_push(client, tmp_path):
    popen = FakePopen(hang=["push"])
    timer = threading.Timer(0.3, client.cancel)
    with patch("cfpush.platform.cf_cli.subprocess.Popen", popen):
        timer.start()
        try:
            with pytest.raises(DeployError) as exc:
                client.push_manifest(ResolvedManifest(name="shop", path=tmp_path), timeout=30)
        finally:
            timer.cancel()
    assert exc.value.kind is ErrorKind.INTERRUPTED
    assert popen.terminated == ["push"]


def test_cancelled_client_starts_no_commands(client):
    popen = FakePopen()
    client.cancel()
    with patch("cfpush.platform.cf_cli.subprocess.Popen", popen):
        with pytest.raises(DeployError) as exc:
            client.list_service_instances()
    assert exc.value.kind is ErrorKind.INTERRUPTED
    assert popen.calls == []


def test_push_without_name_is_invalid(client):
    with pytest.raises(DeployError) as exc:
        client.push_manifest(ResolvedManifest())
    assert exc.value.kind is ErrorKind.MANIFEST_INVALID


def test_auth_failure_is_classified(client):
    def respond(command):
        if command[1] == "auth":
            return "", "Credentials were rejected, please try again.", 1
        return "", "", 0

    with patch("cfpush.platform.cf_cli.subprocess.Popen", FakePopen(respond)):
        with pytest.raises(DeployError) as exc:
            client.list_service_instances()
    assert exc.value.kind is ErrorKind.AUTH_REJECTED


@patch("cfpush.platform.cf_cli.subprocess.Popen", side_effect=FileNotFoundError())
def test_missing_binary(popen, client):
    with pytest.raises(DeployError) as exc:
        client.list_service_instances()
    assert exc.value.kind is ErrorKind.PLATFORM_API_ERROR
    assert "CFPUSH_CF_BINARY" in exc.value.message


def test_routes_and_logs(client):
    def respond(command):
        if command[1] == "app":
            return APP_OUTPUT, "", 0
        if command[1] == "logs":
            return "Retrieving logs for app shop...\n\n2026-10-19 [APP/PROC/WEB/0] OUT started\n", "", 0
        return "", "", 0

    with patch("cfpush.platform.cf_cli.subprocess.Popen", FakePopen(respond)):
        assert client.list_routes("shop") == ["shop.example.com", "shop.apps.internal"]
        assert client.fetch_recent_logs("shop") == ["2026-10-19 [APP/PROC/WEB/0] OUT started"]


def test_owned_home_is_removed_on_close(handle):
    client = CfCliClient(handle)
    home = client.home
    assert home.exists()
    client.close()
    assert not home.exists()


@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
def test_cancelled_push_never_completes_on_the_platform(tmp_path):
    marker = tmp_path / "pushed"
    cf = tmp_path / "cf"
    cf.write_text(
        "#!/bin/sh\n"
        'if [ "$1" = "push" ]; then\n'
        "  sleep 1.5 >/dev/null 2>&1\n"
        f'  touch "{marker}"\n'
        "fi\n"
        "exit 0\n"
    )
    cf.chmod(cf.stat().st_mode | stat.S_IXUSR)

    handle = ConnectionHandle(endpoint=resolve_target("https://api.example.com"),
                              credentials=Credentials("deployer", "s3cret"))
    home = tmp_path / "cf-home"
    home.mkdir()
    client = CfCliClient(handle, cf_binary=str(cf), home=home)
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()
    try:
        executor = PushExecutor(client, timeout=10, cancel_event=cancel)
        outcome, = executor.push_all([ResolvedManifest(name="shop", path=tmp_path)])
    finally:
        timer.cancel()
        client.close()

    assert outcome.error_kind is ErrorKind.INTERRUPTED
    assert executor.interrupted is not None
    time.sleep(2)
    assert not marker.exists()


@pytest.mark.parametrize("output,kind", [
    ("x509: certificate signed by unknown authority", ErrorKind.TLS_UNTRUSTED),
    ("dial tcp: lookup api.nowhere: no such host", ErrorKind.CONNECTION_UNREACHABLE),
    ("Authentication has failed", ErrorKind.AUTH_REJECTED),
    ("Server error, status code: 500", ErrorKind.PLATFORM_API_ERROR),
])
def test_classify_cf_output(output, kind):
    assert classify_cf_output(output) is kind


def test_parse_services_table_without_services():
    assert parse_services_table("Getting services...\n\nNo services found\n") == []


def test_parse_app_routes_without_routes():
    assert parse_app_routes("name: shop\nroutes:\n") == []

"""
Click CLI interface for cfpush.
"""

import json
import logging
import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import click

from .config import DEFAULT_TIMEOUT, MANIFEST_FILE, ManifestChoiceModel, load_config, parse_config
from .connection import ConnectionFactory, ProxyPolicy, check_connection
from .credentials import default_store
from .errors import DeployError
from .events import EventTypes, RunLog, get_status_from_events, read_events, tail_events
from .ids import is_valid_run_id
from .orchestrator import Orchestrator, RunResult
from .platform.cf_cli import cf_cli_factory
from .staging import LocalContext, RemoteContext
from .state import list_runs, read_result_json, run_exists

BUILD_RESULTS = ["SUCCESS", "UNSTABLE", "FAILURE", "ABORTED"]


def parse_service_option(value: str) -> dict:
    """
    Parse ``NAME:TYPE:PLAN[:reset]`` into a service request mapping.

    Raises:
        click.BadParameter: on a malformed value
    """
    parts = value.split(":")
    if len(parts) not in (3, 4) or not all(p.strip() for p in parts[:3]):
        raise click.BadParameter(f"expected NAME:TYPE:PLAN[:reset], got '{value}'", param_hint="--service")
    reset = False
    if len(parts) == 4:
        if parts[3].strip().lower() != "reset":
            raise click.BadParameter(f"unknown service flag '{parts[3]}'", param_hint="--service")
        reset = True
    return {"name": parts[0].strip(), "type": parts[1].strip(), "plan": parts[2].strip(),
            "reset_if_exists": reset}


@contextmanager
def cancel_on_sigterm(orchestrator: Orchestrator):
    """Cancel the run when the process receives SIGTERM, e.g. from a CI abort."""
    previous = signal.signal(signal.SIGTERM, lambda signum, frame: orchestrator.cancel())
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool):
    """
    cfpush - push applications to a Cloud Foundry target.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command("deploy")
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path),
              help="Run configuration file (YAML or JSON)")
@click.option("--target", help="Platform API target, e.g. api.example.com")
@click.option("--org", "organization", help="Organization")
@click.option("--space", help="Space")
@click.option("--credentials-id", help="Credentials id to look up")
@click.option("--self-signed/--no-self-signed", default=None, help="Accept self-signed certificates")
@click.option("--timeout", type=int, help=f"Per-push timeout in seconds (default {DEFAULT_TIMEOUT})")
@click.option("--service", "services", multiple=True, help="Service NAME:TYPE:PLAN[:reset] (repeatable)")
@click.option("--manifest-file", help="Manifest path relative to the workspace")
@click.option("--workspace", type=click.Path(file_okay=False, path_type=Path), default=".",
              help="Build workspace holding the application")
@click.option("--remote", is_flag=True, help="Stage the workspace as if it came from another execution context")
@click.option("--build-result", type=click.Choice(BUILD_RESULTS), default="SUCCESS",
              help="Result of the build so far; anything worse than SUCCESS skips the push")
@click.option("--json", "as_json", is_flag=True, help="Print the run result as JSON")
def deploy_cmd(config_path: Optional[Path], target: Optional[str], organization: Optional[str],
               space: Optional[str], credentials_id: Optional[str], self_signed: Optional[bool],
               timeout: Optional[int], services: tuple, manifest_file: Optional[str], workspace: Path,
               remote: bool, build_result: str, as_json: bool):
    """
    Reconcile services, stage the application and push it.
    """
    if build_result != "SUCCESS":
        click.echo(f"Build result is {build_result}; skipping Cloud Foundry push.", err=as_json)
        if as_json:
            print(json.dumps(RunResult(run_id=None, success=True, skipped=True).to_dict(), indent=2))
        sys.exit(0)

    overrides = {
        "target": target,
        "organization": organization,
        "space": space,
        "credentials_id": credentials_id,
        "self_signed": self_signed,
        "timeout": timeout,
    }
    if services:
        overrides["services"] = [parse_service_option(s) for s in services]

    try:
        if config_path is not None:
            config = load_config(config_path, overrides)
        else:
            if not target:
                raise click.UsageError("either --config or --target is required")
            config = parse_config({k: v for k, v in overrides.items() if v is not None})
    except DeployError as e:
        click.echo(e.describe(), err=True)
        sys.exit(1)

    if manifest_file:
        config.manifest = ManifestChoiceModel(value=MANIFEST_FILE, manifest_file=manifest_file)

    workspace = workspace.resolve()
    context = RemoteContext(workspace) if remote else LocalContext(workspace)
    log = RunLog(echo=lambda text: click.echo(text, err=as_json))

    orchestrator = Orchestrator(
        config,
        context,
        cf_cli_factory,
        credential_store=default_store(),
        proxy_policy=ProxyPolicy.from_env(),
        log=log,
        persist=True,
    )
    with cancel_on_sigterm(orchestrator):
        result = orchestrator.run()

    if as_json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        click.echo(f"Run ID: {result.run_id}")
        for outcome in result.outcomes:
            state = "pushed" if outcome.succeeded else "FAILED"
            click.echo(f"  {outcome.app_name}: {state}")
            for route in outcome.discovered_routes:
                click.echo(f"    {route}")
    sys.exit(0 if result.success else 1)


@main.command("test-connection")
@click.option("--target", required=True, help="Platform API target")
@click.option("--credentials-id", help="Credentials id to look up")
@click.option("--org", "organization", help="Organization")
@click.option("--space", help="Space")
@click.option("--self-signed", is_flag=True, help="Accept self-signed certificates")
@click.option("--timeout", type=int, default=DEFAULT_TIMEOUT, help="Seconds to wait for the target")
def test_connection_cmd(target: str, credentials_id: Optional[str], organization: Optional[str],
                        space: Optional[str], self_signed: bool, timeout: int):
    """
    Check that the target is reachable without changing anything.
    """
    factory = ConnectionFactory(cf_cli_factory, ProxyPolicy.from_env())
    result = check_connection(factory, target, credentials_id=credentials_id, store=default_store(),
                              organization=organization, space=space, self_signed=self_signed,
                              timeout=timeout)
    click.echo(result.message)
    for warning in result.warnings:
        click.echo(f"  - {warning}")
    if result.kind is not None:
        click.echo(f"Hint: {result.kind.hint}")
    sys.exit(1 if result.level == "error" else 0)


@main.command("status")
@click.argument("run_id")
@click.option("--format", "output_format", type=click.Choice(["json", "human"]), default="human", help="Output format")
def status_cmd(run_id: str, output_format: str):
    """
    Show the status of a run.
    """
    if not is_valid_run_id(run_id) or not run_exists(run_id):
        click.echo(f"Unknown run ID: {run_id}", err=True)
        sys.exit(1)

    status = get_status_from_events(run_id)
    result = read_result_json(run_id)

    if output_format == "json":
        print(json.dumps({"run_id": run_id, "status": status, "result": result}, indent=2))
        return

    click.echo(f"Run ID: {run_id}")
    click.echo(f"Status: {status.upper()}")
    if result:
        for outcome in result.get("outcomes", []):
            state = "pushed" if outcome.get("succeeded") else "FAILED"
            click.echo(f"  {outcome.get('app_name')}: {state}")
            for route in outcome.get("discovered_routes", []):
                click.echo(f"    {route}")
        error = result.get("error")
        if error:
            click.echo(f"Failure ({error['category']}): [{error['kind']}] {error['message']}")
            click.echo(f"Hint: {error['hint']}")


@main.command("logs")
@click.argument("run_id")
@click.option("--follow", "-f", is_flag=True, help="Follow the run log until it finishes")
@click.option("--format", "output_format", type=click.Choice(["json", "human"]), default="human", help="Output format")
def logs_cmd(run_id: str, follow: bool, output_format: str):
    """
    Print the run log.
    """
    if not is_valid_run_id(run_id) or not run_exists(run_id):
        click.echo(f"Unknown run ID: {run_id}", err=True)
        sys.exit(1)

    events = tail_events(run_id, follow=True) if follow else iter(read_events(run_id))
    try:
        for event in events:
            if output_format == "json":
                print(json.dumps(event), flush=True)
            elif event.get("type") == EventTypes.LINE:
                click.echo(event.get("data", {}).get("text", ""))
    except KeyboardInterrupt:
        click.echo("\nStopped following logs", err=True)


@main.command("list")
def list_cmd():
    """
    List recorded runs, most recent first.
    """
    runs = list_runs()
    if not runs:
        click.echo("No runs found")
        return
    for run_id in runs:
        click.echo(f"{run_id}  {get_status_from_events(run_id)}")


if __name__ == "__main__":
    main()

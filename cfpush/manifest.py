"""
Manifest resolution.

A run deploys from one of two sources: a manifest file shipped with the
application bits (possibly describing several applications), or discrete
inline fields from the run configuration. Both produce ResolvedManifest
values ready to push.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .errors import DeployError, ErrorKind
from .events import redact_env
from .tokens import TokenExpander

logger = logging.getLogger(__name__)

DEFAULT_MANIFEST_PATH = "manifest.yml"

GIBI = 1024
MEMORY_PATTERN = re.compile(r"^\s*(\d+)\s*(GB|G|MB|M)?\s*$", re.IGNORECASE)

KNOWN_APP_KEYS = {
    "name", "path", "docker", "memory", "instances", "timeout", "no-route", "random-route",
    "buildpack", "buildpacks", "stack", "command", "domain", "domains", "host", "hosts",
    "env", "services", "routes",
}


@dataclass(frozen=True)
class FileManifest:
    path: str = DEFAULT_MANIFEST_PATH


@dataclass(frozen=True)
class InlineManifest:
    """
    Discrete manifest fields. Every scalar is raw text that is token-expanded
    before use; blank means "leave the platform default".
    """
    name: Optional[str] = None
    memory: Optional[str] = None
    instances: Optional[str] = None
    timeout: Optional[str] = None
    no_route: Optional[str] = None
    path: Optional[str] = None
    buildpack: Optional[str] = None
    stack: Optional[str] = None
    command: Optional[str] = None
    domain: Optional[str] = None
    host: Optional[str] = None
    env_vars: Dict[str, str] = field(default_factory=dict)
    service_names: List[str] = field(default_factory=list)


ManifestSource = Union[FileManifest, InlineManifest]


@dataclass
class ResolvedManifest:
    name: Optional[str] = None
    path: Optional[Path] = None
    docker_image: Optional[str] = None
    memory_mb: Optional[int] = None
    instances: Optional[int] = None
    timeout: Optional[int] = None
    no_route: bool = False
    random_route: bool = False
    buildpack: Optional[str] = None
    stack: Optional[str] = None
    command: Optional[str] = None
    domains: List[str] = field(default_factory=list)
    hosts: List[str] = field(default_factory=list)
    routes: List[str] = field(default_factory=list)
    env_vars: Dict[str, str] = field(default_factory=dict)
    service_names: List[str] = field(default_factory=list)

    @property
    def host(self) -> Optional[str]:
        return self.hosts[0] if self.hosts else None

    @property
    def domain(self) -> Optional[str]:
        return self.domains[0] if self.domains else None

    def to_cf_dict(self) -> Dict[str, Any]:
        """Render as a single-application manifest document for the cf CLI."""
        app: Dict[str, Any] = {"name": self.name}
        if self.docker_image:
            app["docker"] = {"image": self.docker_image}
        elif self.path is not None:
            app["path"] = str(self.path)
        if self.memory_mb is not None:
            app["memory"] = f"{self.memory_mb}M"
        if self.instances is not None:
            app["instances"] = self.instances
        if self.timeout is not None:
            app["timeout"] = self.timeout
        if self.buildpack:
            app["buildpacks"] = [self.buildpack]
        if self.stack:
            app["stack"] = self.stack
        if self.command:
            app["command"] = self.command
        if self.no_route:
            app["no-route"] = True
        else:
            routes = list(self.routes)
            hosts = self.hosts
            if self.domains and not hosts and not self.random_route:
                # host defaults to the application name
                hosts = [self.name]
            if hosts and self.domains:
                routes.extend(f"{h}.{d}" for h in hosts for d in self.domains)
            elif self.hosts or self.domains:
                logger.warning(f"Application {self.name}: hosts {self.hosts} / domains {self.domains} "
                               f"cannot form a route on their own; the platform default route applies")
            if routes:
                app["routes"] = [{"route": r} for r in routes]
            if self.random_route:
                app["random-route"] = True
        if self.env_vars:
            app["env"] = dict(self.env_vars)
        if self.service_names:
            app["services"] = list(self.service_names)
        return {"applications": [app]}

    def summary(self) -> str:
        parts = [f"name={self.name}"]
        if self.docker_image:
            parts.append(f"docker={self.docker_image}")
        else:
            parts.append(f"path={self.path}")
        for label, value in (("memory", self.memory_mb), ("instances", self.instances),
                             ("timeout", self.timeout), ("buildpack", self.buildpack),
                             ("stack", self.stack), ("host", self.host), ("domain", self.domain)):
            if value is not None:
                parts.append(f"{label}={value}")
        parts.append(f"no_route={self.no_route}")
        if self.env_vars:
            parts.append(f"env={redact_env(self.env_vars)}")
        if self.service_names:
            parts.append(f"services={self.service_names}")
        return ", ".join(parts)


@dataclass
class ManifestOverrides:
    """Optional values layered onto a ResolvedManifest; None means "not set"."""
    name: Optional[str] = None
    path: Optional[Path] = None
    docker_image: Optional[str] = None
    memory_mb: Optional[int] = None
    instances: Optional[int] = None
    timeout: Optional[int] = None
    no_route: Optional[bool] = None
    random_route: Optional[bool] = None
    buildpack: Optional[str] = None
    stack: Optional[str] = None
    command: Optional[str] = None
    domains: Optional[List[str]] = None
    hosts: Optional[List[str]] = None
    routes: Optional[List[str]] = None
    env_vars: Optional[Dict[str, str]] = None
    service_names: Optional[List[str]] = None


def merge(defaults: ResolvedManifest, overrides: ManifestOverrides) -> ResolvedManifest:
    """Return ``defaults`` with every non-None override applied."""
    changes = {f.name: getattr(overrides, f.name) for f in fields(overrides)
               if getattr(overrides, f.name) is not None}
    return replace(defaults, **changes)


def parse_memory(text: str) -> int:
    """
    Parse a memory amount into megabytes.

    Accepts a bare integer (megabytes) or a ``M``/``MB``/``G``/``GB`` suffix,
    case-insensitive.

    Raises:
        DeployError: MANIFEST_INVALID for anything else
    """
    match = MEMORY_PATTERN.match(str(text))
    if not match:
        raise DeployError(ErrorKind.MANIFEST_INVALID, f"Invalid memory value: {text!r}")
    amount = int(match.group(1))
    unit = (match.group(2) or "M").upper()
    if unit.startswith("G"):
        return amount * GIBI
    return amount


def _parse_int(label: str, value: Any) -> int:
    if isinstance(value, bool):
        raise DeployError(ErrorKind.MANIFEST_INVALID, f"Invalid {label} value: {value!r}")
    try:
        return int(str(value).strip())
    except ValueError:
        raise DeployError(ErrorKind.MANIFEST_INVALID, f"Invalid {label} value: {value!r}")


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _env_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def resolve_manifests(source: ManifestSource, artifact_root: Path, expander: TokenExpander,
                      path_is_rooted: bool = False) -> List[ResolvedManifest]:
    """
    Produce the manifests to push for one run.

    Args:
        source: FileManifest or InlineManifest
        artifact_root: Directory holding the staged application bits
        expander: Token expander bound to the build context
        path_is_rooted: True when ``artifact_root`` already points at the
            inline application sub-path (the bits were transferred from a
            different execution context)

    Returns:
        One ResolvedManifest per application
    """
    if isinstance(source, FileManifest):
        return resolve_file_manifest(source, artifact_root, expander)
    if isinstance(source, InlineManifest):
        return [resolve_inline_manifest(source, artifact_root, expander, path_is_rooted)]
    raise DeployError(ErrorKind.MANIFEST_INVALID,
                      f"manifest source must be a manifest file or inline configuration, but was {type(source).__name__}")


def resolve_file_manifest(source: FileManifest, artifact_root: Path, expander: TokenExpander) -> List[ResolvedManifest]:
    manifest_text = expander.expand(source.path) or DEFAULT_MANIFEST_PATH
    manifest_path = Path(manifest_text)
    if not manifest_path.is_absolute():
        manifest_path = Path(artifact_root) / manifest_path

    if not manifest_path.is_file():
        raise DeployError(ErrorKind.MANIFEST_NOT_FOUND, f"Manifest file not found: {manifest_path}")

    logger.info(f"Reading manifest {manifest_path}")
    try:
        raw = manifest_path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise DeployError(ErrorKind.MANIFEST_INVALID, f"Manifest {manifest_path} is not UTF-8 text: {e}")
    except OSError as e:
        raise DeployError(ErrorKind.MANIFEST_INVALID, f"Manifest {manifest_path} could not be read: {e}")
    expanded = expander.expand_lines(raw)

    manifests = parse_manifest_text(expanded, manifest_path.parent)
    return [default_path(m, Path(artifact_root)) for m in manifests]


def default_path(manifest: ResolvedManifest, artifact_root: Path) -> ResolvedManifest:
    """Point manifests without bits location or image at the artifact root."""
    if manifest.path is None and not manifest.docker_image:
        return replace(manifest, path=artifact_root)
    return manifest


def parse_manifest_text(text: str, base_dir: Path) -> List[ResolvedManifest]:
    """
    Parse manifest YAML into one ResolvedManifest per application.

    Top-level keys other than ``applications`` are inherited by every
    application; per-application keys win. Relative paths resolve against
    ``base_dir``.
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise DeployError(ErrorKind.MANIFEST_INVALID, f"Manifest is not valid YAML: {e}")

    if not isinstance(data, dict):
        raise DeployError(ErrorKind.MANIFEST_INVALID, "Manifest must be a mapping")
    if "inherit" in data:
        raise DeployError(ErrorKind.MANIFEST_INVALID, "Manifest 'inherit' is not supported")

    shared = {k: v for k, v in data.items() if k != "applications"}
    apps = data.get("applications")
    if apps is None and "name" in data:
        apps = [{}]
    if not isinstance(apps, list) or not apps:
        raise DeployError(ErrorKind.MANIFEST_INVALID, "Manifest does not describe any applications")

    manifests = []
    for app in apps:
        if not isinstance(app, dict):
            raise DeployError(ErrorKind.MANIFEST_INVALID, f"Application entry must be a mapping: {app!r}")
        merged = dict(shared)
        merged.update(app)
        manifests.append(_manifest_from_mapping(merged, Path(base_dir)))
    return manifests


def _string_list(label: str, value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(v) for v in value]
    raise DeployError(ErrorKind.MANIFEST_INVALID, f"Invalid {label} value: {value!r}")


def _manifest_from_mapping(app: Dict[str, Any], base_dir: Path) -> ResolvedManifest:
    name = app.get("name")
    if not name:
        raise DeployError(ErrorKind.MANIFEST_INVALID, "Application without a name in manifest")

    unknown = set(app) - KNOWN_APP_KEYS
    if unknown:
        logger.debug(f"Ignoring unsupported manifest keys for {name}: {sorted(unknown)}")

    overrides = ManifestOverrides(name=str(name))

    if app.get("path") is not None:
        path = Path(str(app["path"]))
        overrides.path = path if path.is_absolute() else (base_dir / path)
    docker = app.get("docker")
    if isinstance(docker, dict) and docker.get("image"):
        overrides.docker_image = str(docker["image"])
    if app.get("memory") is not None:
        overrides.memory_mb = parse_memory(str(app["memory"]))
    if app.get("instances") is not None:
        overrides.instances = _parse_int("instances", app["instances"])
    if app.get("timeout") is not None:
        overrides.timeout = _parse_int("timeout", app["timeout"])
    if app.get("no-route") is not None:
        overrides.no_route = _parse_bool(app["no-route"])
    if app.get("random-route") is not None:
        overrides.random_route = _parse_bool(app["random-route"])

    buildpacks = _string_list("buildpacks", app.get("buildpacks"))
    if app.get("buildpack"):
        overrides.buildpack = str(app["buildpack"])
    elif buildpacks:
        if len(buildpacks) > 1:
            logger.warning(f"Application {name} lists {len(buildpacks)} buildpacks; using {buildpacks[0]}")
        overrides.buildpack = buildpacks[0]

    for key in ("stack", "command"):
        if app.get(key) is not None:
            setattr(overrides, key, str(app[key]))

    hosts = _string_list("host", app.get("host")) + _string_list("hosts", app.get("hosts"))
    if hosts:
        overrides.hosts = hosts
    domains = _string_list("domain", app.get("domain")) + _string_list("domains", app.get("domains"))
    if domains:
        overrides.domains = domains

    routes = app.get("routes")
    if routes is not None:
        if not isinstance(routes, list):
            raise DeployError(ErrorKind.MANIFEST_INVALID, f"Invalid routes for {name}: {routes!r}")
        overrides.routes = [str(r["route"]) if isinstance(r, dict) else str(r) for r in routes]

    env = app.get("env")
    if env is not None:
        if not isinstance(env, dict):
            raise DeployError(ErrorKind.MANIFEST_INVALID, f"Invalid env for {name}: {env!r}")
        overrides.env_vars = {str(k): _env_value(v) for k, v in env.items()}

    services = app.get("services")
    if services is not None:
        if not isinstance(services, list):
            raise DeployError(ErrorKind.MANIFEST_INVALID, f"Invalid services for {name}: {services!r}")
        overrides.service_names = [str(s["name"]) if isinstance(s, dict) else str(s) for s in services]

    return merge(ResolvedManifest(), overrides)


def _blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def resolve_inline_manifest(source: InlineManifest, artifact_root: Path, expander: TokenExpander,
                            path_is_rooted: bool = False) -> ResolvedManifest:
    """
    Build the single manifest described by inline fields.

    Only non-blank strings and positive numbers override; ``no_route`` is
    always set explicitly.
    """
    def text(value: Optional[str]) -> Optional[str]:
        if _blank(value):
            return None
        expanded = expander.expand(value)
        return None if _blank(expanded) else expanded

    def positive(label: str, value: Optional[str], parse=None) -> Optional[int]:
        expanded = text(value)
        if expanded is None:
            return None
        number = parse(expanded) if parse else _parse_int(label, expanded)
        return number if number > 0 else None

    overrides = ManifestOverrides(
        name=text(source.name),
        buildpack=text(source.buildpack),
        stack=text(source.stack),
        command=text(source.command),
        memory_mb=positive("memory", source.memory, parse_memory),
        instances=positive("instances", source.instances),
        timeout=positive("timeout", source.timeout),
    )

    no_route = text(source.no_route)
    overrides.no_route = _parse_bool(no_route) if no_route is not None else False

    domain = text(source.domain)
    if domain is not None:
        overrides.domains = [domain]
    host = text(source.host)
    if host is not None:
        overrides.hosts = [host]

    if source.env_vars:
        overrides.env_vars = {expander.expand(k): expander.expand(v or "") for k, v in source.env_vars.items()}
    if source.service_names:
        overrides.service_names = [expander.expand(s) for s in source.service_names]

    sub_path = text(source.path)
    if sub_path is not None and not path_is_rooted:
        overrides.path = Path(artifact_root) / sub_path
    else:
        overrides.path = Path(artifact_root)

    return merge(ResolvedManifest(), overrides)

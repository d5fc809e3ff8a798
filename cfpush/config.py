"""
Run configuration.

A run is described by a DeployConfig, loaded from a YAML/JSON file and/or
assembled from CLI options, then handed to the orchestrator.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import DeployError, ErrorKind
from .manifest import DEFAULT_MANIFEST_PATH, FileManifest, InlineManifest, ManifestSource
from .services import ServiceRequest

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120

MANIFEST_FILE = "manifestFile"
INLINE_CONFIG = "inlineConfig"
LEGACY_INLINE_CONFIG = "jenkinsConfig"


class ServiceRequestModel(BaseModel):
    name: str
    type: str
    plan: str
    reset_if_exists: bool = Field(default=False, alias="resetIfExists")

    model_config = {"populate_by_name": True}

    def to_request(self) -> ServiceRequest:
        return ServiceRequest(name=self.name, type=self.type, plan=self.plan,
                              reset_if_exists=self.reset_if_exists)


class EnvVarModel(BaseModel):
    key: str
    value: str = ""


Scalar = Optional[Union[str, int, bool]]


class ManifestChoiceModel(BaseModel):
    value: Literal["manifestFile", "inlineConfig", "jenkinsConfig"] = MANIFEST_FILE
    manifest_file: str = DEFAULT_MANIFEST_PATH

    app_name: Scalar = None
    memory: Scalar = None
    hostname: Scalar = None
    instances: Scalar = None
    timeout: Scalar = None
    no_route: Scalar = None
    app_path: Scalar = None
    buildpack: Scalar = None
    stack: Scalar = None
    command: Scalar = None
    domain: Scalar = None
    env_vars: List[EnvVarModel] = Field(default_factory=list)
    services_names: List[str] = Field(default_factory=list)

    @field_validator("manifest_file", mode="before")
    @classmethod
    def _default_manifest_file(cls, v):
        return v or DEFAULT_MANIFEST_PATH

    @field_validator("services_names", mode="before")
    @classmethod
    def _service_names(cls, v):
        # accept [{"name": "db"}] as well as ["db"]
        if isinstance(v, list):
            return [item["name"] if isinstance(item, dict) else item for item in v]
        return v or []

    @property
    def is_inline(self) -> bool:
        return self.value in (INLINE_CONFIG, LEGACY_INLINE_CONFIG)

    def to_source(self) -> ManifestSource:
        if not self.is_inline:
            return FileManifest(path=self.manifest_file)

        def text(value: Scalar) -> Optional[str]:
            if value is None:
                return None
            if isinstance(value, bool):
                return "true" if value else "false"
            return str(value)

        return InlineManifest(
            name=text(self.app_name),
            memory=text(self.memory),
            instances=text(self.instances),
            timeout=text(self.timeout),
            no_route=text(self.no_route),
            path=text(self.app_path),
            buildpack=text(self.buildpack),
            stack=text(self.stack),
            command=text(self.command),
            domain=text(self.domain),
            host=text(self.hostname),
            env_vars={e.key: e.value for e in self.env_vars},
            service_names=list(self.services_names),
        )


class DeployConfig(BaseModel):
    target: str
    organization: Optional[str] = None
    space: Optional[str] = Field(default=None, alias="cloudSpace")
    credentials_id: Optional[str] = Field(default=None, alias="credentialsId")
    self_signed: bool = Field(default=False, alias="selfSigned")
    timeout: int = Field(default=DEFAULT_TIMEOUT, alias="pluginTimeout")
    services: List[ServiceRequestModel] = Field(default_factory=list, alias="servicesToCreate")
    manifest: ManifestChoiceModel = Field(default_factory=ManifestChoiceModel, alias="manifestChoice")

    model_config = {"populate_by_name": True}

    @field_validator("timeout", mode="before")
    @classmethod
    def _default_timeout(cls, v):
        if v in (None, "", 0, "0"):
            return DEFAULT_TIMEOUT
        return v

    @field_validator("timeout")
    @classmethod
    def _positive_timeout(cls, v):
        if v < 0:
            raise ValueError("timeout must be a positive number of seconds")
        return v

    def service_requests(self) -> List[ServiceRequest]:
        return [s.to_request() for s in self.services]


def parse_config(data: Dict[str, Any]) -> DeployConfig:
    """
    Validate a raw configuration mapping.

    Raises:
        DeployError: MALFORMED_TARGET when the target is missing, otherwise
            MANIFEST_INVALID with the validation messages
    """
    try:
        return DeployConfig.model_validate(data)
    except ValidationError as e:
        locations = {str(err["loc"][0]) for err in e.errors() if err.get("loc")}
        kind = ErrorKind.MALFORMED_TARGET if "target" in locations else ErrorKind.MANIFEST_INVALID
        raise DeployError(kind, f"Invalid run configuration: {e}")


def load_config(path: Path, overrides: Optional[Dict[str, Any]] = None) -> DeployConfig:
    """
    Load a run configuration file (YAML or JSON) and apply overrides.

    Args:
        path: Config file path
        overrides: Values that replace file values when not None

    Returns:
        DeployConfig
    """
    path = Path(path)
    try:
        with open(path, "r") as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise DeployError(ErrorKind.MANIFEST_NOT_FOUND, f"Run configuration not found: {path}")
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise DeployError(ErrorKind.MANIFEST_INVALID, f"Run configuration {path} is not valid: {e}")

    if not isinstance(data, dict):
        raise DeployError(ErrorKind.MANIFEST_INVALID, f"Run configuration {path} must be a mapping")

    logger.debug(f"Loaded run configuration from {path}")
    config = parse_config(data)
    if overrides:
        merged = config.model_dump()
        merged.update({k: v for k, v in overrides.items() if v is not None})
        config = parse_config(merged)
    return config

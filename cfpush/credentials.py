"""
Credential lookup for platform logins.
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml

from .endpoint import resolve_target
from .errors import DeployError, ErrorKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(repr=False)


class CredentialStore(ABC):
    """Resolves a credentials id to a username/password pair."""

    @abstractmethod
    def lookup(self, credentials_id: str, target: Optional[str] = None) -> Optional[Credentials]:
        """Return the credentials for ``credentials_id`` or None when unknown."""


class EnvCredentialStore(CredentialStore):
    """
    Reads ``CFPUSH_CRED_<ID>_USERNAME`` / ``CFPUSH_CRED_<ID>_PASSWORD``.
    
    The id is upper-cased and every non-alphanumeric character becomes ``_``.
    """

    def __init__(self, environ: Optional[dict] = None):
        self.environ = os.environ if environ is None else environ

    @staticmethod
    def env_prefix(credentials_id: str) -> str:
        return "CFPUSH_CRED_" + re.sub(r"[^A-Za-z0-9]", "_", credentials_id).upper()

    def lookup(self, credentials_id: str, target: Optional[str] = None) -> Optional[Credentials]:
        prefix = self.env_prefix(credentials_id)
        username = self.environ.get(f"{prefix}_USERNAME")
        password = self.environ.get(f"{prefix}_PASSWORD")
        if username is None or password is None:
            return None
        return Credentials(username=username, password=password)


class FileCredentialStore(CredentialStore):
    """
    YAML credential file::

        credentials:
          my-cf:
            username: deployer
            password: s3cret
            target: api.example.com   # optional, restricts the entry to a host
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def _entries(self) -> dict:
        if not self.path.exists():
            logger.debug(f"Credential file {self.path} does not exist")
            return {}
        try:
            with open(self.path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise DeployError(ErrorKind.CREDENTIALS_MISSING, f"Credential file {self.path} is not valid YAML: {e}")
        return data.get("credentials") or {}

    def lookup(self, credentials_id: str, target: Optional[str] = None) -> Optional[Credentials]:
        entry = self._entries().get(credentials_id)
        if not entry:
            return None
        scoped = entry.get("target")
        if scoped and target and not _same_host(scoped, target):
            logger.debug(f"Credentials {credentials_id} are scoped to {scoped}, not {target}")
            return None
        if "username" not in entry or "password" not in entry:
            return None
        return Credentials(username=str(entry["username"]), password=str(entry["password"]))


class ChainCredentialStore(CredentialStore):
    """First store that knows the id wins."""

    def __init__(self, stores: List[CredentialStore]):
        self.stores = stores

    def lookup(self, credentials_id: str, target: Optional[str] = None) -> Optional[Credentials]:
        for store in self.stores:
            found = store.lookup(credentials_id, target)
            if found is not None:
                return found
        return None


def _same_host(a: str, b: str) -> bool:
    return resolve_target(a).host == resolve_target(b).host


def default_store() -> CredentialStore:
    """Environment first, then the file named by ``CFPUSH_CREDENTIALS_FILE``."""
    stores: List[CredentialStore] = [EnvCredentialStore()]
    cred_file = os.environ.get("CFPUSH_CREDENTIALS_FILE")
    if cred_file:
        stores.append(FileCredentialStore(Path(cred_file)))
    return ChainCredentialStore(stores)


def require_credentials(store: CredentialStore, credentials_id: Optional[str], target: str) -> Credentials:
    """
    Look up credentials for a push run; absence is a hard failure.
    
    Raises:
        DeployError: CREDENTIALS_MISSING
    """
    if not credentials_id:
        raise DeployError(ErrorKind.CREDENTIALS_MISSING, "No credentials have been given.")
    found = store.lookup(credentials_id, target)
    if found is None:
        raise DeployError(ErrorKind.CREDENTIALS_MISSING,
                          f"No credentials found for id '{credentials_id}' and target {target}")
    return found

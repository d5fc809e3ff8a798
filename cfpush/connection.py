"""
Connection handles, proxy policy and the connectivity test.
"""

import fnmatch
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import requests

from .credentials import CredentialStore, Credentials
from .endpoint import ResolvedEndpoint, resolve_target, target_warnings
from .errors import DeployError, ErrorKind, PlatformApiError
from .platform.base import ClientFactory, PlatformClient

logger = logging.getLogger(__name__)

INFO_PATH = "/v2/info"


@dataclass(frozen=True)
class ProxyDescriptor:
    host: str
    port: int
    scheme: str = "http"

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"


@dataclass(frozen=True)
class ProxyPolicy:
    """
    Process-wide proxy settings, injected into the connection factory.
    
    ``no_proxy`` entries are glob patterns matched against the target host;
    an entry starting with ``.`` matches that domain and all its subdomains.
    """
    proxy: Optional[ProxyDescriptor] = None
    no_proxy: tuple = ()

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "ProxyPolicy":
        env = os.environ if environ is None else environ
        raw = (env.get("https_proxy") or env.get("HTTPS_PROXY")
               or env.get("http_proxy") or env.get("HTTP_PROXY"))
        if not raw:
            return cls()
        if "://" not in raw:
            raw = "http://" + raw
        parsed = urlparse(raw)
        if not parsed.hostname:
            logger.warning(f"Ignoring unparsable proxy setting {raw}")
            return cls()
        proxy = ProxyDescriptor(host=parsed.hostname, port=parsed.port or 8080, scheme=parsed.scheme or "http")
        no_proxy_raw = env.get("no_proxy") or env.get("NO_PROXY") or ""
        patterns = tuple(p.strip() for p in no_proxy_raw.split(",") if p.strip())
        return cls(proxy=proxy, no_proxy=patterns)

    def bypasses(self, host: str) -> bool:
        host = host.lower()
        for pattern in self.no_proxy:
            pattern = pattern.lower()
            if pattern == "*":
                return True
            if pattern.startswith("."):
                if host == pattern[1:] or host.endswith(pattern):
                    return True
            elif fnmatch.fnmatchcase(host, pattern):
                return True
        return False

    def proxy_for(self, host: str) -> Optional[ProxyDescriptor]:
        if self.proxy is None or self.bypasses(host):
            return None
        return self.proxy


@dataclass
class ConnectionHandle:
    """Everything needed to talk to one platform endpoint for one run."""
    endpoint: ResolvedEndpoint
    credentials: Optional[Credentials]
    self_signed: bool = False
    proxy: Optional[ProxyDescriptor] = None
    organization: Optional[str] = None
    space: Optional[str] = None
    _session: Optional[requests.Session] = field(default=None, repr=False, compare=False)

    def session(self) -> requests.Session:
        if self._session is None:
            session = requests.Session()
            session.verify = not self.self_signed
            session.trust_env = False
            if self.proxy is not None:
                session.proxies = {"http": self.proxy.url, "https": self.proxy.url}
            self._session = session
        return self._session

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None


class ConnectionFactory:
    """Builds connection handles and platform clients."""

    def __init__(self, client_factory: ClientFactory, proxy_policy: Optional[ProxyPolicy] = None):
        self.client_factory = client_factory
        self.proxy_policy = proxy_policy or ProxyPolicy()

    def connect(self, endpoint: ResolvedEndpoint, credentials: Optional[Credentials],
                self_signed: bool = False, organization: Optional[str] = None,
                space: Optional[str] = None) -> ConnectionHandle:
        proxy = self.proxy_policy.proxy_for(endpoint.host)
        if proxy is not None:
            logger.debug(f"Using proxy {proxy.url} for {endpoint.host}")
        return ConnectionHandle(
            endpoint=endpoint,
            credentials=credentials,
            self_signed=self_signed,
            proxy=proxy,
            organization=organization,
            space=space,
        )

    def client(self, handle: ConnectionHandle) -> PlatformClient:
        return self.client_factory(handle)


def fetch_endpoint_info(handle: ConnectionHandle, timeout: Optional[float] = None) -> Dict[str, Any]:
    """
    GET the endpoint's info document, classifying failures.
    
    Args:
        handle: Connection handle
        timeout: Request timeout in seconds
        
    Returns:
        Parsed info document
        
    Raises:
        DeployError: CONNECTION_UNREACHABLE, TLS_UNTRUSTED or PLATFORM_API_ERROR
    """
    url = handle.endpoint.base_url + INFO_PATH
    try:
        response = handle.session().get(url, timeout=timeout)
    except requests.exceptions.SSLError as e:
        raise DeployError(
            ErrorKind.TLS_UNTRUSTED,
            "Target's certificate is not verified (trust it, or enable the self-signed option)",
            {"url": url, "error": str(e)},
        )
    except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
        raise DeployError(ErrorKind.CONNECTION_UNREACHABLE, f"Unknown host or unreachable: {handle.endpoint.host}",
                          {"url": url, "error": str(e)})
    
    if response.status_code >= 400:
        raise platform_error_from_response(response, f"GET {INFO_PATH} failed")
    
    try:
        return response.json()
    except ValueError:
        raise PlatformApiError(f"GET {INFO_PATH} returned a non-JSON body", status=response.status_code)


def platform_error_from_response(response: requests.Response, message: str) -> PlatformApiError:
    code = None
    description = None
    try:
        body = response.json()
        if isinstance(body, dict):
            code = body.get("error_code") or body.get("code")
            description = body.get("description") or body.get("error_description")
    except ValueError:
        description = response.text[:500] or None
    kind = ErrorKind.AUTH_REJECTED if response.status_code in (401, 403) else ErrorKind.PLATFORM_API_ERROR
    return PlatformApiError(message, status=response.status_code,
                            code=str(code) if code is not None else None,
                            description=description, kind=kind)


@dataclass
class ConnectionTestResult:
    ok: bool
    message: str
    warnings: List[str] = field(default_factory=list)
    kind: Optional[ErrorKind] = None
    info: Dict[str, Any] = field(default_factory=dict)

    @property
    def level(self) -> str:
        if not self.ok:
            return "error"
        return "warning" if self.warnings else "ok"


def check_connection(factory: ConnectionFactory, target: str, credentials_id: Optional[str] = None,
                    store: Optional[CredentialStore] = None, organization: Optional[str] = None,
                    space: Optional[str] = None, self_signed: bool = False,
                    timeout: float = 120) -> ConnectionTestResult:
    """
    Validate reachability of a target without side effects.

    Missing credentials are tolerated; the check then runs unauthenticated.
    """
    try:
        endpoint = resolve_target(target)
        credentials = None
        if credentials_id and store is not None:
            credentials = store.lookup(credentials_id, target)
        handle = factory.connect(endpoint, credentials, self_signed, organization, space)
        client = factory.client(handle)
        try:
            info = client.get_endpoint_info(timeout=timeout)
        finally:
            client.close()
            handle.close()
    except DeployError as e:
        return ConnectionTestResult(ok=False, message=str(e), kind=e.kind)
    
    warnings = target_warnings(endpoint)
    if warnings:
        return ConnectionTestResult(ok=True, message="Connection successful, but:", warnings=warnings, info=info)
    return ConnectionTestResult(ok=True, message="Connection successful!", info=info)



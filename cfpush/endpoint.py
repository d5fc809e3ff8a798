"""
Target endpoint parsing.

A target is configured loosely as ``[scheme://]host[:port][/path]``. Only an
explicit ``http://`` scheme forces a default port (80); an absent scheme
leaves both ``secure`` and ``port`` unset so the connection layer applies its
own (secure) defaults.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from .errors import DeployError, ErrorKind

logger = logging.getLogger(__name__)

TARGET_PATTERN = re.compile(
    r"^(?:(?P<scheme>[A-Za-z][A-Za-z0-9+.-]*)://)?"
    r"(?P<host>\[[0-9A-Fa-f:.]+\]|[A-Za-z0-9](?:[A-Za-z0-9.-]*[A-Za-z0-9])?)"
    r"(?::(?P<port>\d{1,5}))?"
    r"(?P<path>/.*)?$"
)

DEFAULT_HTTP_PORT = 80


@dataclass(frozen=True)
class ResolvedEndpoint:
    scheme: str
    host: str
    port: Optional[int] = None
    secure: Optional[bool] = None  # None when the target had no scheme
    path: Optional[str] = None     # discarded path, kept only for warnings

    @property
    def base_url(self) -> str:
        if self.port is None:
            return f"{self.scheme}://{self.host}"
        return f"{self.scheme}://{self.host}:{self.port}"


def resolve_target(target: str) -> ResolvedEndpoint:
    """
    Parse a target string into a normalized endpoint.
    
    Args:
        target: Raw target, e.g. ``api.example.com:443`` or ``http://host/path``
        
    Returns:
        ResolvedEndpoint
        
    Raises:
        DeployError: MALFORMED_TARGET if the string cannot be parsed
    """
    if target is None or not target.strip():
        raise DeployError(ErrorKind.MALFORMED_TARGET, "Target is empty")
    
    raw = target.strip()
    match = TARGET_PATTERN.match(raw)
    if not match:
        raise DeployError(ErrorKind.MALFORMED_TARGET, f"The target URL is not valid: {raw}")
    
    scheme = match.group("scheme")
    host = match.group("host")
    port_text = match.group("port")
    path = match.group("path")
    
    secure: Optional[bool] = None
    port: Optional[int] = None
    
    if scheme is not None:
        scheme = scheme.lower()
        if scheme not in ("http", "https"):
            raise DeployError(ErrorKind.MALFORMED_TARGET, f"Unsupported scheme '{scheme}' in target {raw}")
        secure = scheme == "https"
        if scheme == "http":
            port = DEFAULT_HTTP_PORT
    else:
        scheme = "https"
    
    if port_text is not None:
        port = int(port_text)
        if not 0 < port < 65536:
            raise DeployError(ErrorKind.MALFORMED_TARGET, f"Port {port} out of range in target {raw}")
    
    if path and path != "/":
        logger.warning(f"Target {raw} specifies path {path}, which is ignored for API calls")
    
    return ResolvedEndpoint(scheme=scheme, host=host.lower(), port=port, secure=secure, path=path)


def target_warnings(endpoint: ResolvedEndpoint) -> List[str]:
    """Non-fatal observations about a target, shown by the connection test."""
    warnings = []
    if not endpoint.host.startswith("api."):
        warnings.append(
            "Your target's hostname does not start with \"api.\". "
            "Make sure it is the real API endpoint and not a redirection, "
            "or it may cause some problems."
        )
    if endpoint.path and endpoint.path != "/":
        warnings.append("Your target specifies a path which will be ignored when making API calls")
    return warnings

"""
Failure taxonomy for orchestration runs.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Classified failure kinds, each with an operator-facing category and hint."""
    MALFORMED_TARGET = ("malformed_target", "configuration",
                        "Check the target; expected [http(s)://]host[:port]")
    CREDENTIALS_MISSING = ("credentials_missing", "configuration",
                           "No username/password found for the configured credentials id")
    CONNECTION_UNREACHABLE = ("connection_unreachable", "connectivity",
                              "Unknown host or network unreachable")
    TLS_UNTRUSTED = ("tls_untrusted", "connectivity",
                     "Target's certificate is not verified; trust it or enable self-signed")
    AUTH_REJECTED = ("auth_rejected", "connectivity",
                     "The platform rejected the supplied credentials")
    PLATFORM_API_ERROR = ("platform_api_error", "platform",
                          "The platform API returned an error")
    MANIFEST_NOT_FOUND = ("manifest_not_found", "configuration",
                          "Manifest file does not exist in the staged artifact")
    MANIFEST_INVALID = ("manifest_invalid", "configuration",
                        "Manifest could not be parsed or holds invalid values")
    SERVICE_RECONCILE_FAILED = ("service_reconcile_failed", "platform",
                                "Creating or deleting a service instance failed")
    STAGING_CORRUPTED = ("staging_corrupted", "configuration",
                         "Transferred artifact did not unpack to a single directory")
    PUSH_TIMEOUT = ("push_timeout", "push",
                    "Push did not finish within the configured timeout")
    PUSH_FAILED = ("push_failed", "push",
                   "The platform reported the push as failed")
    TOKEN_EXPANSION_FAILED = ("token_expansion_failed", "configuration",
                              "A ${...} placeholder could not be expanded")
    INTERRUPTED = ("interrupted", "interrupted",
                   "The run was cancelled")

    def __init__(self, code: str, category: str, hint: str):
        self.code = code
        self.category = category
        self.hint = hint

    def __str__(self) -> str:
        return self.code


class DeployError(Exception):
    """A classified orchestration failure."""

    def __init__(self, kind: ErrorKind, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.detail = detail or {}

    def __str__(self) -> str:
        return f"[{self.kind.code}] {self.message}"

    def describe(self) -> str:
        """Render the failure line shown to operators."""
        return f"ERROR ({self.kind.category}): {self}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.code,
            "category": self.kind.category,
            "message": self.message,
            "hint": self.kind.hint,
            "detail": self.detail,
        }


class PlatformApiError(DeployError):
    """Platform API failure with its status, error code and description preserved."""

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None,
                 description: Optional[str] = None, kind: ErrorKind = ErrorKind.PLATFORM_API_ERROR):
        detail = {"status": status, "code": code, "description": description}
        super().__init__(kind, message, detail)
        self.status = status
        self.code = code
        self.description = description

    def __str__(self) -> str:
        parts = [f"[{self.kind.code}] {self.message}"]
        if self.status is not None or self.code or self.description:
            parts.append(f"(status={self.status}, code={self.code}, description={self.description})")
        return " ".join(parts)

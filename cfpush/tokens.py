"""
Build-token expansion for manifest text and inline manifest fields.

Recognised placeholders are ``${NAME}`` and ``$NAME`` where NAME is a build
variable; ``$$`` yields a literal ``$``. Unknown variables are left in place
(the platform expands ``$PORT`` and friends at runtime). An unterminated
``${`` or an empty ``${}`` is an error.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from .errors import DeployError, ErrorKind

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"\$(?:(?P<escaped>\$)|\{(?P<braced>[^}]*)\}|(?P<bare>[A-Za-z_][A-Za-z0-9_]*)|(?P<open>\{))")
NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass
class BuildContext:
    """Build metadata available to token expansion."""
    workspace: Path
    env: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_environ(cls, workspace: Path, extra: Optional[Dict[str, str]] = None) -> "BuildContext":
        env = dict(os.environ)
        env["WORKSPACE"] = str(workspace)
        if extra:
            env.update(extra)
        return cls(workspace=Path(workspace), env=env)


class TokenExpander:
    """Expands build tokens against a BuildContext."""

    def __init__(self, context: BuildContext):
        self.context = context

    def expand(self, text: Optional[str]) -> Optional[str]:
        """
        Expand all recognised placeholders in ``text``.
        
        Args:
            text: Raw string (None passes through)
            
        Returns:
            Expanded string
            
        Raises:
            DeployError: TOKEN_EXPANSION_FAILED on malformed placeholders
        """
        if text is None or "$" not in text:
            return text

        def substitute(match: re.Match) -> str:
            if match.group("escaped") is not None:
                return "$"
            if match.group("open") is not None:
                raise DeployError(ErrorKind.TOKEN_EXPANSION_FAILED,
                                  f"Unterminated '${{' in: {text}")
            name = match.group("braced")
            if name is not None:
                name = name.strip()
                if not NAME_PATTERN.match(name):
                    raise DeployError(ErrorKind.TOKEN_EXPANSION_FAILED,
                                      f"Invalid placeholder '${{{name}}}' in: {text}")
            else:
                name = match.group("bare")
            if name in self.context.env:
                return str(self.context.env[name])
            logger.debug(f"Token {name} is not a build variable, leaving it unexpanded")
            return match.group(0)

        return TOKEN_PATTERN.sub(substitute, text)

    def expand_lines(self, text: str) -> str:
        """Expand a multi-line blob line by line."""
        return "".join(self.expand(line) for line in text.splitlines(keepends=True))

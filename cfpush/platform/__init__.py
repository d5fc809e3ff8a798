"""
Platform capability surface.

Concrete clients live in submodules (``cfpush.platform.cf_cli``).
"""

from .base import PlatformClient, ClientFactory

__all__ = [
    "PlatformClient",
    "ClientFactory",
]

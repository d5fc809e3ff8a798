from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

if TYPE_CHECKING:
    from ..connection import ConnectionHandle
    from ..manifest import ResolvedManifest
    from ..services import ServiceInventoryEntry


class PlatformClient(ABC):
    """
    Operations the orchestrator consumes from the platform.

    Implementations raise DeployError/PlatformApiError with the platform's
    status, code and description preserved. Each call is synchronous.
    """

    @abstractmethod
    def get_endpoint_info(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Unauthenticated info/health document of the API endpoint."""

    @abstractmethod
    def list_service_instances(self) -> List["ServiceInventoryEntry"]:
        ...

    @abstractmethod
    def create_service_instance(self, service_type: str, plan: str, name: str) -> None:
        ...

    @abstractmethod
    def delete_service_instance(self, name: str) -> None:
        ...

    @abstractmethod
    def push_manifest(self, manifest: "ResolvedManifest", timeout: Optional[float] = None) -> None:
        ...

    @abstractmethod
    def list_routes(self, app_name: str, timeout: Optional[float] = None) -> List[str]:
        ...

    @abstractmethod
    def fetch_recent_logs(self, app_name: str, timeout: Optional[float] = None) -> List[str]:
        ...

    def cancel(self) -> None:
        """
        Abort calls in flight and refuse new ones.

        May be called from any thread. Aborted calls raise INTERRUPTED.
        """

    def close(self) -> None:
        """Release per-run resources."""


ClientFactory = Callable[["ConnectionHandle"], PlatformClient]

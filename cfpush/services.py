"""
Reconciles the requested service instances against the platform inventory.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set

from .errors import DeployError, ErrorKind
from .events import EventTypes, RunLog
from .platform.base import PlatformClient

logger = logging.getLogger(__name__)

CREATE = "create"
SKIP = "skip"
RESET = "reset"


@dataclass(frozen=True)
class ServiceRequest:
    name: str
    type: str
    plan: str
    reset_if_exists: bool = False


@dataclass(frozen=True)
class ServiceInventoryEntry:
    name: str


@dataclass(frozen=True)
class ServiceAction:
    request: ServiceRequest
    action: str  # CREATE, SKIP or RESET


def plan_reconciliation(requests: Iterable[ServiceRequest],
                        inventory: Iterable[ServiceInventoryEntry]) -> List[ServiceAction]:
    """
    Decide, in declaration order, what to do for each requested service.

    Names created earlier in the same plan count as existing, so a repeated
    name is skipped or reset rather than created twice.
    """
    existing: Set[str] = {entry.name for entry in inventory}
    seen: Set[str] = set()
    actions = []
    for request in requests:
        if request.name in seen:
            logger.warning(f"Service {request.name} is requested more than once; later entries win")
        seen.add(request.name)

        if request.name not in existing:
            actions.append(ServiceAction(request, CREATE))
            existing.add(request.name)
        elif request.reset_if_exists:
            actions.append(ServiceAction(request, RESET))
        else:
            actions.append(ServiceAction(request, SKIP))
    return actions


def reconcile_services(client: PlatformClient, requests: List[ServiceRequest],
                       inventory: Optional[List[ServiceInventoryEntry]] = None,
                       log: Optional[RunLog] = None) -> List[ServiceAction]:
    """
    Create, reset or skip each requested service instance.

    Args:
        client: Platform client
        requests: Requested services in declaration order
        inventory: Snapshot of existing instances (listed from the platform if None)
        log: Run log sink

    Returns:
        The executed actions

    Raises:
        DeployError: SERVICE_RECONCILE_FAILED on the first failing call
    """
    log = log or RunLog()
    if not requests:
        return []

    if inventory is None:
        inventory = _list_inventory(client)
        log.event(EventTypes.SERVICES_LISTED, {"names": [e.name for e in inventory]})

    actions = plan_reconciliation(requests, inventory)
    for action in actions:
        request = action.request
        if action.action == SKIP:
            log.line(f"Service {request.name} already exists, skipping creation.")
            log.event(EventTypes.SERVICE_SKIP, {"name": request.name})
            continue

        if action.action == RESET:
            log.line(f"Service {request.name} already exists, resetting.")
            _call(client.delete_service_instance, request, "delete", request.name)
            log.line("Service deleted.")
            log.event(EventTypes.SERVICE_DELETE, {"name": request.name})

        log.line(f"Creating service {request.name}")
        _call(client.create_service_instance, request, "create", request.type, request.plan, request.name)
        log.event(EventTypes.SERVICE_CREATE, {"name": request.name, "type": request.type, "plan": request.plan})

    return actions


def _list_inventory(client: PlatformClient) -> List[ServiceInventoryEntry]:
    try:
        return list(client.list_service_instances())
    except DeployError as e:
        if e.kind is not ErrorKind.PLATFORM_API_ERROR:
            raise
        raise DeployError(ErrorKind.SERVICE_RECONCILE_FAILED,
                          f"Could not list service instances: {e}", e.detail) from e


def _call(fn, request: ServiceRequest, verb: str, *args) -> None:
    try:
        fn(*args)
    except DeployError as e:
        if e.kind is not ErrorKind.PLATFORM_API_ERROR:
            raise
        raise DeployError(ErrorKind.SERVICE_RECONCILE_FAILED,
                          f"Failed to {verb} service {request.name}: {e}", e.detail) from e

"""
Base controller protocol and the dry-run implementation.

Controllers are the boundary between envorchestra and the systems that
actually own resources (cloud provider CLIs/SDKs, the cluster API, the
chart installer). The orchestrators only ever call three methods:

- create(descriptor) -> handle
- delete(descriptor, handle) -> None
- describe(descriptor, handle) -> ResourceStatus

Error contract:
- TransientError: safe to retry (throttling, network blip, dependency not ready)
- PermanentError: never retried (invalid configuration, quota, access denied)
- delete() of a resource that no longer exists must succeed (idempotent)
- describe() of a resource that does not exist returns ResourceStatus.ABSENT
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

from envorchestra.schemas import ResourceDescriptor, ResourceStatus

logger = logging.getLogger(__name__)


class ResourceController(ABC):
    """
    Abstract base class for resource controllers.

    `handle` is whatever create() returned (None when unknown, e.g. when
    tearing down an environment provisioned by an earlier process);
    controllers must be able to locate the resource from the descriptor's
    params alone in that case.
    """

    @abstractmethod
    def create(self, descriptor: ResourceDescriptor) -> Any:
        """
        Issue the create call for a resource.

        Args:
            descriptor: The resource to create

        Returns:
            Opaque handle identifying the created resource (JSON-serializable)

        Raises:
            TransientError: Retry-eligible failure
            PermanentError: Deterministic failure
        """
        pass

    @abstractmethod
    def delete(self, descriptor: ResourceDescriptor, handle: Optional[Any] = None) -> None:
        """
        Issue the delete call for a resource. Deleting an absent resource succeeds.

        Raises:
            TransientError: Retry-eligible failure
            PermanentError: Deterministic failure
        """
        pass

    @abstractmethod
    def describe(self, descriptor: ResourceDescriptor, handle: Optional[Any] = None) -> ResourceStatus:
        """
        Report the resource's current status.

        Raises:
            TransientError: The status call itself failed transiently
            PermanentError: The status call cannot succeed
        """
        pass


class DryRunController(ResourceController):
    """
    In-memory controller for dry-run mode.

    Tracks which resources "exist" without touching anything; every created
    resource is immediately Ready and every deleted one immediately Absent.
    """

    def __init__(self, existing: Iterable[str] = ()) -> None:
        """
        Args:
            existing: Resource ids that already "exist" (dry-run teardown)
        """
        self._lock = threading.Lock()
        self._existing: set[str] = set(existing)

    def create(self, descriptor: ResourceDescriptor) -> Any:
        logger.info(f"[DRY-RUN] would create {descriptor.kind.value} '{descriptor.id}'")
        with self._lock:
            self._existing.add(descriptor.id)
        return f"dry-run:{descriptor.id}"

    def delete(self, descriptor: ResourceDescriptor, handle: Optional[Any] = None) -> None:
        logger.info(f"[DRY-RUN] would delete {descriptor.kind.value} '{descriptor.id}'")
        with self._lock:
            self._existing.discard(descriptor.id)

    def describe(self, descriptor: ResourceDescriptor, handle: Optional[Any] = None) -> ResourceStatus:
        with self._lock:
            exists = descriptor.id in self._existing
        return ResourceStatus.READY if exists else ResourceStatus.ABSENT

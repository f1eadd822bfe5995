"""
Controller Registry for dispatching resources to the right controller.

The registry maps controller names to ResourceController instances. A
descriptor is routed by its explicit `controller` field when set, otherwise
by its kind ("cluster", "managed_database", ...), falling back to the
registry's default controller.
"""

from typing import Iterable, Optional

from envorchestra.controllers.base import DryRunController, ResourceController
from envorchestra.errors import ControllerNotFoundError
from envorchestra.schemas import ResourceDescriptor, ResourceKind


class ControllerRegistry:
    """
    Registry for controller lookup by name.

    Usage:
        registry = ControllerRegistry()
        registry.register("command", CommandController())
        registry.set_default("command")

        controller = registry.for_descriptor(descriptor)

        # Or use factories
        registry = ControllerRegistry.create_default()
        registry = ControllerRegistry.create_dry_run()
    """

    def __init__(self, catch_all: Optional[ResourceController] = None) -> None:
        """
        Args:
            catch_all: Controller used for any name that is not registered
        """
        self._controllers: dict[str, ResourceController] = {}
        self._default: Optional[str] = None
        self._catch_all = catch_all

    def register(self, name: str, controller: ResourceController) -> None:
        """
        Register a controller under a name (a kind value or a custom name).

        Args:
            name: Controller name (e.g. "command", "cluster")
            controller: Controller instance
        """
        self._controllers[name] = controller

    def set_default(self, name: str) -> None:
        """Use the controller registered under `name` for otherwise unrouted descriptors."""
        if name not in self._controllers:
            raise ControllerNotFoundError(name, self.list_controllers())
        self._default = name

    def get(self, name: str) -> ResourceController:
        """
        Get controller by name.

        Raises:
            ControllerNotFoundError: If no controller registered under this name
        """
        if name in self._controllers:
            return self._controllers[name]
        if self._catch_all is not None:
            return self._catch_all
        raise ControllerNotFoundError(name, self.list_controllers())

    def has(self, name: str) -> bool:
        return name in self._controllers

    def list_controllers(self) -> list[str]:
        return list(self._controllers.keys())

    def for_descriptor(self, descriptor: ResourceDescriptor) -> ResourceController:
        """
        Resolve the controller for a descriptor.

        Raises:
            ControllerNotFoundError: If neither the descriptor's controller,
                its kind, nor a default is registered
        """
        if descriptor.controller is not None:
            return self.get(descriptor.controller)
        if descriptor.kind.value in self._controllers:
            return self._controllers[descriptor.kind.value]
        if self._default is not None:
            return self._controllers[self._default]
        raise ControllerNotFoundError(descriptor.controller_name, self.list_controllers())

    @classmethod
    def create_default(cls, timeout: Optional[float] = None) -> "ControllerRegistry":
        """
        Create a registry where every kind is driven by provider CLI commands.

        Args:
            timeout: Per-command timeout in seconds for the CommandController

        Returns:
            ControllerRegistry with "command" registered as default
        """
        from envorchestra.controllers.command import CommandController

        registry = cls()
        registry.register("command", CommandController(timeout=timeout))
        registry.set_default("command")
        return registry

    @classmethod
    def create_dry_run(cls, existing: Iterable[str] = ()) -> "ControllerRegistry":
        """
        Create a registry where every kind and name resolves to one DryRunController.

        Useful for testing and dry-run mode.

        Args:
            existing: Resource ids the dry-run controller treats as already present
        """
        controller = DryRunController(existing)
        registry = cls(catch_all=controller)
        registry.register("dry-run", controller)
        registry.register("command", controller)
        for kind in ResourceKind:
            registry.register(kind.value, controller)
        registry.set_default("dry-run")
        return registry

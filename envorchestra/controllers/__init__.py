"""
Controllers module - the boundary to the systems that own resources.

envorchestra sequences, waits on, retries and rolls back resources; the
controllers perform the actual calls:
- CommandController: provider CLIs (aws, eksctl, helm, kubectl) via subprocess
- DryRunController: in-memory, touches nothing

Usage:
    from envorchestra.controllers import ControllerRegistry, CommandController

    registry = ControllerRegistry()
    registry.register("command", CommandController(timeout=600))
    registry.set_default("command")

    # Or use factories
    registry = ControllerRegistry.create_default()
    registry = ControllerRegistry.create_dry_run()
"""

from envorchestra.controllers.base import ResourceController, DryRunController
from envorchestra.controllers.command import CommandController
from envorchestra.controllers.registry import ControllerRegistry

__all__ = [
    "ResourceController",
    "DryRunController",
    "CommandController",
    "ControllerRegistry",
]

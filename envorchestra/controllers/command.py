"""
CommandController - drive provider CLIs (aws, eksctl, helm, kubectl).

Each descriptor carries command templates in its params:

    params:
      create: eksctl create cluster --name ${CLUSTER_NAME} --region ${AWS_REGION}
      delete: eksctl delete cluster --name ${CLUSTER_NAME} --region ${AWS_REGION}
      describe: aws eks describe-cluster --name ${CLUSTER_NAME} --query cluster.status --output text
      status_map: {ACTIVE: ready, CREATING: pending, FAILED: failed, DELETING: pending}
      status_path: (optional) dotted path into JSON describe output
      absent_patterns: [ResourceNotFoundException]
      vars: {NODE_TYPE: t3a.medium}

Templates use ${VAR} placeholders, resolved from `vars`, then RESOURCE_ID,
then the process environment (credentials, profile, region); `$$` is a
literal dollar sign. Commands are split with shlex and run without a shell
unless `shell: true`.

Error classification (output matched case-insensitively):
- Output matching a transient pattern (throttling, timeouts, connection
  resets, dependency violations) -> TransientError
- Command timeout -> TransientError
- Missing executable, exit 126/127 from the shell, or unresolved
  placeholder -> PermanentError
- Anything else non-zero -> PermanentError

describe() returns ABSENT when the command fails with output matching an
absent pattern; delete() treats the same output as success.

Commands run in their own session, so a terminal Ctrl-C reaches only the
orchestrator; cancellation goes through the run's cancel event and the
command in flight finishes.
"""

import json
import logging
import os
import re
import shlex
import subprocess
from string import Template
from typing import Any, Optional, Union

from envorchestra.controllers.base import ResourceController
from envorchestra.errors import PermanentError, TransientError
from envorchestra.schemas import ResourceDescriptor, ResourceStatus

logger = logging.getLogger(__name__)

DEFAULT_TRANSIENT_PATTERNS = (
    "throttl",
    "rate exceeded",
    "requestlimitexceeded",
    "toomanyrequests",
    "timed out",
    "timeout",
    "connection reset",
    "connection refused",
    "serviceunavailable",
    "service unavailable",
    "internalerror",
    "internal server error",
    "dependencyviolation",
    "invaliddbinstancestate",
    "invaliddbsubnetgroupstate",
    "resourceinuse",
    "try again",
)

DEFAULT_ABSENT_PATTERNS = (
    "notfound",
    "does not exist",
    "release: not found",
)

DEFAULT_EXISTS_PATTERNS = (
    "already exists",
    "alreadyexists",
)

Command = Union[str, list[str]]


def _matches(output: str, patterns: tuple[str, ...]) -> bool:
    lowered = output.lower()
    return any(p.lower() in lowered for p in patterns)


class CommandController(ResourceController):
    """Controller that shells out to provider CLIs configured per descriptor."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        environ: Optional[dict[str, str]] = None,
    ):
        """
        Args:
            timeout: Per-command timeout in seconds (None waits indefinitely)
            environ: Environment for placeholder resolution and child processes
                     (defaults to os.environ at call time)
        """
        self._timeout = timeout
        self._environ = environ

    # -- ResourceController ---------------------------------------------------

    def create(self, descriptor: ResourceDescriptor) -> Any:
        result = self._run(descriptor, "create")
        if result.returncode != 0:
            output = _combined(result)
            if _matches(output, self._patterns(descriptor, "exists_patterns", DEFAULT_EXISTS_PATTERNS)):
                logger.info(f"'{descriptor.id}' already exists; treating create as done")
                return self._handle_from(result.stdout)
            raise self._classify(descriptor, "create", result)
        return self._handle_from(result.stdout)

    def delete(self, descriptor: ResourceDescriptor, handle: Optional[Any] = None) -> None:
        result = self._run(descriptor, "delete", handle)
        if result.returncode == 0:
            return
        output = _combined(result)
        if _matches(output, self._patterns(descriptor, "absent_patterns", DEFAULT_ABSENT_PATTERNS)):
            logger.info(f"'{descriptor.id}' already absent; delete is a no-op")
            return
        raise self._classify(descriptor, "delete", result)

    def describe(self, descriptor: ResourceDescriptor, handle: Optional[Any] = None) -> ResourceStatus:
        result = self._run(descriptor, "describe", handle)
        output = _combined(result)
        if result.returncode != 0:
            if _matches(output, self._patterns(descriptor, "absent_patterns", DEFAULT_ABSENT_PATTERNS)):
                return ResourceStatus.ABSENT
            raise self._classify(descriptor, "describe", result)

        status_map = descriptor.params.get("status_map")
        if not status_map:
            return ResourceStatus.READY

        raw = result.stdout.strip()
        status_path = descriptor.params.get("status_path")
        if status_path:
            raw = _extract(raw, status_path, descriptor.id)
        raw = raw.strip('"')
        lookup = {str(k).lower(): ResourceStatus(v) for k, v in status_map.items()}
        status = lookup.get(raw.lower())
        if status is None:
            logger.debug(f"'{descriptor.id}' reported unmapped status {raw!r}; treating as pending")
            return ResourceStatus.PENDING
        return status

    # -- helpers ----------------------------------------------------------------

    def _environment(self) -> dict[str, str]:
        return dict(os.environ) if self._environ is None else dict(self._environ)

    def _patterns(self, descriptor: ResourceDescriptor, key: str, defaults: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(defaults) + tuple(descriptor.params.get(key, ()))

    def render(self, descriptor: ResourceDescriptor, action: str, handle: Optional[Any] = None) -> list[str]:
        """
        Render the command for an action into an argv list.

        Raises:
            PermanentError: If the action has no command or a placeholder is unresolved
        """
        template: Optional[Command] = descriptor.params.get(action)
        if not template:
            raise PermanentError(f"Resource '{descriptor.id}' has no '{action}' command")

        mapping = self._environment()
        mapping["RESOURCE_ID"] = descriptor.id
        if handle is not None and not isinstance(handle, (dict, list)):
            mapping["HANDLE"] = str(handle)
        mapping.update({k: str(v) for k, v in descriptor.params.get("vars", {}).items()})

        try:
            if isinstance(template, list):
                return [Template(str(part)).substitute(mapping) for part in template]
            rendered = Template(template).substitute(mapping)
        except KeyError as e:
            raise PermanentError(
                f"Resource '{descriptor.id}': unresolved placeholder {e} in '{action}' command"
            ) from e
        except ValueError as e:
            raise PermanentError(
                f"Resource '{descriptor.id}': invalid placeholder in '{action}' command: {e}"
            ) from e

        if descriptor.params.get("shell", False):
            return ["/bin/sh", "-c", rendered]
        return shlex.split(rendered)

    def _run(self, descriptor: ResourceDescriptor, action: str, handle: Optional[Any] = None) -> subprocess.CompletedProcess:
        argv = self.render(descriptor, action, handle)
        logger.debug(f"{action} '{descriptor.id}': {' '.join(shlex.quote(a) for a in argv)}")
        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                env=self._environment(),
                start_new_session=True,
            )
        except subprocess.TimeoutExpired as e:
            raise TransientError(
                f"{action} '{descriptor.id}' timed out after {e.timeout}s"
            ) from e
        except FileNotFoundError as e:
            raise PermanentError(f"{action} '{descriptor.id}': executable not found: {argv[0]}") from e

        # 126/127: the shell could not run the command at all
        if result.returncode in (126, 127):
            raise PermanentError(
                f"{action} '{descriptor.id}': command could not be run "
                f"(exit {result.returncode}): {_tail(_combined(result))}"
            )
        return result

    def _classify(self, descriptor: ResourceDescriptor, action: str, result: subprocess.CompletedProcess) -> Exception:
        output = _combined(result)
        message = f"{action} '{descriptor.id}' failed (exit {result.returncode}): {_tail(output)}"
        if _matches(output, self._patterns(descriptor, "transient_patterns", DEFAULT_TRANSIENT_PATTERNS)):
            return TransientError(message)
        return PermanentError(message)

    @staticmethod
    def _handle_from(stdout: str) -> Any:
        text = (stdout or "").strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text.splitlines()[-1]


def _extract(stdout: str, path: str, resource_id: str) -> str:
    """Follow a dotted path (e.g. "info.status") into JSON describe output."""
    try:
        value: Any = json.loads(stdout)
        for key in path.split("."):
            value = value[int(key)] if isinstance(value, list) else value[key]
    except (json.JSONDecodeError, KeyError, IndexError, ValueError, TypeError) as e:
        raise PermanentError(
            f"describe '{resource_id}': cannot read '{path}' from output: {_tail(stdout)}"
        ) from e
    return str(value)


def _combined(result: subprocess.CompletedProcess) -> str:
    return "\n".join(part for part in (result.stderr, result.stdout) if part)


def _tail(output: str, max_length: int = 500) -> str:
    """Last `max_length` characters of output, collapsed to one line."""
    text = re.sub(r"\s+", " ", output).strip()
    if len(text) > max_length:
        text = "..." + text[-max_length:]
    return text or "<no output>"

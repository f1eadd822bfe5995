"""
DescriptorRegistry - Load, validate and order resource descriptor sets.

The registry provides:
- Loading DescriptorSets from YAML or JSON files in a definitions directory
- Caching loaded definitions
- Structural validation (duplicate ids, unknown dependencies, cycles)
- Dependency ordering: topological_order() for creation,
  reverse_order() for deletion
- Content-addressable lookup via SHA256 hash

The reverse order is the exact reverse of the forward order, so dependents
are always deleted before the resources they depend on.
"""

import hashlib
import json
import os
from collections import deque
from pathlib import Path
from typing import Iterable, Optional

import yaml

from envorchestra.errors import CycleDetected, DescriptorValidationError
from envorchestra.schemas import DescriptorSet, ResourceDescriptor


class DescriptorNotFoundError(Exception):
    """Raised when a descriptor set is not found."""
    pass


def topological_order(descriptors: Iterable[ResourceDescriptor]) -> list[ResourceDescriptor]:
    """
    Order descriptors so every resource follows all of its dependencies.

    Uses Kahn's algorithm; among resources that are ready at the same time,
    declaration order wins, so the result is deterministic. Dependencies on
    ids outside `descriptors` are ignored, which lets callers order a subset
    of a validated set.

    Args:
        descriptors: Descriptors in declaration order

    Returns:
        Descriptors in creation order

    Raises:
        CycleDetected: If the dependency graph contains a cycle
    """
    items = list(descriptors)
    by_id = {d.id: d for d in items}
    position = {d.id: i for i, d in enumerate(items)}

    in_degree = {d.id: 0 for d in items}
    dependents: dict[str, list[str]] = {d.id: [] for d in items}
    for d in items:
        for dep in d.depends_on:
            if dep in by_id:
                in_degree[d.id] += 1
                dependents[dep].append(d.id)

    ready = deque(sorted((rid for rid, n in in_degree.items() if n == 0), key=position.get))
    ordered: list[ResourceDescriptor] = []
    while ready:
        rid = ready.popleft()
        ordered.append(by_id[rid])
        released = []
        for child in dependents[rid]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                released.append(child)
        # Keep declaration order among everything currently ready
        ready = deque(sorted(list(ready) + released, key=position.get))

    if len(ordered) != len(items):
        remaining = {rid for rid, n in in_degree.items() if n > 0}
        raise CycleDetected(_find_cycle(remaining, by_id))

    return ordered


def reverse_order(descriptors: Iterable[ResourceDescriptor]) -> list[ResourceDescriptor]:
    """
    Order descriptors for deletion: the exact reverse of topological_order().

    Raises:
        CycleDetected: If the dependency graph contains a cycle
    """
    return list(reversed(topological_order(descriptors)))


def _find_cycle(remaining: set[str], by_id: dict[str, ResourceDescriptor]) -> list[str]:
    """Return one cycle (first node repeated at the end) among `remaining`."""
    start = min(remaining)
    path: list[str] = []
    seen: dict[str, int] = {}
    node = start
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = sorted(dep for dep in by_id[node].depends_on if dep in remaining)[0]
    return path[seen[node]:] + [node]


def dependents_map(descriptors: Iterable[ResourceDescriptor]) -> dict[str, frozenset[str]]:
    """Map each id to the ids (within the set) that depend on it."""
    items = list(descriptors)
    ids = {d.id for d in items}
    result: dict[str, set[str]] = {d.id: set() for d in items}
    for d in items:
        for dep in d.depends_on:
            if dep in ids:
                result[dep].add(d.id)
    return {rid: frozenset(children) for rid, children in result.items()}


def validate(descriptors: Iterable[ResourceDescriptor]) -> list[ResourceDescriptor]:
    """
    Validate a descriptor set and return it in creation order.

    Checks:
    - ids are unique
    - no resource depends on itself
    - every dependency names a resource in the set
    - the dependency graph is acyclic

    Raises:
        DescriptorValidationError: On duplicate, self or unknown dependencies
        CycleDetected: If the dependency graph contains a cycle
    """
    items = list(descriptors)
    seen: set[str] = set()
    for d in items:
        if d.id in seen:
            raise DescriptorValidationError(f"Duplicate resource id: {d.id}")
        seen.add(d.id)

    for d in items:
        if d.id in d.depends_on:
            raise CycleDetected([d.id, d.id])
        unknown = sorted(d.depends_on - seen)
        if unknown:
            raise DescriptorValidationError(
                f"Resource '{d.id}' depends on unknown resource(s): {', '.join(unknown)}"
            )

    return topological_order(items)


def check_required_env(descriptor_set: DescriptorSet, environ: Optional[dict[str, str]] = None) -> None:
    """
    Ensure every variable listed in `required_env` is set and non-empty.

    Raises:
        DescriptorValidationError: Listing the missing variables
    """
    environ = os.environ if environ is None else environ
    missing = [var for var in descriptor_set.required_env if not environ.get(var)]
    if missing:
        raise DescriptorValidationError(
            f"Required environment variable(s) not set: {', '.join(missing)}"
        )


def load_descriptor_file(path: Path | str) -> DescriptorSet:
    """
    Load and validate a descriptor set from a YAML or JSON file.

    Raises:
        DescriptorNotFoundError: If the file does not exist
        DescriptorValidationError: If the file cannot be parsed or is invalid
        CycleDetected: If the dependency graph contains a cycle
    """
    path = Path(path)
    if not path.exists():
        raise DescriptorNotFoundError(f"Descriptor file not found: {path}")

    suffix = path.suffix.lower()
    try:
        with open(path) as f:
            if suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            elif suffix == ".json":
                data = json.load(f)
            else:
                raise ValueError(f"Unsupported file format: {suffix}")
        descriptor_set = DescriptorSet.from_dict(data)
    except (ValueError, KeyError, TypeError, yaml.YAMLError) as e:
        raise DescriptorValidationError(f"Invalid descriptor set in {path}: {e}") from e

    validate(descriptor_set.resources)
    return descriptor_set


class DescriptorRegistry:
    """
    Registry for loading and caching descriptor sets.

    Example directory structure:
        environments/
            reports-server-test.yaml
            staging/
                reports-server-staging.yaml
    """

    def __init__(self, definitions_dir: Path | str):
        """
        Initialize the registry.

        Args:
            definitions_dir: Directory containing descriptor set files
        """
        self._definitions_dir = Path(definitions_dir)
        self._cache: dict[str, DescriptorSet] = {}
        self._hash_index: dict[str, str] = {}  # sha256 -> name

    @property
    def definitions_dir(self) -> Path:
        return self._definitions_dir

    def resolve(self, name_or_path: str) -> Path:
        """
        Resolve a descriptor set name or file path to a file.

        An existing path is used as-is; otherwise the name is looked up as
        {name}.yaml / {name}.yml / {name}.json in the definitions directory.

        Raises:
            DescriptorNotFoundError: If nothing matches
        """
        candidate = Path(name_or_path)
        if candidate.is_file():
            return candidate

        found = self._find_definition(name_or_path)
        if found is None:
            raise DescriptorNotFoundError(f"Descriptor set not found: {name_or_path}")
        return found

    def load(self, name_or_path: str) -> DescriptorSet:
        """
        Load and validate a descriptor set by name or path.

        Results are cached by resolved path.

        Raises:
            DescriptorNotFoundError: If the set doesn't exist
            DescriptorValidationError: If the set is invalid
            CycleDetected: If the dependency graph contains a cycle
        """
        path = self.resolve(name_or_path)
        key = str(path.resolve())
        if key in self._cache:
            return self._cache[key]

        descriptor_set = load_descriptor_file(path)
        self._cache[key] = descriptor_set
        self._hash_index[self.compute_hash(descriptor_set)] = key
        return descriptor_set

    def load_by_hash(self, sha256: str) -> Optional[DescriptorSet]:
        """Return a previously loaded descriptor set by content hash."""
        key = self._hash_index.get(sha256)
        if key is None:
            return None
        return self._cache.get(key)

    def list_sets(self) -> list[str]:
        """Sorted names of all descriptor sets in the definitions directory."""
        if not self._definitions_dir.exists():
            return []

        names = set()
        for ext in ["*.yaml", "*.yml", "*.json"]:
            for f in self._definitions_dir.glob(f"**/{ext}"):
                if "_deprecated" not in str(f):
                    names.add(f.stem)
        return sorted(names)

    def _find_definition(self, name: str) -> Optional[Path]:
        for ext in [".yaml", ".yml", ".json"]:
            filename = f"{name}{ext}"

            root_path = self._definitions_dir / filename
            if root_path.exists():
                return root_path

            matches = list(self._definitions_dir.glob(f"**/{filename}"))
            if matches:
                return matches[0]

        return None

    @staticmethod
    def compute_hash(descriptor_set: DescriptorSet) -> str:
        """SHA256 of the canonical JSON serialization of a descriptor set."""
        canonical = json.dumps(descriptor_set.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def clear_cache(self) -> None:
        self._cache.clear()
        self._hash_index.clear()

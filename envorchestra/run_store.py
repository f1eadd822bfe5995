"""
RunStore - Persist run reports.

Every provision and decommission invocation saves its RunReport so that:
- `decommission --from-run latest|<run_id>` can reuse the recorded
  provisioning state (what was created, controller handles)
- `runs list` / `runs show` can inspect past runs

Storage backends:
- In-memory (for testing)
- File-based: one JSON file per run under the configured runs directory
"""

import json
import logging
import os
import random
import tempfile
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from envorchestra.report import RunReport

logger = logging.getLogger(__name__)


def generate_ulid() -> str:
    """
    Generate a ULID (Universally Unique Lexicographically Sortable Identifier).

    ULIDs are 26 characters, encoding:
    - 48 bits of timestamp (milliseconds since Unix epoch)
    - 80 bits of randomness

    Lexicographic order of ids follows creation time, which is what
    `latest()` relies on.
    """
    # Crockford's Base32 alphabet (excludes I, L, O, U)
    alphabet = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = []
    for _ in range(10):
        timestamp_chars.append(alphabet[timestamp_ms & 0x1F])
        timestamp_ms >>= 5
    timestamp_part = "".join(reversed(timestamp_chars))

    random_part = "".join(random.choice(alphabet) for _ in range(16))

    return timestamp_part + random_part


class RunStore(ABC):
    """Abstract base class for run report storage."""

    @abstractmethod
    def save(self, report: RunReport) -> str:
        """
        Store a report.

        Returns:
            A reference string for the stored report
        """
        pass

    @abstractmethod
    def load(self, run_id: str) -> Optional[RunReport]:
        """Retrieve a report by run id, or None if not found."""
        pass

    @abstractmethod
    def list_runs(self) -> list[RunReport]:
        """All stored reports, newest first."""
        pass

    def latest(
        self,
        environment: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> Optional[RunReport]:
        """
        Most recent report, optionally filtered.

        Args:
            environment: Only reports for this descriptor set
            operation: Only "provision" or "decommission" reports
        """
        for report in self.list_runs():
            if environment is not None and report.environment != environment:
                continue
            if operation is not None and report.operation != operation:
                continue
            return report
        return None


class InMemoryRunStore(RunStore):
    """
    In-memory implementation of RunStore for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self):
        self._reports: dict[str, RunReport] = {}

    def save(self, report: RunReport) -> str:
        self._reports[report.run_id] = report
        return f"mem://{report.run_id}"

    def load(self, run_id: str) -> Optional[RunReport]:
        return self._reports.get(run_id)

    def list_runs(self) -> list[RunReport]:
        return [self._reports[rid] for rid in sorted(self._reports, reverse=True)]

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        self._reports.clear()


class FileRunStore(RunStore):
    """
    File-based implementation of RunStore.

    Stores reports as JSON files:
        runs_dir/
            {run_id}.json
    """

    def __init__(self, runs_dir: Path | str):
        self._runs_dir = Path(runs_dir)

    @property
    def runs_dir(self) -> Path:
        return self._runs_dir

    def save(self, report: RunReport) -> str:
        self._runs_dir.mkdir(parents=True, exist_ok=True)
        path = self._runs_dir / f"{report.run_id}.json"
        # Serialize first so a failure never leaves a partial file behind
        text = json.dumps(report.to_dict(), indent=2)
        fd, tmp_path = tempfile.mkstemp(dir=self._runs_dir, prefix=f".{report.run_id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(text)
            os.replace(tmp_path, path)
        except BaseException:
            os.unlink(tmp_path)
            raise
        return f"file://{path}"

    def load(self, run_id: str) -> Optional[RunReport]:
        path = self._runs_dir / f"{run_id}.json"
        if not path.exists():
            return None
        with open(path) as f:
            data = json.load(f)
        return RunReport.from_dict(data)

    def list_runs(self) -> list[RunReport]:
        if not self._runs_dir.exists():
            return []
        reports = []
        for path in sorted(self._runs_dir.glob("*.json"), reverse=True):
            try:
                with open(path) as f:
                    reports.append(RunReport.from_dict(json.load(f)))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable run file {path.name}: {e}")
        return reports

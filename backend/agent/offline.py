"""Disk buffer for result reports the control plane could not accept."""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_SEQUENCE_RE = re.compile(r"^(\d{12})-")


@dataclass(slots=True)
class OfflineBufferConfig:
    directory: Path
    max_files: int = 500
    max_age_seconds: int = 24 * 3600


class OfflineBuffer:
    """Unsent reports, one JSON file each, named by a sequence number.

    The sequence keeps replay order equal to production order across agent
    restarts. Reports are signed again when replayed, so age only matters for
    pruning.
    """

    def __init__(self, config: OfflineBufferConfig):
        self.config = config
        self.config.directory.mkdir(parents=True, exist_ok=True)
        self._next_sequence = self._last_sequence() + 1

    def _last_sequence(self) -> int:
        last = 0
        for path in self.config.directory.glob("*.json"):
            match = _SEQUENCE_RE.match(path.name)
            if match:
                last = max(last, int(match.group(1)))
        return last

    def write(self, report: dict) -> Path:
        instruction_id = str(report.get("instruction_id") or "unknown")
        path = self.config.directory / f"{self._next_sequence:012d}-{instruction_id}.json"
        self._next_sequence += 1

        staging = path.with_suffix(".partial")
        staging.write_text(json.dumps(report, default=str))
        staging.replace(path)
        self._prune()
        return path

    def list_pending(self) -> list[Path]:
        """Buffered report files, oldest first."""
        return sorted(self.config.directory.glob("*.json"))

    def load(self, path: Path) -> dict:
        return json.loads(path.read_text())

    def ack_delete(self, path: Path) -> None:
        path.unlink(missing_ok=True)

    def backlog_size(self) -> int:
        return len(self.list_pending())

    def _prune(self) -> None:
        cutoff = time.time() - self.config.max_age_seconds
        pending = []
        for path in self.list_pending():
            if path.stat().st_mtime < cutoff:
                path.unlink(missing_ok=True)
                logger.info("offline_report_expired", extra={"file": path.name})
            else:
                pending.append(path)

        overflow = len(pending) - self.config.max_files
        for path in pending[: max(overflow, 0)]:
            path.unlink(missing_ok=True)
            logger.warning("offline_report_dropped", extra={"file": path.name})

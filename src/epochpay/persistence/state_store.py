"""State store — JSON snapshot of the settlement service's components.

The snapshot is a single document with one section per component
(roles, policies, balances, ledger, claims), each produced by that
component's ``to_records()``. Writes go to a temporary sibling file that
then replaces the snapshot, so a crash mid-write leaves the previous
snapshot intact.

The event log remains the audit trail; the state store is the fast
restart path and can lag it (see ``persistence_degraded`` in the service).
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

SECTIONS = ("roles", "policies", "balances", "ledger", "claims")


class StateStore:
    """Reads and writes the service snapshot at ``path``."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def save(self, sections: dict[str, Any]) -> None:
        """Write all sections atomically. Raises OSError on failure."""
        unknown = set(sections) - set(SECTIONS)
        if unknown:
            raise ValueError(f"Unknown state sections: {sorted(unknown)}")
        document = {
            "version": SNAPSHOT_VERSION,
            "saved_utc": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            **sections,
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(document, f, sort_keys=True, indent=2, ensure_ascii=False)
            f.write("\n")
        os.replace(tmp, self._path)

    def load(self) -> Optional[dict[str, Any]]:
        """Return the stored sections, or None if no snapshot exists.

        Raises ValueError for a snapshot written by an unknown version.
        """
        if not self._path.exists():
            return None
        with self._path.open("r", encoding="utf-8") as f:
            document = json.load(f)
        version = document.get("version")
        if version != SNAPSHOT_VERSION:
            raise ValueError(f"Unsupported state snapshot version: {version!r}")
        logger.debug("Loaded state snapshot from %s", self._path)
        return {name: document[name] for name in SECTIONS if name in document}

"""JSONL audit trail for review and merge actions."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List

from conceptkb.storage.schemas import utc_now
from conceptkb.utils.config import CurationConfig


class CurationAuditTrail:
    """Simple JSONL audit trail for curation actions."""

    def __init__(
        self,
        path: Path,
        *,
        enabled: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.path = Path(path)
        self.enabled = enabled
        self._clock = clock or utc_now
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_config(cls, config: CurationConfig) -> "CurationAuditTrail":
        return cls(Path(config.audit_path), enabled=config.enable_audit_trail)

    def record(self, event: str, payload: Dict[str, object]) -> None:
        """Append an audit entry to disk."""
        if not self.enabled:
            return

        entry = {
            "event": event,
            "payload": payload,
            "timestamp": self._clock().isoformat(),
        }
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, sort_keys=True, default=str) + "\n")

    def entries(self, event: str | None = None) -> List[Dict[str, object]]:
        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8") as handle:
            rows = [json.loads(line) for line in handle if line.strip()]
        return [row for row in rows if event is None or row.get("event") == event]

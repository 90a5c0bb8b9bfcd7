"""
Deployment state stores.

- SessionStore: append-only records keyed by session id, optionally mirrored
  to a JSON-lines file.
- WarmPoolStore: one mutable record per target, optionally persisted as JSON.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

from .models import DeploymentSession, WarmPool

logger = logging.getLogger(__name__)


class SessionStore:
    """Append-only session records."""

    FILENAME = "sessions.jsonl"

    def __init__(self, data_dir: Optional[Union[str, Path]] = None):
        self._records: Dict[str, List[dict]] = {}
        self.path: Optional[Path] = Path(data_dir) / self.FILENAME if data_dir else None

    def append(self, session: DeploymentSession) -> None:
        """Append the session's current state as a new record."""
        record = session.to_dict()
        self._records.setdefault(session.session_id, []).append(record)

        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record) + "\n")
        except OSError as e:
            logger.error(f"Failed to persist session {session.session_id}: {e}")

    def get(self, session_id: str) -> Optional[DeploymentSession]:
        """Latest record for a session."""
        records = self._records.get(session_id)
        if not records:
            return None
        return DeploymentSession.from_dict(records[-1])

    def records(self, session_id: str) -> List[dict]:
        return list(self._records.get(session_id, []))

    def session_ids(self) -> List[str]:
        return list(self._records)

    def load(self) -> int:
        """Load records from disk. Returns the number of records read."""
        if self.path is None or not self.path.exists():
            return 0

        count = 0
        with open(self.path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.warning(f"Skipping corrupt session record at line {line_no}: {e}")
                    continue
                self._records.setdefault(record["session_id"], []).append(record)
                count += 1

        logger.info(f"Loaded {count} session records from {self.path}")
        return count


class WarmPoolStore:
    """Warm pool records keyed by target."""

    FILENAME = "warm_pools.json"

    def __init__(self, data_dir: Optional[Union[str, Path]] = None):
        self._pools: Dict[str, WarmPool] = {}
        self.path: Optional[Path] = Path(data_dir) / self.FILENAME if data_dir else None
        if self.path and self.path.exists():
            self._load()

    def get(self, target: str) -> Optional[WarmPool]:
        return self._pools.get(target)

    def put(self, pool: WarmPool) -> None:
        self._pools[pool.target] = pool
        self._save()

    def all(self) -> List[WarmPool]:
        return list(self._pools.values())

    def _save(self) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump({t: p.to_dict() for t, p in self._pools.items()}, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save warm pools: {e}")

    def _load(self) -> None:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            self._pools = {t: WarmPool.from_dict(p) for t, p in data.items()}
            logger.info(f"Loaded {len(self._pools)} warm pools from {self.path}")
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load warm pools: {e}")

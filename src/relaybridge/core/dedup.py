from __future__ import annotations

import json
import logging
import os
import threading
from typing import List, Union

logger = logging.getLogger("relaybridge.dedup")

DEDUP_FILENAME = "_processed_updates.json"
MAX_STORED = 200

UpdateId = Union[int, str]


class ProcessedUpdates:
    """Ledger of inbound update ids that were already handed to the queue.

    Lives next to the session records under a ``_``-prefixed name so the
    session store skips it. Only the most recent ``max_stored`` ids are
    kept; channel ids grow monotonically so older ones never come back.
    """

    def __init__(self, sessions_dir: str, max_stored: int = MAX_STORED) -> None:
        self.path = os.path.join(sessions_dir, DEDUP_FILENAME)
        self.max_stored = max_stored
        self._lock = threading.Lock()

    def _load(self) -> List[UpdateId]:
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable dedup ledger %s: %s", self.path, exc)
            return []
        ids = raw.get("processed_ids", raw.get("processedIds", [])) if isinstance(raw, dict) else []
        return [i for i in ids if isinstance(i, (int, str))] if isinstance(ids, list) else []

    def _save(self, ids: List[UpdateId]) -> None:
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump({"processed_ids": ids}, handle)
        os.replace(tmp_path, self.path)

    def is_processed(self, update_id: UpdateId) -> bool:
        with self._lock:
            return update_id in self._load()

    def mark(self, update_id: UpdateId) -> None:
        with self._lock:
            ids = self._load()
            if update_id in ids:
                return
            ids.append(update_id)
            if len(ids) > self.max_stored:
                ids = ids[-self.max_stored:]
            self._save(ids)

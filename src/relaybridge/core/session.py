from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
import json
import logging
import os
import tempfile
import threading
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import quote, unquote

logger = logging.getLogger("relaybridge.session")

DEFAULT_KEY = "general"


class SessionStoreError(RuntimeError):
    pass


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Session:
    key: str
    session_id: str
    created_at: str
    message_count: int = 0
    label: Optional[str] = None

    @property
    def is_first(self) -> bool:
        """True until the tool has completed a turn for this session id."""
        return self.message_count == 0

    @staticmethod
    def fresh(key: str, label: Optional[str] = None) -> "Session":
        return Session(key=key, session_id=str(uuid.uuid4()), created_at=_utcnow(), label=label)

    @staticmethod
    def from_record(key: str, raw: Any) -> Optional["Session"]:
        """Build a Session from a stored dict, or None if it isn't one.

        Accepts both the current snake_case layout and the camelCase
        layout of the legacy single-session file.
        """
        if not isinstance(raw, dict):
            return None
        session_id = raw.get("session_id") or raw.get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            return None
        count = raw.get("message_count", raw.get("messageCount", 0))
        if not isinstance(count, int) or isinstance(count, bool) or count < 0:
            count = 0
        label = raw.get("label") or raw.get("topicName")
        return Session(
            key=key,
            session_id=session_id,
            created_at=str(raw.get("created_at") or raw.get("createdAt") or _utcnow()),
            message_count=count,
            label=label if isinstance(label, str) else None,
        )


class SessionStore:
    """Durable key → Session mapping, one JSON file per key.

    Files are named after the URL-quoted key. Names starting with ``_``
    are reserved for internal files (see :mod:`relaybridge.core.dedup`)
    and are never treated as sessions.
    """

    def __init__(
        self,
        sessions_dir: str,
        legacy_file: Optional[str] = None,
        default_key: str = DEFAULT_KEY,
    ) -> None:
        self.sessions_dir = sessions_dir
        self.legacy_file = legacy_file
        self.default_key = default_key
        self._create_lock = threading.Lock()

    # ── storage ──────────────────────────────────────────────

    def _path(self, key: str) -> str:
        name = quote(key, safe="")
        if name.startswith("_") or name.startswith("."):
            name = "%{:02X}".format(ord(name[0])) + name[1:]
        return os.path.join(self.sessions_dir, f"{name}.json")

    def _read(self, path: str) -> Optional[Dict[str, Any]]:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable session record %s: %s", path, exc)
            return None
        return raw if isinstance(raw, dict) else None

    def _load(self, key: str) -> Optional[Session]:
        return Session.from_record(key, self._read(self._path(key)))

    def _save(self, session: Session) -> None:
        path = self._path(session.key)
        try:
            os.makedirs(self.sessions_dir, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.sessions_dir, prefix="_tmp-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(asdict(session), handle, indent=2)
                os.replace(tmp_path, path)
            except BaseException:
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass
                raise
        except OSError as exc:
            raise SessionStoreError(f"failed to persist session {session.key!r}: {exc}") from exc

    def _migrate_legacy(self, key: str) -> Optional[Session]:
        if key != self.default_key or not self.legacy_file:
            return None
        legacy = Session.from_record(key, self._read(self.legacy_file))
        if legacy is None:
            return None
        self._save(legacy)
        logger.info("Imported legacy session %s into key %r", legacy.session_id, key)
        return legacy

    # ── public API ───────────────────────────────────────────

    def get(self, key: str) -> Optional[Session]:
        return self._load(key)

    def get_or_create(self, key: str = DEFAULT_KEY) -> Session:
        existing = self._load(key)
        if existing:
            return existing
        with self._create_lock:
            existing = self._load(key)
            if existing:
                return existing
            migrated = self._migrate_legacy(key)
            if migrated:
                return migrated
            session = Session.fresh(key)
            self._save(session)
            logger.info("Created session %s for key %r", session.session_id, key)
            return session

    def reset(self, key: str = DEFAULT_KEY) -> Session:
        previous = self._load(key)
        session = Session.fresh(key, label=previous.label if previous else None)
        with self._create_lock:
            self._save(session)
        logger.info("Reset key %r to new session %s", key, session.session_id)
        return session

    def record_success(self, key: str = DEFAULT_KEY) -> Optional[Session]:
        session = self._load(key)
        if session is None:
            logger.warning("record_success: no session for key %r (reset race?)", key)
            return None
        session.message_count += 1
        self._save(session)
        return session

    def set_label(self, key: str, label: str) -> Session:
        session = self.get_or_create(key)
        session.label = label
        self._save(session)
        return session

    def list(self) -> List[Session]:
        if not os.path.isdir(self.sessions_dir):
            return []
        results: List[Session] = []
        for name in sorted(os.listdir(self.sessions_dir)):
            if not name.endswith(".json") or name.startswith("_"):
                continue
            raw = self._read(os.path.join(self.sessions_dir, name))
            if raw is None:
                continue
            key = raw.get("key")
            if not isinstance(key, str):
                key = unquote(name[: -len(".json")])
            session = Session.from_record(key, raw)
            if session:
                results.append(session)
        results.sort(key=lambda s: s.key)
        return results

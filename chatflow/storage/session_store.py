"""
Session Store - persistence boundary for flow sessions.

The engine keeps sessions in memory and mirrors every change here on a
best-effort basis. A store deals in *records*: flat dicts as produced by
``FlowSessionState.to_record()``, whose array/map columns are JSON text,
plus one row per session variable.

Two implementations ship:
- InMemorySessionStore: dict-backed, for tests and single-process use
- FileSessionStore: one directory per session
    {base_path}/sessions/session_YYYYMMDD_HHMMSS_{uuid}/
      ├── state.json       # Session record
      └── variables.json   # Per-variable rows
"""

import asyncio
import copy
import json
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

from chatflow.schemas.session_state import SessionStatus
from chatflow.utils.io import atomic_write

logger = logging.getLogger(__name__)


def generate_session_id() -> str:
    """
    Generate session ID in format: session_YYYYMMDD_HHMMSS_{uuid}.

    Returns:
        Session ID string (e.g., "session_20260206_143022_abc12345")
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    short_uuid = uuid.uuid4().hex[:8]
    return f"session_{timestamp}_{short_uuid}"


def _record_matches(
    record: dict[str, Any],
    conversation_id: Any,
    contact_id: Any,
    statuses: set[str] | None,
    trigger_node_id: str | None,
) -> bool:
    if record.get("conversation_id") != conversation_id:
        return False
    if contact_id is not None and record.get("contact_id") != contact_id:
        return False
    if statuses is not None and record.get("status") not in statuses:
        return False
    if trigger_node_id is not None and record.get("trigger_node_id") != trigger_node_id:
        return False
    return True


def _status_values(statuses: Iterable[SessionStatus | str] | None) -> set[str] | None:
    return None if statuses is None else {str(s) for s in statuses}


def _most_recent_first(records: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(records, key=lambda r: r.get("last_activity_at") or "", reverse=True)


class SessionStore(ABC):
    """Abstract session persistence."""

    @abstractmethod
    async def create_session(self, record: dict[str, Any]) -> None:
        """Insert a new session record."""

    @abstractmethod
    async def get_session(self, session_id: str) -> dict[str, Any] | None:
        """Return the session record or None."""

    @abstractmethod
    async def update_session(self, session_id: str, record: dict[str, Any]) -> None:
        """Replace the session record."""

    @abstractmethod
    async def expire_session(self, session_id: str) -> None:
        """Mark the session timed out (never deletes)."""

    @abstractmethod
    async def find_sessions(
        self,
        conversation_id: Any,
        contact_id: Any = None,
        statuses: Iterable[SessionStatus | str] | None = None,
        trigger_node_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Records of a conversation, most recent activity first."""

    @abstractmethod
    async def upsert_variable(self, session_id: str, key: str, value: Any) -> None:
        """Insert or replace one session variable row."""

    @abstractmethod
    async def list_variables(self, session_id: str) -> dict[str, Any]:
        """All variable rows of a session as a dict."""


class InMemorySessionStore(SessionStore):
    """Dict-backed store. Records are deep-copied in and out."""

    def __init__(self):
        self._sessions: dict[str, dict[str, Any]] = {}
        self._variables: dict[str, dict[str, Any]] = {}

    async def create_session(self, record: dict[str, Any]) -> None:
        self._sessions[record["session_id"]] = copy.deepcopy(record)

    async def get_session(self, session_id: str) -> dict[str, Any] | None:
        record = self._sessions.get(session_id)
        return copy.deepcopy(record) if record is not None else None

    async def update_session(self, session_id: str, record: dict[str, Any]) -> None:
        self._sessions[session_id] = copy.deepcopy(record)

    async def expire_session(self, session_id: str) -> None:
        record = self._sessions.get(session_id)
        if record is not None:
            record["status"] = SessionStatus.TIMEOUT.value

    async def find_sessions(
        self,
        conversation_id: Any,
        contact_id: Any = None,
        statuses: Iterable[SessionStatus | str] | None = None,
        trigger_node_id: str | None = None,
    ) -> list[dict[str, Any]]:
        wanted = _status_values(statuses)
        matches = [
            copy.deepcopy(r)
            for r in self._sessions.values()
            if _record_matches(r, conversation_id, contact_id, wanted, trigger_node_id)
        ]
        return _most_recent_first(matches)

    async def upsert_variable(self, session_id: str, key: str, value: Any) -> None:
        self._variables.setdefault(session_id, {})[key] = copy.deepcopy(value)

    async def list_variables(self, session_id: str) -> dict[str, Any]:
        return copy.deepcopy(self._variables.get(session_id, {}))


class FileSessionStore(SessionStore):
    """
    File-backed store with one directory per session.

    All file IO runs in a worker thread; writes are atomic (temp file +
    rename) so a crash never leaves a torn state.json.
    """

    def __init__(self, base_path: Path):
        """
        Initialize session store.

        Args:
            base_path: Base path for storage (e.g., ~/.chatflow/data)
        """
        self.base_path = Path(base_path)
        self.sessions_dir = self.base_path / "sessions"

    def get_session_path(self, session_id: str) -> Path:
        return self.sessions_dir / session_id

    def get_state_path(self, session_id: str) -> Path:
        return self.get_session_path(session_id) / "state.json"

    def get_variables_path(self, session_id: str) -> Path:
        return self.get_session_path(session_id) / "variables.json"

    def _write_json(self, path: Path, payload: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with atomic_write(path) as f:
            f.write(json.dumps(payload, indent=2, default=str))

    def _read_json(self, path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load {path}: {e}")
            return None
        return data if isinstance(data, dict) else None

    async def create_session(self, record: dict[str, Any]) -> None:
        session_id = record["session_id"]
        await asyncio.to_thread(self._write_json, self.get_state_path(session_id), record)
        logger.debug(f"Wrote state.json for session {session_id}")

    async def get_session(self, session_id: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._read_json, self.get_state_path(session_id))

    async def update_session(self, session_id: str, record: dict[str, Any]) -> None:
        await asyncio.to_thread(self._write_json, self.get_state_path(session_id), record)
        logger.debug(f"Updated state.json for session {session_id}")

    async def expire_session(self, session_id: str) -> None:
        def _expire():
            path = self.get_state_path(session_id)
            record = self._read_json(path)
            if record is None:
                return
            record["status"] = SessionStatus.TIMEOUT.value
            self._write_json(path, record)

        await asyncio.to_thread(_expire)

    async def find_sessions(
        self,
        conversation_id: Any,
        contact_id: Any = None,
        statuses: Iterable[SessionStatus | str] | None = None,
        trigger_node_id: str | None = None,
    ) -> list[dict[str, Any]]:
        wanted = _status_values(statuses)

        def _scan():
            records = []
            if not self.sessions_dir.exists():
                return records

            for session_dir in self.sessions_dir.iterdir():
                if not session_dir.is_dir():
                    continue
                record = self._read_json(session_dir / "state.json")
                if record is None:
                    continue
                if _record_matches(record, conversation_id, contact_id, wanted, trigger_node_id):
                    records.append(record)
            return _most_recent_first(records)

        return await asyncio.to_thread(_scan)

    async def upsert_variable(self, session_id: str, key: str, value: Any) -> None:
        def _upsert():
            path = self.get_variables_path(session_id)
            variables = self._read_json(path) or {}
            variables[key] = value
            self._write_json(path, variables)

        await asyncio.to_thread(_upsert)

    async def list_variables(self, session_id: str) -> dict[str, Any]:
        variables = await asyncio.to_thread(self._read_json, self.get_variables_path(session_id))
        return variables or {}

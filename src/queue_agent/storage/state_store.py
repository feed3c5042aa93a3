"""Persistent key/value state backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlmodel import Session, SQLModel, select

from queue_agent.orchestrator.models import HandshakeSettings
from queue_agent.storage.common import build_sqlite_engine, utc_now
from queue_agent.storage.sqlmodel_models import AgentStateEntry

KEY_ENABLED = "enabled"
KEY_CLIENT_ID = "client_id"
KEY_STATS = "stats"
KEY_JOB_HISTORY = "job_history"
KEY_RETRY_ATTEMPTS = "retry_attempts"
KEY_MAX_RETRY_DELAY = "max_retry_delay"
KEY_POLL_INTERVAL = "poll_interval"
KEY_LOCAL_RETRIES = "local_retries"


class StateStore:
    """Process-wide state that survives restarts.

    Values are stored as JSON documents under string keys. Read-modify-write
    cycles go through :meth:`update`, which serializes writers in this process.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)
        self._write_lock = threading.RLock()

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create tables if they do not exist."""

        SQLModel.metadata.create_all(self.engine, tables=[AgentStateEntry.__table__])

    def get(self, key: str, default: Any = None) -> Any:
        with Session(self.engine) as session:
            row = session.get(AgentStateEntry, key)
            if row is None:
                return default
            return json.loads(row.value_json)

    def set(self, key: str, value: Any) -> None:
        with self._write_lock, Session(self.engine) as session:
            self._write(session, key, value)
            session.commit()

    def delete(self, key: str) -> None:
        with self._write_lock, Session(self.engine) as session:
            row = session.get(AgentStateEntry, key)
            if row is not None:
                session.delete(row)
                session.commit()

    def update(self, key: str, mutate: Callable[[Any], Any], *, default: Any = None) -> Any:
        """Apply ``mutate`` to the current value and store the result."""

        with self._write_lock, Session(self.engine) as session:
            row = session.get(AgentStateEntry, key)
            current = json.loads(row.value_json) if row is not None else default
            updated = mutate(current)
            self._write(session, key, updated)
            session.commit()
            return updated

    def keys(self) -> list[str]:
        with Session(self.engine) as session:
            return list(session.exec(select(AgentStateEntry.key)).all())

    @staticmethod
    def _write(session: Session, key: str, value: Any) -> None:
        row = session.get(AgentStateEntry, key)
        payload = json.dumps(value, sort_keys=True)
        if row is None:
            session.add(AgentStateEntry(key=key, value_json=payload, updated_at=utc_now()))
            return
        row.value_json = payload
        row.updated_at = utc_now()
        session.add(row)

    # -- typed accessors ------------------------------------------------------

    def is_enabled(self) -> bool:
        return bool(self.get(KEY_ENABLED, False))

    def set_enabled(self, enabled: bool) -> None:
        self.set(KEY_ENABLED, bool(enabled))

    def client_id(self) -> str:
        """Return the stable client id, generating it on first use."""

        def _ensure(current: Any) -> str:
            return current if isinstance(current, str) and current else str(uuid4())

        return self.update(KEY_CLIENT_ID, _ensure)

    def handshake_settings(self, defaults: HandshakeSettings) -> HandshakeSettings:
        """Persisted handshake bounds, falling back to configured defaults."""

        attempts = self.get(KEY_RETRY_ATTEMPTS)
        max_delay_ms = self.get(KEY_MAX_RETRY_DELAY)
        return HandshakeSettings(
            attempts=int(attempts) if attempts else defaults.attempts,
            base_delay_seconds=defaults.base_delay_seconds,
            max_delay_seconds=(
                float(max_delay_ms) / 1000.0 if max_delay_ms else defaults.max_delay_seconds
            ),
        )

    def set_handshake_settings(self, *, attempts: int, max_delay_seconds: float) -> None:
        if attempts < 1:
            raise ValueError("retry attempts must be >= 1")
        if max_delay_seconds < 0:
            raise ValueError("max retry delay must be >= 0")
        self.set(KEY_RETRY_ATTEMPTS, attempts)
        self.set(KEY_MAX_RETRY_DELAY, int(max_delay_seconds * 1000))

    def poll_interval_seconds(self, default: float) -> float:
        value = self.get(KEY_POLL_INTERVAL)
        return float(value) if value else default

    def set_poll_interval_seconds(self, seconds: float) -> None:
        if seconds < 1:
            raise ValueError("poll interval must be >= 1 second")
        self.set(KEY_POLL_INTERVAL, seconds)

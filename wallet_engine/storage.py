"""Durable local key/value storage for the wallet engine.

The store plays the part of the browser's local storage: small JSON documents
addressed by key, read synchronously and surviving restarts. It relies on the
standard library :mod:`sqlite3` module so no server is needed.
"""
from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any, Optional


class LocalStorage:
    """Encapsulates all SQLite access for locally persisted documents."""

    def __init__(self, database_path: Path | str = ":memory:") -> None:
        self._database_path = database_path
        self._connection = sqlite3.connect(str(database_path))
        self._connection.row_factory = sqlite3.Row
        self.initialise_schema()

    def close(self) -> None:
        """Close the underlying SQLite connection."""

        self._connection.close()

    def initialise_schema(self) -> None:
        """Create the storage table if it does not exist."""

        self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS local_storage (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );
            """
        )
        self._connection.commit()

    # ------------------------------------------------------------------
    # Raw string items
    # ------------------------------------------------------------------
    def set_item(self, key: str, value: str) -> None:
        self._connection.execute(
            "INSERT OR REPLACE INTO local_storage (key, value) VALUES (?, ?)",
            (key, value),
        )
        self._connection.commit()

    def get_item(self, key: str, default: Optional[str] = None) -> Optional[str]:
        row = self._connection.execute(
            "SELECT value FROM local_storage WHERE key = ?",
            (key,),
        ).fetchone()
        if row is None:
            return default
        return str(row["value"])

    def remove_item(self, key: str) -> None:
        self._connection.execute("DELETE FROM local_storage WHERE key = ?", (key,))
        self._connection.commit()

    # ------------------------------------------------------------------
    # JSON documents
    # ------------------------------------------------------------------
    def set_json(self, key: str, document: Any) -> None:
        self.set_item(key, json.dumps(document, ensure_ascii=False, default=str))

    def get_json(self, key: str) -> Any:
        """Return the decoded document or ``None`` when absent or corrupt."""

        raw = self.get_item(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return None

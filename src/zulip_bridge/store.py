"""SQLite backed correlation store for channels, messages and uploads."""

from __future__ import annotations

import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Any, Mapping

from .models import ChannelBinding, MessageCorrelation, UploadCorrelation

_DB_PRAGMA = "PRAGMA journal_mode=WAL;" "PRAGMA synchronous=NORMAL;" "PRAGMA foreign_keys=ON;"

_BINDING_COLUMNS = {
    "discord_channel_id",
    "zulip_stream_id",
    "zulip_topic",
    "include_threads",
}
_MESSAGE_COLUMNS = {
    "discord_message_id",
    "discord_channel_id",
    "zulip_message_id",
    "zulip_stream_id",
    "zulip_topic",
    "source",
}
_UPLOAD_COLUMNS = {"source_file_url", "mirrored_file_url", "mirrored_file_id"}


def _where(filters: Mapping[str, Any], allowed: set[str]) -> tuple[str, tuple[Any, ...]]:
    if not filters:
        raise ValueError("Refusing to run an unfiltered statement")
    clauses: list[str] = []
    params: list[Any] = []
    for column, value in filters.items():
        if column not in allowed:
            raise ValueError(f"Unknown column: {column}")
        if value is None:
            clauses.append(f"{column} IS NULL")
        elif isinstance(value, (list, tuple, set, frozenset)):
            values = list(value)
            if not values:
                clauses.append("0")
                continue
            clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        else:
            clauses.append(f"{column}=?")
            params.append(value)
    return " AND ".join(clauses), tuple(params)


def _set(patch: Mapping[str, Any], allowed: set[str]) -> tuple[str, tuple[Any, ...]]:
    if not patch:
        raise ValueError("Empty patch")
    for column in patch:
        if column not in allowed:
            raise ValueError(f"Unknown column: {column}")
    return ", ".join(f"{column}=?" for column in patch), tuple(patch.values())


class CorrelationStore:
    """Persisted identity mappings between Discord and Zulip.

    Every public method runs in its own transaction, so concurrent readers
    never observe a partially applied multi-row write.
    """

    def __init__(self, path: Path | str):
        self._path = path
        self._conn = sqlite3.connect(self._path)
        self._conn.row_factory = sqlite3.Row
        self._setup()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Schema initialisation
    # ------------------------------------------------------------------
    def _setup(self) -> None:
        with closing(self._conn.cursor()) as cur:
            for statement in _DB_PRAGMA.split(";"):
                if statement.strip():
                    cur.execute(statement)
            cur.executescript(
                """
                CREATE TABLE IF NOT EXISTS channels (
                    discord_channel_id TEXT PRIMARY KEY,
                    zulip_stream_id INTEGER NOT NULL,
                    zulip_topic TEXT,
                    include_threads INTEGER NOT NULL DEFAULT 0
                );

                CREATE UNIQUE INDEX IF NOT EXISTS channels_zulip_idx
                    ON channels(zulip_stream_id, IFNULL(zulip_topic, '') COLLATE NOCASE);

                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    discord_message_id TEXT UNIQUE,
                    discord_channel_id TEXT NOT NULL
                        REFERENCES channels(discord_channel_id) ON DELETE CASCADE,
                    zulip_message_id INTEGER UNIQUE,
                    zulip_stream_id INTEGER NOT NULL,
                    zulip_topic TEXT NOT NULL,
                    source TEXT NOT NULL CHECK (source IN ('discord', 'zulip'))
                );

                CREATE TABLE IF NOT EXISTS uploads (
                    source_file_url TEXT PRIMARY KEY,
                    mirrored_file_url TEXT NOT NULL UNIQUE,
                    mirrored_file_id INTEGER UNIQUE
                );
                """
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Channel bindings
    # ------------------------------------------------------------------
    def add_binding(self, binding: ChannelBinding) -> ChannelBinding:
        with self._conn:
            self._conn.execute(
                "INSERT INTO channels(discord_channel_id, zulip_stream_id, zulip_topic,"
                " include_threads) VALUES(?, ?, ?, ?)",
                (
                    binding.discord_channel_id,
                    binding.zulip_stream_id,
                    binding.zulip_topic,
                    int(binding.include_threads),
                ),
            )
        return binding

    def get_binding(self, discord_channel_id: str) -> ChannelBinding | None:
        rows = self.find_bindings(discord_channel_id=discord_channel_id)
        return rows[0] if rows else None

    def find_binding_for_topic(self, stream_id: int, topic: str) -> ChannelBinding | None:
        """Return the binding for ``topic``, or the stream-wide binding."""

        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "SELECT * FROM channels WHERE zulip_stream_id=?"
                " AND (zulip_topic=? COLLATE NOCASE OR zulip_topic IS NULL)"
                " ORDER BY zulip_topic IS NULL LIMIT 1",
                (stream_id, topic),
            )
            row = cur.fetchone()
        return _binding_from_row(row) if row else None

    def find_bindings(self, **filters: Any) -> list[ChannelBinding]:
        clause, params = _where(filters, _BINDING_COLUMNS)
        with closing(self._conn.cursor()) as cur:
            cur.execute(f"SELECT * FROM channels WHERE {clause}", params)
            rows = cur.fetchall()
        return [_binding_from_row(row) for row in rows]

    def list_bindings(self) -> list[ChannelBinding]:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT * FROM channels ORDER BY zulip_stream_id, zulip_topic")
            rows = cur.fetchall()
        return [_binding_from_row(row) for row in rows]

    def set_include_threads(self, discord_channel_id: str, include_threads: bool) -> bool:
        with self._conn:
            cur = self._conn.execute(
                "UPDATE channels SET include_threads=? WHERE discord_channel_id=?",
                (int(include_threads), discord_channel_id),
            )
        return cur.rowcount > 0

    def delete_bindings(self, **filters: Any) -> list[ChannelBinding]:
        """Delete matching bindings together with their message correlations."""

        clause, params = _where(filters, _BINDING_COLUMNS)
        with self._conn:
            rows = self._conn.execute(
                f"SELECT * FROM channels WHERE {clause}", params
            ).fetchall()
            if rows:
                self._conn.execute(f"DELETE FROM channels WHERE {clause}", params)
        return [_binding_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Message correlations
    # ------------------------------------------------------------------
    def insert_message(self, correlation: MessageCorrelation) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT INTO messages(discord_message_id, discord_channel_id,"
                " zulip_message_id, zulip_stream_id, zulip_topic, source)"
                " VALUES(?, ?, ?, ?, ?, ?)",
                (
                    correlation.discord_message_id,
                    correlation.discord_channel_id,
                    correlation.zulip_message_id,
                    correlation.zulip_stream_id,
                    correlation.zulip_topic,
                    correlation.source,
                ),
            )

    def find_messages(self, **filters: Any) -> list[MessageCorrelation]:
        clause, params = _where(filters, _MESSAGE_COLUMNS)
        with closing(self._conn.cursor()) as cur:
            cur.execute(f"SELECT * FROM messages WHERE {clause} ORDER BY id", params)
            rows = cur.fetchall()
        return [_message_from_row(row) for row in rows]

    def find_by_discord_id(self, message_id: str) -> MessageCorrelation | None:
        rows = self.find_messages(discord_message_id=message_id)
        return rows[0] if rows else None

    def find_by_zulip_id(self, message_id: int) -> MessageCorrelation | None:
        rows = self.find_messages(zulip_message_id=int(message_id))
        return rows[0] if rows else None

    def delete_messages(self, **filters: Any) -> list[MessageCorrelation]:
        clause, params = _where(filters, _MESSAGE_COLUMNS)
        with self._conn:
            rows = self._conn.execute(
                f"SELECT * FROM messages WHERE {clause} ORDER BY id", params
            ).fetchall()
            if rows:
                self._conn.execute(f"DELETE FROM messages WHERE {clause}", params)
        return [_message_from_row(row) for row in rows]

    def update_messages(self, filters: Mapping[str, Any], patch: Mapping[str, Any]) -> int:
        clause, params = _where(filters, _MESSAGE_COLUMNS)
        assignments, values = _set(patch, _MESSAGE_COLUMNS)
        with self._conn:
            cur = self._conn.execute(
                f"UPDATE messages SET {assignments} WHERE {clause}", values + params
            )
        return cur.rowcount

    # ------------------------------------------------------------------
    # Upload correlations
    # ------------------------------------------------------------------
    def find_upload(self, source_file_url: str) -> UploadCorrelation | None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT * FROM uploads WHERE source_file_url=?", (source_file_url,))
            row = cur.fetchone()
        return _upload_from_row(row) if row else None

    def insert_upload(self, upload: UploadCorrelation) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT INTO uploads(source_file_url, mirrored_file_url, mirrored_file_id)"
                " VALUES(?, ?, ?)",
                (upload.source_file_url, upload.mirrored_file_url, upload.mirrored_file_id),
            )

    def update_uploads(self, filters: Mapping[str, Any], patch: Mapping[str, Any]) -> int:
        clause, params = _where(filters, _UPLOAD_COLUMNS)
        assignments, values = _set(patch, _UPLOAD_COLUMNS)
        with self._conn:
            cur = self._conn.execute(
                f"UPDATE uploads SET {assignments} WHERE {clause}", values + params
            )
        return cur.rowcount

    def delete_uploads(self, **filters: Any) -> list[UploadCorrelation]:
        clause, params = _where(filters, _UPLOAD_COLUMNS)
        with self._conn:
            rows = self._conn.execute(
                f"SELECT * FROM uploads WHERE {clause}", params
            ).fetchall()
            if rows:
                self._conn.execute(f"DELETE FROM uploads WHERE {clause}", params)
        return [_upload_from_row(row) for row in rows]


def _binding_from_row(row: sqlite3.Row) -> ChannelBinding:
    return ChannelBinding(
        discord_channel_id=str(row["discord_channel_id"]),
        zulip_stream_id=int(row["zulip_stream_id"]),
        zulip_topic=row["zulip_topic"],
        include_threads=bool(row["include_threads"]),
    )


def _message_from_row(row: sqlite3.Row) -> MessageCorrelation:
    zulip_id = row["zulip_message_id"]
    return MessageCorrelation(
        discord_message_id=row["discord_message_id"],
        discord_channel_id=str(row["discord_channel_id"]),
        zulip_message_id=int(zulip_id) if zulip_id is not None else None,
        zulip_stream_id=int(row["zulip_stream_id"]),
        zulip_topic=str(row["zulip_topic"]),
        source=str(row["source"]),
    )


def _upload_from_row(row: sqlite3.Row) -> UploadCorrelation:
    file_id = row["mirrored_file_id"]
    return UploadCorrelation(
        source_file_url=str(row["source_file_url"]),
        mirrored_file_url=str(row["mirrored_file_url"]),
        mirrored_file_id=int(file_id) if file_id is not None else None,
    )

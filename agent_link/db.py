from __future__ import annotations

import os
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, cast

from agent_link.common import json_dumps, now
from agent_link.models import Agent, TopicSummary

SCHEMA_VERSION = "1"

# Ids are allocated in ledger shape (shard.realm.num) so they pass topic id validation.
TOPIC_SHARD_REALM = "0.0"
FIRST_TOPIC_NUM = 1001

BLOB_SCHEME = "hcs://1/"


class DBBusyError(RuntimeError):
    pass


class SchemaMismatchError(RuntimeError):
    pass


class TopicNotFoundError(RuntimeError):
    pass


class AgentNotFoundError(RuntimeError):
    pass


class BlobNotFoundError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class RawRecord:
    topic_id: str
    seq: int
    created_at: float
    payload_json: str


def _default_db_path() -> str:
    return str(Path("~/.agent_link/agent_link.sqlite").expanduser())


def _ensure_parent_dir(path: str) -> None:
    p = Path(path)
    if p.name == ":memory:":
        return
    p.parent.mkdir(parents=True, exist_ok=True)


def _is_busy(e: sqlite3.OperationalError) -> bool:
    msg = str(e).lower()
    return "locked" in msg or "busy" in msg


class TopicLogDB:
    """Local append-only topic log backed by SQLite.

    Stands in for the public ledger during development: every topic is an
    ordered sequence of JSON payloads with per-topic sequence numbers starting
    at 1. Large payloads live in the blob table and are addressed by an
    ``hcs://1/<topic_id>`` reference.
    """

    def __init__(self, *, path: str | None = None) -> None:
        raw_path = path or os.environ.get("AGENT_LINK_DB") or _default_db_path()
        if raw_path != ":memory:":
            raw_path = str(Path(raw_path).expanduser())
        self.path = raw_path

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        _ensure_parent_dir(self.path)
        try:
            conn = sqlite3.connect(self.path, timeout=2.0)
        except sqlite3.OperationalError as e:  # pragma: no cover
            if _is_busy(e):
                raise DBBusyError(str(e)) from e
            raise
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA busy_timeout=2000;")
            self._ensure_schema(conn)
            yield conn
        except sqlite3.OperationalError as e:
            if _is_busy(e):
                raise DBBusyError(str(e)) from e
            raise
        finally:
            conn.close()

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        tables = {
            cast(str, r["name"])
            for r in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'",
            ).fetchall()
        }
        if "meta" not in tables:
            if tables:
                raise SchemaMismatchError(
                    "Database schema is outdated (missing schema version). "
                    "Wipe it with `agent-link cli db wipe --yes` or delete the file at $AGENT_LINK_DB."
                )
            conn.executescript(
                f"""
                CREATE TABLE meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );

                INSERT INTO meta(key, value)
                VALUES ('schema_version', '{SCHEMA_VERSION}');

                INSERT INTO meta(key, value)
                VALUES ('next_topic_num', '{FIRST_TOPIC_NUM}');
                """
            )
        else:
            row = conn.execute(
                "SELECT value FROM meta WHERE key = 'schema_version'",
            ).fetchone()
            if row is None or cast(str, row["value"]) != SCHEMA_VERSION:
                raise SchemaMismatchError(
                    "Database schema version mismatch. "
                    "Wipe it with `agent-link cli db wipe --yes` or delete the file at $AGENT_LINK_DB."
                )

        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS topics (
              topic_id TEXT PRIMARY KEY,
              memo TEXT NULL,
              created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS topic_seq (
              topic_id TEXT PRIMARY KEY,
              next_seq INTEGER NOT NULL,
              updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS records (
              topic_id TEXT NOT NULL,
              seq INTEGER NOT NULL,
              payload_json TEXT NOT NULL,
              created_at REAL NOT NULL,
              PRIMARY KEY(topic_id, seq)
            );

            CREATE TABLE IF NOT EXISTS blobs (
              topic_id TEXT PRIMARY KEY,
              content BLOB NOT NULL,
              created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS agents (
              account_id TEXT PRIMARY KEY,
              name TEXT NOT NULL,
              inbound_topic_id TEXT NOT NULL,
              outbound_topic_id TEXT NOT NULL,
              created_at REAL NOT NULL
            );
            """
        )

    def _allocate_topic(self, conn: sqlite3.Connection, *, memo: str | None) -> str:
        row = conn.execute("SELECT value FROM meta WHERE key = 'next_topic_num'").fetchone()
        assert row is not None  # seeded with the schema
        num = int(cast(str, row["value"]))
        conn.execute(
            "UPDATE meta SET value = ? WHERE key = 'next_topic_num'",
            (str(num + 1),),
        )
        topic_id = f"{TOPIC_SHARD_REALM}.{num}"
        created_at = now()
        conn.execute(
            "INSERT INTO topics(topic_id, memo, created_at) VALUES (?, ?, ?)",
            (topic_id, memo, created_at),
        )
        conn.execute(
            "INSERT INTO topic_seq(topic_id, next_seq, updated_at) VALUES (?, 1, ?)",
            (topic_id, created_at),
        )
        return topic_id

    def create_topic(self, *, memo: str | None = None) -> str:
        with self.connect() as conn, conn:
            return self._allocate_topic(conn, memo=memo)

    def topic_exists(self, *, topic_id: str) -> bool:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM topics WHERE topic_id = ?",
                (topic_id,),
            ).fetchone()
        return row is not None

    def topic_list_with_counts(self, *, limit: int) -> list[TopicSummary]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT
                  t.topic_id,
                  t.memo,
                  t.created_at,
                  COUNT(r.seq) AS record_count,
                  COALESCE(MAX(r.seq), 0) AS last_seq
                FROM topics t
                LEFT JOIN records r ON r.topic_id = t.topic_id
                GROUP BY t.topic_id
                ORDER BY t.created_at DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            TopicSummary(
                topic_id=r["topic_id"],
                memo=r["memo"],
                created_at=r["created_at"],
                record_count=cast(int, r["record_count"]),
                last_seq=cast(int, r["last_seq"]),
            )
            for r in rows
        ]

    def append(self, *, topic_id: str, payload: dict[str, Any]) -> int:
        """Append one payload to a topic and return its sequence number."""
        created_at = now()
        with self.connect() as conn, conn:
            next_seq_row = conn.execute(
                "SELECT next_seq FROM topic_seq WHERE topic_id = ?",
                (topic_id,),
            ).fetchone()
            if next_seq_row is None:
                raise TopicNotFoundError(topic_id)
            seq = cast(int, next_seq_row["next_seq"])

            conn.execute(
                """
                INSERT INTO records(topic_id, seq, payload_json, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (topic_id, seq, json_dumps(payload), created_at),
            )
            conn.execute(
                "UPDATE topic_seq SET next_seq = ?, updated_at = ? WHERE topic_id = ?",
                (seq + 1, created_at, topic_id),
            )
        return seq

    def read(
        self,
        *,
        topic_id: str,
        after_seq: int = 0,
        limit: int | None = None,
    ) -> list[RawRecord]:
        """Fetch records with seq > after_seq in ascending seq order."""
        with self.connect() as conn:
            if conn.execute(
                "SELECT 1 FROM topics WHERE topic_id = ?",
                (topic_id,),
            ).fetchone() is None:
                raise TopicNotFoundError(topic_id)
            rows = conn.execute(
                """
                SELECT topic_id, seq, payload_json, created_at
                FROM records
                WHERE topic_id = ? AND seq > ?
                ORDER BY seq ASC
                LIMIT ?
                """,
                (topic_id, after_seq, -1 if limit is None else limit),
            ).fetchall()
        return [_raw_record_from_row(r) for r in rows]

    def read_latest(self, *, topic_id: str, limit: int = 10) -> list[RawRecord]:
        """Fetch the last N records from a topic, returned in ascending seq order."""
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT topic_id, seq, payload_json, created_at
                FROM records
                WHERE topic_id = ?
                ORDER BY seq DESC
                LIMIT ?
                """,
                (topic_id, limit),
            ).fetchall()
        return [_raw_record_from_row(r) for r in reversed(rows)]

    def store_blob(self, *, content: bytes, memo: str | None = None) -> str:
        """Store out-of-band content and return its ``hcs://1/`` reference."""
        with self.connect() as conn, conn:
            topic_id = self._allocate_topic(conn, memo=memo or "blob")
            conn.execute(
                "INSERT INTO blobs(topic_id, content, created_at) VALUES (?, ?, ?)",
                (topic_id, content, now()),
            )
        return f"{BLOB_SCHEME}{topic_id}"

    def fetch_blob(self, *, topic_id: str) -> bytes:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT content FROM blobs WHERE topic_id = ?",
                (topic_id,),
            ).fetchone()
        if row is None:
            raise BlobNotFoundError(topic_id)
        return bytes(row["content"])

    def register_agent(self, *, account_id: str, name: str | None = None) -> tuple[Agent, bool]:
        """Register an agent with fresh inbound/outbound topics.

        Returns (agent, created). Registering an existing account is a no-op.
        """
        with self.connect() as conn, conn:
            row = conn.execute(
                """
                SELECT account_id, name, inbound_topic_id, outbound_topic_id, created_at
                FROM agents
                WHERE account_id = ?
                """,
                (account_id,),
            ).fetchone()
            if row is not None:
                return _agent_from_row(row), False

            agent_name = name or f"Agent {account_id}"
            inbound = self._allocate_topic(conn, memo=f"inbound:{account_id}")
            outbound = self._allocate_topic(conn, memo=f"outbound:{account_id}")
            created_at = now()
            conn.execute(
                """
                INSERT INTO agents(account_id, name, inbound_topic_id, outbound_topic_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (account_id, agent_name, inbound, outbound, created_at),
            )
        return (
            Agent(
                account_id=account_id,
                name=agent_name,
                inbound_topic_id=inbound,
                outbound_topic_id=outbound,
                created_at=created_at,
            ),
            True,
        )

    def get_agent(self, *, account_id: str) -> Agent:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT account_id, name, inbound_topic_id, outbound_topic_id, created_at
                FROM agents
                WHERE account_id = ?
                """,
                (account_id,),
            ).fetchone()
        if row is None:
            raise AgentNotFoundError(account_id)
        return _agent_from_row(row)

    def list_agents(self) -> list[Agent]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT account_id, name, inbound_topic_id, outbound_topic_id, created_at
                FROM agents
                ORDER BY created_at ASC
                """
            ).fetchall()
        return [_agent_from_row(r) for r in rows]


def _raw_record_from_row(row: sqlite3.Row) -> RawRecord:
    return RawRecord(
        topic_id=row["topic_id"],
        seq=cast(int, row["seq"]),
        created_at=cast(float, row["created_at"]),
        payload_json=row["payload_json"],
    )


def _agent_from_row(row: sqlite3.Row) -> Agent:
    return Agent(
        account_id=row["account_id"],
        name=row["name"],
        inbound_topic_id=row["inbound_topic_id"],
        outbound_topic_id=row["outbound_topic_id"],
        created_at=row["created_at"],
    )

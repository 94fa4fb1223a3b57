"""Topic log client contract and the local SQLite-backed implementation.

The engine only talks to the log through ``TopicLogClient``. Every failure a
client can produce is mapped onto one of the error classes below so the
orchestrator can decide between backing off, skipping a cycle, and surfacing
a per-record failure.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol

from agent_link.db import (
    BLOB_SCHEME,
    AgentNotFoundError,
    BlobNotFoundError,
    DBBusyError,
    RawRecord,
    SchemaMismatchError,
    TopicLogDB,
    TopicNotFoundError,
)
from agent_link.models import MalformedRecordError, Record, decode_record

logger = logging.getLogger(__name__)


class RateLimitedError(RuntimeError):
    pass


class ReadFailedError(RuntimeError):
    pass


class SubmitFailedError(RuntimeError):
    pass


class PayloadResolutionFailedError(RuntimeError):
    pass


class TopicLogClient(Protocol):
    supports_incremental: bool

    async def append(self, topic_id: str, payload: dict[str, Any]) -> int: ...

    async def read_all(self, topic_id: str) -> list[Record]: ...

    async def read_since(self, topic_id: str, seq: int) -> list[Record]: ...

    async def fetch_out_of_band(self, reference: str) -> bytes: ...

    async def store_out_of_band(self, content: bytes) -> str: ...

    async def create_topic(self, memo: str | None = None) -> str: ...

    async def resolve_inbound_topic(self, account_id: str) -> str: ...


def decode_raw_records(rows: list[RawRecord]) -> list[Record]:
    """Decode stored payloads, dropping malformed ones with a warning."""
    out: list[Record] = []
    for row in rows:
        try:
            payload = json.loads(row.payload_json)
            out.append(
                decode_record(
                    topic_id=row.topic_id,
                    seq=row.seq,
                    created_at=row.created_at,
                    payload=payload,
                )
            )
        except (ValueError, MalformedRecordError) as e:
            logger.warning("Discarding malformed record #%d on %s: %s", row.seq, row.topic_id, e)
    return out


class LocalTopicLogClient:
    """Async adapter over ``TopicLogDB``.

    SQLite calls run in worker threads so a slow write on one topic never
    stalls the event loop. Store contention is reported as a rate limit.
    """

    supports_incremental = False

    def __init__(self, db: TopicLogDB, *, incremental: bool = False) -> None:
        self.db = db
        self.supports_incremental = incremental

    async def append(self, topic_id: str, payload: dict[str, Any]) -> int:
        try:
            return await asyncio.to_thread(self.db.append, topic_id=topic_id, payload=payload)
        except (TopicNotFoundError, DBBusyError, SchemaMismatchError) as e:
            raise SubmitFailedError(f"append to {topic_id} failed: {e!r}") from e

    async def read_all(self, topic_id: str) -> list[Record]:
        return await self._read(topic_id, after_seq=0)

    async def read_since(self, topic_id: str, seq: int) -> list[Record]:
        return await self._read(topic_id, after_seq=seq)

    async def _read(self, topic_id: str, *, after_seq: int) -> list[Record]:
        try:
            rows = await asyncio.to_thread(self.db.read, topic_id=topic_id, after_seq=after_seq)
        except DBBusyError as e:
            raise RateLimitedError(f"read of {topic_id} throttled: {e}") from e
        except (TopicNotFoundError, SchemaMismatchError) as e:
            raise ReadFailedError(f"read of {topic_id} failed: {e!r}") from e
        return decode_raw_records(rows)

    async def fetch_out_of_band(self, reference: str) -> bytes:
        if not reference.startswith(BLOB_SCHEME):
            raise PayloadResolutionFailedError(f"unsupported reference: {reference}")
        topic_id = reference[len(BLOB_SCHEME) :]
        try:
            return await asyncio.to_thread(self.db.fetch_blob, topic_id=topic_id)
        except (BlobNotFoundError, DBBusyError, SchemaMismatchError) as e:
            raise PayloadResolutionFailedError(f"could not fetch {reference}: {e!r}") from e

    async def store_out_of_band(self, content: bytes) -> str:
        try:
            return await asyncio.to_thread(self.db.store_blob, content=content)
        except (DBBusyError, SchemaMismatchError) as e:
            raise SubmitFailedError(f"could not store out-of-band content: {e!r}") from e

    async def create_topic(self, memo: str | None = None) -> str:
        try:
            return await asyncio.to_thread(self.db.create_topic, memo=memo)
        except (DBBusyError, SchemaMismatchError) as e:
            raise SubmitFailedError(f"could not create topic: {e!r}") from e

    async def resolve_inbound_topic(self, account_id: str) -> str:
        try:
            agent = await asyncio.to_thread(self.db.get_agent, account_id=account_id)
        except DBBusyError as e:
            raise RateLimitedError(f"agent lookup throttled: {e}") from e
        except (AgentNotFoundError, SchemaMismatchError) as e:
            raise ReadFailedError(f"no inbound topic for {account_id}: {e!r}") from e
        return agent.inbound_topic_id

from __future__ import annotations

import random
from collections import Counter, defaultdict
from typing import Any

import pytest

from agent_link.config import EngineConfig
from agent_link.engine import MonitoringEngine
from agent_link.log_client import (
    PayloadResolutionFailedError,
    ReadFailedError,
    SubmitFailedError,
)
from agent_link.models import Operation, Record, decode_record, encode_payload

LOCAL_ACCOUNT = "0.0.222"
LOCAL_INBOUND = "0.0.100"


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeTopicLog:
    """In-memory topic log that records every read and can inject failures."""

    def __init__(self, *, incremental: bool = False) -> None:
        self.supports_incremental = incremental
        self.topics: dict[str, list[Record]] = {}
        self.blobs: dict[str, bytes] = {}
        self.directory: dict[str, str] = {}
        self.reads: Counter[str] = Counter()
        self.read_since_calls: list[tuple[str, int]] = []
        self.fetches: list[str] = []
        self.read_errors: dict[str, list[Exception]] = defaultdict(list)
        self.append_errors: dict[str, list[Exception]] = defaultdict(list)
        self._next_topic = 5000
        self._clock = 1_700_000_000.0

    def add_topic(self, topic_id: str | None = None) -> str:
        if topic_id is None:
            self._next_topic += 1
            topic_id = f"0.0.{self._next_topic}"
        self.topics.setdefault(topic_id, [])
        return topic_id

    def put(
        self,
        topic_id: str,
        *,
        operation: Operation = Operation.MESSAGE,
        sender: str = "0.0.111@0.0.333",
        data: str = "",
        connection_id: int | None = None,
        connection_topic_id: str | None = None,
    ) -> Record:
        """Synchronously append a record (test setup helper)."""
        return self._append(
            topic_id,
            encode_payload(
                operation=operation,
                sender=sender,
                data=data,
                connection_id=connection_id,
                connection_topic_id=connection_topic_id,
            ),
        )

    def _append(self, topic_id: str, payload: dict[str, Any]) -> Record:
        records = self.topics[topic_id]
        self._clock += 1.0
        record = decode_record(
            topic_id=topic_id, seq=len(records) + 1, created_at=self._clock, payload=payload
        )
        records.append(record)
        return record

    def records(self, topic_id: str, operation: Operation | None = None) -> list[Record]:
        return [r for r in self.topics[topic_id] if operation is None or r.operation == operation]

    def _pop_read_error(self, topic_id: str) -> None:
        errors = self.read_errors.get(topic_id)
        if errors:
            raise errors.pop(0)
        if topic_id not in self.topics:
            raise ReadFailedError(f"unknown topic {topic_id}")

    async def append(self, topic_id: str, payload: dict[str, Any]) -> int:
        errors = self.append_errors.get(topic_id)
        if errors:
            raise errors.pop(0)
        if topic_id not in self.topics:
            raise SubmitFailedError(f"unknown topic {topic_id}")
        return self._append(topic_id, payload).seq

    async def read_all(self, topic_id: str) -> list[Record]:
        self.reads[topic_id] += 1
        self._pop_read_error(topic_id)
        return list(self.topics[topic_id])

    async def read_since(self, topic_id: str, seq: int) -> list[Record]:
        self.reads[topic_id] += 1
        self.read_since_calls.append((topic_id, seq))
        self._pop_read_error(topic_id)
        return [r for r in self.topics[topic_id] if r.seq > seq]

    async def fetch_out_of_band(self, reference: str) -> bytes:
        self.fetches.append(reference)
        try:
            return self.blobs[reference]
        except KeyError:
            raise PayloadResolutionFailedError(f"missing {reference}") from None

    async def store_out_of_band(self, content: bytes) -> str:
        reference = f"hcs://1/{self.add_topic()}"
        self.blobs[reference] = content
        return reference

    async def create_topic(self, memo: str | None = None) -> str:
        return self.add_topic()

    async def resolve_inbound_topic(self, account_id: str) -> str:
        try:
            return self.directory[account_id]
        except KeyError:
            raise ReadFailedError(f"no inbound topic for {account_id}") from None


@pytest.fixture
def fake_log() -> FakeTopicLog:
    log = FakeTopicLog()
    log.add_topic(LOCAL_INBOUND)
    log.directory[LOCAL_ACCOUNT] = LOCAL_INBOUND
    return log


def make_config(**overrides: Any) -> EngineConfig:
    values: dict[str, Any] = {
        "account_id": LOCAL_ACCOUNT,
        "inbound_topic_id": LOCAL_INBOUND,
        "poll_interval": 0.01,
        "confirm_max_attempts": 3,
        "confirm_poll_seconds": 0.0,
    }
    values.update(overrides)
    return EngineConfig(**values)


@pytest.fixture
def make_engine(fake_log: FakeTopicLog):
    def _make(**overrides: Any) -> MonitoringEngine:
        return MonitoringEngine(make_config(**overrides), fake_log, rng=random.Random(0))

    return _make


@pytest.fixture
def engine(make_engine) -> MonitoringEngine:
    return make_engine()

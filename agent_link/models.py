from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

PROTOCOL = "hcs-10"


class Operation(StrEnum):
    CONNECTION_REQUEST = "connection_request"
    CONNECTION_CREATED = "connection_created"
    MESSAGE = "message"


class ConnectionState(StrEnum):
    PROPOSED = "proposed"
    CONFIRMED = "confirmed"
    ESTABLISHED = "established"
    FAILED = "failed"


class TopicKind(StrEnum):
    INBOUND = "inbound"
    CONNECTION = "connection"


class Direction(StrEnum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MalformedRecordError(RuntimeError):
    pass


def operator_id(topic_id: str, account_id: str) -> str:
    return f"{topic_id}@{account_id}"


def split_operator_id(value: str) -> tuple[str | None, str | None]:
    """Split ``topic@account`` into its parts; missing parts come back as None."""
    topic, sep, account = value.partition("@")
    if not sep:
        return (topic or None), None
    return (topic or None), (account or None)


@dataclass(frozen=True, slots=True)
class Record:
    topic_id: str
    seq: int
    operation: Operation
    sender: str
    created_at: float
    payload: str
    connection_id: int | None = None
    connection_topic_id: str | None = None
    memo: str | None = None

    @property
    def account_id(self) -> str | None:
        return split_operator_id(self.sender)[1]

    @property
    def sender_topic_id(self) -> str | None:
        return split_operator_id(self.sender)[0]


def encode_payload(
    *,
    operation: Operation,
    sender: str,
    data: str = "",
    connection_id: int | None = None,
    connection_topic_id: str | None = None,
    memo: str | None = None,
) -> dict[str, Any]:
    out: dict[str, Any] = {"p": PROTOCOL, "op": str(operation), "operator_id": sender, "data": data}
    if connection_id is not None:
        out["connection_id"] = connection_id
    if connection_topic_id is not None:
        out["connection_topic_id"] = connection_topic_id
    if memo is not None:
        out["m"] = memo
    return out


def decode_record(
    *, topic_id: str, seq: int, created_at: float, payload: dict[str, Any]
) -> Record:
    if not isinstance(payload, dict):
        raise MalformedRecordError(f"record #{seq} on {topic_id}: payload must be an object")
    try:
        operation = Operation(payload.get("op"))
    except ValueError:
        raise MalformedRecordError(
            f"record #{seq} on {topic_id}: unknown op {payload.get('op')!r}"
        ) from None

    sender = payload.get("operator_id", "")
    if not isinstance(sender, str):
        raise MalformedRecordError(f"record #{seq} on {topic_id}: operator_id must be a string")

    data = payload.get("data", "")
    if not isinstance(data, str):
        data = str(data)

    connection_id = payload.get("connection_id")
    if connection_id is not None and (
        isinstance(connection_id, bool) or not isinstance(connection_id, int)
    ):
        raise MalformedRecordError(f"record #{seq} on {topic_id}: connection_id must be an int")

    connection_topic_id = payload.get("connection_topic_id")
    if connection_topic_id is not None and not isinstance(connection_topic_id, str):
        raise MalformedRecordError(
            f"record #{seq} on {topic_id}: connection_topic_id must be a string"
        )

    memo = payload.get("m")
    return Record(
        topic_id=topic_id,
        seq=seq,
        operation=operation,
        sender=sender,
        created_at=created_at,
        payload=data,
        connection_id=connection_id,
        connection_topic_id=connection_topic_id,
        memo=memo if isinstance(memo, str) else None,
    )


@dataclass(slots=True)
class ActiveConnection:
    target_account_id: str
    target_inbound_topic_id: str | None
    connection_topic_id: str | None
    status: ConnectionState
    request_seq: int | None
    local_topic_id: str
    created_at: float
    target_agent_name: str | None = None
    direction: Direction = Direction.INBOUND
    error_code: str | None = None

    @property
    def request_topic_id(self) -> str | None:
        """Topic the request sequence number belongs to."""
        if self.direction == Direction.OUTBOUND:
            return self.target_inbound_topic_id
        return self.local_topic_id

    @property
    def key(self) -> tuple[str | None, int | None]:
        return (self.request_topic_id, self.request_seq)

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_account_id": self.target_account_id,
            "target_agent_name": self.target_agent_name,
            "target_inbound_topic_id": self.target_inbound_topic_id,
            "connection_topic_id": self.connection_topic_id,
            "status": str(self.status),
            "direction": str(self.direction),
            "request_seq": self.request_seq,
            "local_topic_id": self.local_topic_id,
            "created_at": self.created_at,
            "error_code": self.error_code,
        }


@dataclass(slots=True)
class TopicCursor:
    topic_id: str
    last_seq_seen: int = 0
    last_message_timestamp: float = 0.0
    processed_ids: set[int] = field(default_factory=set)
    in_flight_ids: set[int] = field(default_factory=set)


@dataclass(slots=True)
class BackoffState:
    consecutive_failures: int = 0
    next_eligible_at: float = 0.0


@dataclass(frozen=True, slots=True)
class Agent:
    account_id: str
    name: str
    inbound_topic_id: str
    outbound_topic_id: str
    created_at: float


@dataclass(frozen=True, slots=True)
class TopicSummary:
    topic_id: str
    memo: str | None
    created_at: float
    record_count: int
    last_seq: int

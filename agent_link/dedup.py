from __future__ import annotations

import logging

from agent_link.models import Operation, Record, TopicCursor, operator_id

logger = logging.getLogger(__name__)

# connection_created records are confirmations; the negotiator reads them from
# the full batch and they are never handed to a handler.
DISPATCHABLE = frozenset({Operation.MESSAGE, Operation.CONNECTION_REQUEST})


class MessageDeduplicator:
    """Owns one ``TopicCursor`` per monitored topic and decides what is new.

    Reads are usually full-topic reads, so this is the only place that knows
    which records were already handed to a handler in this session.
    """

    def __init__(self, *, local_account_id: str, local_operator_id: str | None = None) -> None:
        self.local_account_id = local_account_id
        self.local_operator_id = local_operator_id
        self._cursors: dict[str, TopicCursor] = {}

    @classmethod
    def for_agent(cls, *, account_id: str, inbound_topic_id: str) -> MessageDeduplicator:
        return cls(
            local_account_id=account_id,
            local_operator_id=operator_id(inbound_topic_id, account_id),
        )

    def open(self, topic_id: str) -> TopicCursor:
        cursor = TopicCursor(topic_id=topic_id)
        self._cursors[topic_id] = cursor
        return cursor

    def close(self, topic_id: str) -> None:
        self._cursors.pop(topic_id, None)

    def cursor(self, topic_id: str) -> TopicCursor:
        cursor = self._cursors.get(topic_id)
        if cursor is None:
            cursor = self.open(topic_id)
        return cursor

    def is_own(self, record: Record) -> bool:
        if self.local_operator_id is not None and record.sender == self.local_operator_id:
            return True
        return record.account_id is not None and record.account_id == self.local_account_id

    def admit(self, topic_id: str, record: Record) -> bool:
        """Return True if the record should be dispatched; admitted ids go in flight."""
        cursor = self.cursor(topic_id)
        seq = record.seq

        if record.operation not in DISPATCHABLE:
            return False
        # An id outside processed_ids is new even when its timestamp is at or
        # below the watermark (records can share a consensus timestamp).
        if seq in cursor.processed_ids or seq in cursor.in_flight_ids:
            return False
        if self.is_own(record):
            # Own records are never dispatched; remember them so later reads skip quickly.
            cursor.processed_ids.add(seq)
            cursor.last_seq_seen = max(cursor.last_seq_seen, seq)
            logger.debug("Skipping own record #%d on %s", seq, topic_id)
            return False

        self.mark_in_flight(topic_id, seq)
        return True

    def mark_in_flight(self, topic_id: str, seq: int) -> None:
        self.cursor(topic_id).in_flight_ids.add(seq)

    def mark_complete(self, topic_id: str, record: Record) -> None:
        cursor = self.cursor(topic_id)
        cursor.in_flight_ids.discard(record.seq)
        cursor.processed_ids.add(record.seq)
        cursor.last_seq_seen = max(cursor.last_seq_seen, record.seq)
        self.advance_watermark(topic_id, record.created_at)

    def advance_watermark(self, topic_id: str, timestamp: float) -> None:
        cursor = self.cursor(topic_id)
        cursor.last_message_timestamp = max(cursor.last_message_timestamp, timestamp)

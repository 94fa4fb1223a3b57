"""Connection negotiation state machine.

Inbound: a ``connection_request`` on our inbound topic becomes a connection
once we create a connection topic and append ``connection_created`` pointing
back at the request's sequence number.

Outbound: we append a ``connection_request`` to the target's inbound topic and
wait (bounded) for the target's ``connection_created``.

    proposed -> confirmed -> established
        \\-----------\\--------> failed
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable, Iterable

from agent_link.backoff import BackoffScheduler
from agent_link.common import ErrorCode, now
from agent_link.log_client import (
    RateLimitedError,
    ReadFailedError,
    SubmitFailedError,
    TopicLogClient,
)
from agent_link.models import (
    ActiveConnection,
    ConnectionState,
    Direction,
    MalformedRecordError,
    Operation,
    Record,
    encode_payload,
    operator_id,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIRM_MAX_ATTEMPTS = 10
DEFAULT_CONFIRM_POLL_SECONDS = 5.0


class AlreadyHandledError(RuntimeError):
    pass


class ConnectionTimeout(RuntimeError):
    pass


def _failure_code(e: Exception) -> ErrorCode:
    if isinstance(e, RateLimitedError):
        return ErrorCode.RATE_LIMITED
    if isinstance(e, ReadFailedError):
        return ErrorCode.READ_FAILED
    return ErrorCode.SUBMIT_FAILED


def find_confirmation(records: Iterable[Record], request_seq: int) -> Record | None:
    for r in records:
        if r.operation == Operation.CONNECTION_CREATED and r.connection_id == request_seq:
            return r
    return None


class ConnectionNegotiator:
    def __init__(
        self,
        client: TopicLogClient,
        *,
        account_id: str,
        inbound_topic_id: str,
        backoff: BackoffScheduler | None = None,
        confirm_max_attempts: int = DEFAULT_CONFIRM_MAX_ATTEMPTS,
        confirm_poll_seconds: float = DEFAULT_CONFIRM_POLL_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if confirm_max_attempts <= 0:
            raise ValueError("confirm_max_attempts must be > 0")
        self.client = client
        self.account_id = account_id
        self.inbound_topic_id = inbound_topic_id
        self.backoff = backoff or BackoffScheduler()
        self.confirm_max_attempts = confirm_max_attempts
        self.confirm_poll_seconds = confirm_poll_seconds
        self._sleep = sleep
        # Insertion-ordered; terminal states stay for idempotence checks.
        self._connections: dict[object, ActiveConnection] = {}
        self._processed_requests: set[tuple[str, int]] = set()

    @property
    def operator_id(self) -> str:
        return operator_id(self.inbound_topic_id, self.account_id)

    def list_connections(self) -> list[ActiveConnection]:
        return [dataclasses.replace(c) for c in self._connections.values()]

    def get_by_topic(self, connection_topic_id: str) -> ActiveConnection | None:
        for c in self._connections.values():
            if c.connection_topic_id == connection_topic_id:
                return dataclasses.replace(c)
        return None

    def is_processed(self, topic_id: str, seq: int) -> bool:
        return (topic_id, seq) in self._processed_requests

    def _track(self, conn: ActiveConnection) -> ActiveConnection:
        # A request that never reached the log has no seq; each one gets its own slot.
        key: object = conn.key if conn.request_seq is not None else object()
        self._connections[key] = conn
        return conn

    def _established_with(self, account_id: str) -> ActiveConnection | None:
        for c in self._connections.values():
            if c.target_account_id == account_id and c.status == ConnectionState.ESTABLISHED:
                return c
        return None

    async def on_inbound_proposal(
        self, record: Record, batch: Iterable[Record] = ()
    ) -> ActiveConnection:
        """Accept a connection request seen on a monitored inbound topic.

        Raises AlreadyHandledError when the request was confirmed before (in
        this session or on the log), MalformedRecordError when the sender has
        no account part, and SubmitFailedError when confirming fails.
        """
        if record.operation != Operation.CONNECTION_REQUEST:
            raise MalformedRecordError(f"record #{record.seq} is not a connection request")

        request_key = (record.topic_id, record.seq)
        if request_key in self._processed_requests:
            raise AlreadyHandledError(f"connection request #{record.seq} already processed")

        if find_confirmation(batch, record.seq) is not None:
            self._processed_requests.add(request_key)
            raise AlreadyHandledError(
                f"connection request #{record.seq} already confirmed on {record.topic_id}"
            )

        requester_account = record.account_id
        if requester_account is None:
            raise MalformedRecordError(
                f"cannot determine requesting account from operator_id {record.sender!r} "
                f"for request #{record.seq}"
            )

        logger.info(
            "Processing connection request #%d from account %s", record.seq, requester_account
        )
        conn = self._track(
            ActiveConnection(
                target_account_id=requester_account,
                target_inbound_topic_id=record.sender_topic_id,
                connection_topic_id=None,
                status=ConnectionState.PROPOSED,
                request_seq=record.seq,
                local_topic_id=record.topic_id,
                created_at=now(),
                target_agent_name=record.memo or f"Agent {requester_account}",
                direction=Direction.INBOUND,
            )
        )

        try:
            connection_topic_id = await self.client.create_topic(
                f"connection:{self.account_id}:{requester_account}:{record.seq}"
            )
            conn.connection_topic_id = connection_topic_id
            await self.client.append(
                record.topic_id,
                encode_payload(
                    operation=Operation.CONNECTION_CREATED,
                    sender=self.operator_id,
                    connection_id=record.seq,
                    connection_topic_id=connection_topic_id,
                ),
            )
        except SubmitFailedError:
            conn.status = ConnectionState.FAILED
            conn.error_code = ErrorCode.SUBMIT_FAILED
            raise

        conn.status = ConnectionState.CONFIRMED
        self._processed_requests.add(request_key)
        # Confirmation was produced locally, so the channel is usable right away.
        conn.status = ConnectionState.ESTABLISHED
        logger.info(
            "Connection confirmed for request #%d. New connection topic: %s",
            record.seq,
            conn.connection_topic_id,
        )
        return dataclasses.replace(conn)

    async def initiate_outbound(self, target_account_id: str) -> ActiveConnection:
        """Ask another agent for a connection and wait for its confirmation.

        Never raises for negotiation failures: the returned connection carries
        status ``failed`` and the caller decides whether to try again.
        """
        existing = self._established_with(target_account_id)
        if existing is not None:
            logger.info(
                "Reusing established connection with %s via %s",
                target_account_id,
                existing.connection_topic_id,
            )
            return dataclasses.replace(existing)

        conn = ActiveConnection(
            target_account_id=target_account_id,
            target_inbound_topic_id=None,
            connection_topic_id=None,
            status=ConnectionState.PROPOSED,
            request_seq=None,
            local_topic_id=self.inbound_topic_id,
            created_at=now(),
            target_agent_name=f"Agent {target_account_id}",
            direction=Direction.OUTBOUND,
        )

        try:
            target_inbound = await self.client.resolve_inbound_topic(target_account_id)
            conn.target_inbound_topic_id = target_inbound
            request_seq = await self.client.append(
                target_inbound,
                encode_payload(operation=Operation.CONNECTION_REQUEST, sender=self.operator_id),
            )
        except (SubmitFailedError, ReadFailedError, RateLimitedError) as e:
            logger.error("Could not send connection request to %s: %s", target_account_id, e)
            conn.status = ConnectionState.FAILED
            conn.error_code = _failure_code(e)
            return dataclasses.replace(self._track(conn))

        conn.request_seq = request_seq
        self._track(conn)
        logger.info(
            "Sent connection request #%d to %s on %s", request_seq, target_account_id, target_inbound
        )

        try:
            confirmation = await self._wait_for_confirmation(target_inbound, request_seq)
        except ConnectionTimeout as e:
            logger.warning("%s", e)
            conn.status = ConnectionState.FAILED
            conn.error_code = ErrorCode.CONNECTION_TIMEOUT
            return dataclasses.replace(conn)

        conn.connection_topic_id = confirmation.connection_topic_id
        conn.status = ConnectionState.ESTABLISHED
        logger.info(
            "Connection with %s established on %s", target_account_id, conn.connection_topic_id
        )
        return dataclasses.replace(conn)

    async def _wait_for_confirmation(self, topic_id: str, request_seq: int) -> Record:
        for attempt in range(1, self.confirm_max_attempts + 1):
            wait = self.confirm_poll_seconds
            try:
                records = await self.client.read_all(topic_id)
            except RateLimitedError:
                self.backoff.record_outcome(topic_id, success=False)
                wait = max(wait, self.backoff.next_poll_time(topic_id) - now())
            except ReadFailedError as e:
                logger.error("Confirmation read %d on %s failed: %s", attempt, topic_id, e)
            else:
                self.backoff.record_outcome(topic_id, success=True)
                confirmation = find_confirmation(records, request_seq)
                if confirmation is not None and confirmation.connection_topic_id:
                    return confirmation

            if attempt < self.confirm_max_attempts:
                await self._sleep(wait)

        raise ConnectionTimeout(
            f"no confirmation for request #{request_seq} on {topic_id} "
            f"after {self.confirm_max_attempts} attempts"
        )

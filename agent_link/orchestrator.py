"""Per-topic polling loops.

Every monitored topic gets its own asyncio task. A cycle reads the topic
(unless the backoff scheduler says to wait), filters the batch through the
deduplicator, and dispatches admitted records one at a time in sequence
order. Inbound topics route connection requests to the negotiator;
connection topics route messages to the application handler, resolving
large payloads first.

Nothing raised while handling one topic leaves that topic's task.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from agent_link.backoff import BackoffScheduler
from agent_link.common import ErrorCode, now
from agent_link.dedup import MessageDeduplicator
from agent_link.log_client import (
    PayloadResolutionFailedError,
    RateLimitedError,
    ReadFailedError,
    SubmitFailedError,
    TopicLogClient,
)
from agent_link.models import (
    ActiveConnection,
    MalformedRecordError,
    Operation,
    Record,
    TopicKind,
)
from agent_link.negotiator import AlreadyHandledError, ConnectionNegotiator
from agent_link.resolver import LargePayloadResolver

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 10.0

# Returning False (or an awaitable resolving to False) reports a recoverable error.
MessageHandler = Callable[[Record, str], "bool | None | Awaitable[bool | None]"]
ConnectionHandler = Callable[[ActiveConnection], "Any | Awaitable[Any]"]


class CycleStatus(StrEnum):
    OK = "ok"
    BACKOFF = "backoff"
    BUSY = "busy"
    RATE_LIMITED = "rate_limited"
    READ_FAILED = "read_failed"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class RecordFailure:
    seq: int
    code: ErrorCode
    message: str


@dataclass(slots=True)
class CycleReport:
    topic_id: str
    status: CycleStatus
    records_read: int = 0
    dispatched: int = 0
    failures: list[RecordFailure] = field(default_factory=list)


@dataclass(slots=True)
class _TopicMonitor:
    topic_id: str
    kind: TopicKind
    handler: Callable[..., Any] | None
    stop_requested: bool = False
    poll_in_progress: bool = False
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None


async def _call(handler: Callable[..., Any], *args: Any) -> Any:
    result = handler(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class PollLoopOrchestrator:
    def __init__(
        self,
        client: TopicLogClient,
        *,
        backoff: BackoffScheduler,
        dedup: MessageDeduplicator,
        negotiator: ConnectionNegotiator,
        resolver: LargePayloadResolver,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        self.client = client
        self.backoff = backoff
        self.dedup = dedup
        self.negotiator = negotiator
        self.resolver = resolver
        self.poll_interval = poll_interval
        self._monitors: dict[str, _TopicMonitor] = {}

    def monitored_topics(self) -> list[str]:
        return [t for t, m in self._monitors.items() if not m.stop_requested]

    def is_monitoring(self, topic_id: str) -> bool:
        m = self._monitors.get(topic_id)
        return m is not None and not m.stop_requested

    def start_monitoring(
        self,
        topic_id: str,
        handler: Callable[..., Any] | None = None,
        *,
        kind: TopicKind = TopicKind.CONNECTION,
        run_loop: bool = True,
    ) -> bool:
        """Begin monitoring a topic. Returns False if it is already monitored.

        ``run_loop=False`` registers the topic without a background task, so
        cycles only run through ``poll_once``.
        """
        existing = self._monitors.get(topic_id)
        if existing is not None:
            if existing.stop_requested:
                # A loop that stopped itself owns the cursor until its cycle ends.
                logger.warning("Topic %s is still stopping, not restarting", topic_id)
            else:
                logger.debug("Already monitoring topic %s", topic_id)
            return False

        monitor = _TopicMonitor(topic_id=topic_id, kind=kind, handler=handler)
        self._monitors[topic_id] = monitor
        self.dedup.open(topic_id)
        if run_loop:
            monitor.task = asyncio.create_task(
                self._run(monitor), name=f"agent-link-monitor:{topic_id}"
            )
        logger.info("Started monitoring %s topic %s", kind, topic_id)
        return True

    async def stop_monitoring(self, topic_id: str) -> bool:
        """Ask a topic's loop to exit after its current cycle and wait for it.

        Called from inside the loop (e.g. by a handler) it returns at once and
        the topic is released when the running cycle ends.
        """
        monitor = self._monitors.get(topic_id)
        if monitor is None or monitor.stop_requested:
            return False
        monitor.stop_requested = True
        monitor.wakeup.set()
        if monitor.task is None:
            self._forget(monitor)
        elif monitor.task is not asyncio.current_task():
            await asyncio.gather(monitor.task, return_exceptions=True)
        logger.info("Stopped monitoring topic %s", topic_id)
        return True

    async def shutdown(self) -> None:
        topics = list(self._monitors)
        await asyncio.gather(*(self.stop_monitoring(t) for t in topics))

    def _forget(self, monitor: _TopicMonitor) -> None:
        if self._monitors.get(monitor.topic_id) is monitor:
            del self._monitors[monitor.topic_id]
            self.dedup.close(monitor.topic_id)
            self.backoff.forget(monitor.topic_id)

    async def _run(self, monitor: _TopicMonitor) -> None:
        try:
            while not monitor.stop_requested:
                try:
                    await self._cycle(monitor)
                except Exception:
                    logger.exception("Unexpected error polling topic %s", monitor.topic_id)
                if monitor.stop_requested:
                    break
                try:
                    await asyncio.wait_for(monitor.wakeup.wait(), timeout=self.poll_interval)
                except TimeoutError:
                    pass
        finally:
            self._forget(monitor)
            logger.info("Monitoring loop stopped for topic %s", monitor.topic_id)

    async def poll_once(self, topic_id: str) -> CycleReport:
        monitor = self._monitors.get(topic_id)
        if monitor is None or monitor.stop_requested:
            return CycleReport(topic_id=topic_id, status=CycleStatus.STOPPED)
        return await self._cycle(monitor)

    async def poll_all_once(self) -> list[CycleReport]:
        return list(await asyncio.gather(*(self.poll_once(t) for t in self.monitored_topics())))

    async def _cycle(self, monitor: _TopicMonitor) -> CycleReport:
        topic_id = monitor.topic_id
        if monitor.poll_in_progress:
            return CycleReport(topic_id=topic_id, status=CycleStatus.BUSY)
        if not self.backoff.is_eligible(topic_id, now()):
            logger.debug("Topic %s in backoff period, skipping read", topic_id)
            return CycleReport(topic_id=topic_id, status=CycleStatus.BACKOFF)

        monitor.poll_in_progress = True
        try:
            try:
                records = await self._read(topic_id)
            except RateLimitedError:
                self.backoff.record_outcome(topic_id, success=False)
                return CycleReport(topic_id=topic_id, status=CycleStatus.RATE_LIMITED)
            except ReadFailedError as e:
                logger.error("Error fetching records for topic %s: %s", topic_id, e)
                return CycleReport(topic_id=topic_id, status=CycleStatus.READ_FAILED)
            self.backoff.record_outcome(topic_id, success=True)

            report = CycleReport(topic_id=topic_id, status=CycleStatus.OK, records_read=len(records))
            for record in sorted(records, key=lambda r: (r.seq, r.created_at)):
                if not self.dedup.admit(topic_id, record):
                    continue
                try:
                    failure = await self._dispatch(monitor, record, records)
                finally:
                    self.dedup.mark_complete(topic_id, record)
                report.dispatched += 1
                if failure is not None:
                    report.failures.append(failure)
            return report
        finally:
            monitor.poll_in_progress = False

    async def _read(self, topic_id: str) -> list[Record]:
        if self.client.supports_incremental:
            cursor = self.dedup.cursor(topic_id)
            return await self.client.read_since(topic_id, cursor.last_seq_seen)
        return await self.client.read_all(topic_id)

    async def _dispatch(
        self, monitor: _TopicMonitor, record: Record, batch: list[Record]
    ) -> RecordFailure | None:
        if record.operation == Operation.CONNECTION_REQUEST:
            if monitor.kind != TopicKind.INBOUND:
                logger.debug(
                    "Ignoring connection request #%d on connection topic %s",
                    record.seq,
                    monitor.topic_id,
                )
                return None
            return await self._handle_proposal(monitor, record, batch)
        if monitor.kind != TopicKind.CONNECTION:
            logger.debug("Ignoring message #%d on inbound topic %s", record.seq, monitor.topic_id)
            return None
        return await self._handle_message(monitor, record)

    async def _handle_proposal(
        self, monitor: _TopicMonitor, record: Record, batch: list[Record]
    ) -> RecordFailure | None:
        try:
            conn = await self.negotiator.on_inbound_proposal(record, batch)
        except AlreadyHandledError as e:
            logger.debug("%s, skipping", e)
            return None
        except MalformedRecordError as e:
            logger.warning("%s, skipping", e)
            return RecordFailure(record.seq, ErrorCode.MALFORMED_RECORD, str(e))
        except SubmitFailedError as e:
            logger.error("Error handling connection request #%d: %s", record.seq, e)
            return RecordFailure(record.seq, ErrorCode.SUBMIT_FAILED, str(e))

        if monitor.handler is not None:
            try:
                await _call(monitor.handler, conn)
            except Exception as e:
                logger.exception("Connection handler failed for request #%d", record.seq)
                return RecordFailure(record.seq, ErrorCode.HANDLER_FAILED, repr(e))
        return None

    async def _handle_message(self, monitor: _TopicMonitor, record: Record) -> RecordFailure | None:
        try:
            content = await self.resolver.resolve_payload(record)
        except PayloadResolutionFailedError as e:
            logger.error("Error resolving payload of message #%d: %s", record.seq, e)
            return RecordFailure(record.seq, ErrorCode.PAYLOAD_RESOLUTION_FAILED, str(e))

        if monitor.handler is None:
            return None
        try:
            result = await _call(monitor.handler, record, content)
        except Exception as e:
            logger.exception(
                "Handler failed for message #%d on %s", record.seq, monitor.topic_id
            )
            return RecordFailure(record.seq, ErrorCode.HANDLER_FAILED, repr(e))
        if result is False:
            logger.warning(
                "Handler reported an error for message #%d on %s", record.seq, monitor.topic_id
            )
            return RecordFailure(record.seq, ErrorCode.HANDLER_FAILED, "handler returned False")
        return None

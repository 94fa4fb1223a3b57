from __future__ import annotations

import inspect
import logging
import random
from collections.abc import Callable
from typing import Any

from agent_link.backoff import BackoffScheduler
from agent_link.common import is_topic_id
from agent_link.config import EngineConfig
from agent_link.db import TopicLogDB
from agent_link.dedup import MessageDeduplicator
from agent_link.log_client import LocalTopicLogClient, TopicLogClient
from agent_link.models import (
    ActiveConnection,
    ConnectionState,
    Operation,
    TopicKind,
    encode_payload,
)
from agent_link.negotiator import ConnectionNegotiator
from agent_link.orchestrator import (
    ConnectionHandler,
    CycleReport,
    MessageHandler,
    PollLoopOrchestrator,
)
from agent_link.resolver import LargePayloadResolver

logger = logging.getLogger(__name__)


class MonitoringEngine:
    """Application-facing API: monitor topics, negotiate connections, send messages.

    ``message_handler`` is used for connection topics the engine starts
    monitoring on its own (after a connection is established).
    """

    def __init__(
        self,
        config: EngineConfig,
        client: TopicLogClient | None = None,
        *,
        message_handler: MessageHandler | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config
        self.client: TopicLogClient = client or LocalTopicLogClient(
            TopicLogDB(path=config.db_path)
        )
        self.message_handler = message_handler
        self.backoff = BackoffScheduler(
            base_backoff=config.backoff_base,
            max_backoff=config.backoff_max,
            jitter=config.backoff_jitter,
            rng=rng,
        )
        self.dedup = MessageDeduplicator.for_agent(
            account_id=config.account_id, inbound_topic_id=config.inbound_topic_id
        )
        self.negotiator = ConnectionNegotiator(
            self.client,
            account_id=config.account_id,
            inbound_topic_id=config.inbound_topic_id,
            backoff=BackoffScheduler(
                base_backoff=config.backoff_base,
                max_backoff=config.backoff_max,
                jitter=config.backoff_jitter,
                rng=rng,
            ),
            confirm_max_attempts=config.confirm_max_attempts,
            confirm_poll_seconds=config.confirm_poll_seconds,
        )
        self.resolver = LargePayloadResolver(self.client)
        self.orchestrator = PollLoopOrchestrator(
            self.client,
            backoff=self.backoff,
            dedup=self.dedup,
            negotiator=self.negotiator,
            resolver=self.resolver,
            poll_interval=config.poll_interval,
        )

    @property
    def operator_id(self) -> str:
        return self.negotiator.operator_id

    def start_monitoring(
        self,
        topic_id: str,
        handler: Callable[..., Any] | None = None,
        *,
        kind: TopicKind = TopicKind.CONNECTION,
        run_loop: bool = True,
    ) -> bool:
        if not is_topic_id(topic_id):
            raise ValueError(f"not a valid topic id: {topic_id!r}")
        return self.orchestrator.start_monitoring(topic_id, handler, kind=kind, run_loop=run_loop)

    async def stop_monitoring(self, topic_id: str) -> bool:
        return await self.orchestrator.stop_monitoring(topic_id)

    def monitor_inbound(
        self,
        on_connection: ConnectionHandler | None = None,
        *,
        auto_monitor: bool = True,
        run_loop: bool = True,
    ) -> bool:
        """Listen on our own inbound topic for connection requests.

        With ``auto_monitor`` every newly established connection topic is
        monitored with the engine's message handler.
        """

        async def _on_connection(conn: ActiveConnection) -> None:
            if auto_monitor:
                self._monitor_connection(conn, run_loop=run_loop)
            if on_connection is not None:
                result = on_connection(conn)
                if inspect.isawaitable(result):
                    await result

        return self.start_monitoring(
            self.config.inbound_topic_id,
            _on_connection,
            kind=TopicKind.INBOUND,
            run_loop=run_loop,
        )

    def _monitor_connection(self, conn: ActiveConnection, *, run_loop: bool = True) -> None:
        if conn.status != ConnectionState.ESTABLISHED or not conn.connection_topic_id:
            return
        if not is_topic_id(conn.connection_topic_id):
            logger.warning(
                "Not monitoring connection with %s: invalid topic id %r",
                conn.target_account_id,
                conn.connection_topic_id,
            )
            return
        self.orchestrator.start_monitoring(
            conn.connection_topic_id,
            self.message_handler,
            kind=TopicKind.CONNECTION,
            run_loop=run_loop,
        )

    async def initiate_outbound(
        self, target_account_id: str, *, monitor: bool = True, run_loop: bool = True
    ) -> ActiveConnection:
        conn = await self.negotiator.initiate_outbound(target_account_id)
        if monitor:
            self._monitor_connection(conn, run_loop=run_loop)
        return conn

    def list_active_connections(self) -> list[ActiveConnection]:
        return self.negotiator.list_connections()

    def monitored_topics(self) -> list[str]:
        return self.orchestrator.monitored_topics()

    async def poll_once(self, topic_id: str) -> CycleReport:
        return await self.orchestrator.poll_once(topic_id)

    async def poll_all_once(self) -> list[CycleReport]:
        return await self.orchestrator.poll_all_once()

    async def send_message(
        self, connection_topic_id: str, text: str, *, memo: str | None = None
    ) -> int:
        """Append a message to a connection topic.

        Text over ``max_inline_bytes`` is stored out of band and the message
        carries the reference instead.
        """
        data = text
        encoded = text.encode("utf-8")
        if len(encoded) > self.config.max_inline_bytes:
            data = await self.client.store_out_of_band(encoded)
            logger.info("Message of %d bytes stored out of band as %s", len(encoded), data)
        seq = await self.client.append(
            connection_topic_id,
            encode_payload(
                operation=Operation.MESSAGE, sender=self.operator_id, data=data, memo=memo
            ),
        )
        logger.debug("Sent message #%d on %s", seq, connection_topic_id)
        return seq

    async def shutdown(self) -> None:
        await self.orchestrator.shutdown()

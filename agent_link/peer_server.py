from __future__ import annotations

from collections import deque
from typing import Annotated, Any

from mcp.server.fastmcp import FastMCP
from mcp.types import CallToolResult

from agent_link.common import (
    ErrorCode,
    ToolWarning,
    WarningCode,
    env_int,
    is_topic_id,
    preview,
    setup_logging,
    tool_error,
    tool_ok,
)
from agent_link.config import ConfigError, EngineConfig
from agent_link.engine import MonitoringEngine
from agent_link.log_client import SubmitFailedError
from agent_link.models import ActiveConnection, ConnectionState, Record, TopicKind
from agent_link.tool_schemas import (
    CheckMessagesOutput,
    ConnectionListOutput,
    InitiateConnectionOutput,
    MonitorOutput,
    PingOutput,
    SendMessageOutput,
    StopMonitoringOutput,
)

mcp = FastMCP(
    name="agent-link",
    instructions=(
        "Call monitor_connections() once to start accepting incoming connection requests on "
        "this agent's inbound topic. Use initiate_connection(target_account_id=...) to open a "
        "connection to another agent. list_connections() shows every connection and its "
        "status. Exchange messages with send_message(connection_topic_id=..., message=...) and "
        "check_messages(connection_topic_id=...). Messages are delivered at most once: "
        "check_messages() drains what has arrived since the previous call."
    ),
)

# Per server process; rebuilt from the environment on restart.
_config: EngineConfig | None = None
_engine: MonitoringEngine | None = None
_inbox: dict[str, deque[dict[str, Any]]] = {}


def _inbox_limit() -> int:
    return env_int("AGENT_LINK_INBOX_MAX_ITEMS", default=500, min_value=1)


def _store_message(record: Record, content: str) -> None:
    box = _inbox.setdefault(record.topic_id, deque(maxlen=_inbox_limit()))
    box.append(
        {
            "topic_id": record.topic_id,
            "seq": record.seq,
            "sender": record.sender,
            "created_at": record.created_at,
            "content": content,
        }
    )


def _get_engine() -> MonitoringEngine:
    global _config, _engine
    if _engine is None:
        if _config is None:
            _config = EngineConfig.from_env()
        _engine = MonitoringEngine(_config, message_handler=_store_message)
    return _engine


def _connection_struct(c: ActiveConnection) -> dict[str, Any]:
    return c.to_dict()


@mcp.tool(description="Health check for the agent-link MCP server.")
def ping() -> Annotated[CallToolResult, PingOutput]:
    """Health check for the agent-link MCP server."""
    try:
        engine = _get_engine()
    except ConfigError as e:
        return tool_error(code=ErrorCode.CONFIG_ERROR, message=str(e))
    return tool_ok(
        text="pong",
        structured={
            "ok": True,
            "account_id": engine.config.account_id,
            "inbound_topic_id": engine.config.inbound_topic_id,
        },
    )


@mcp.tool(
    description=(
        "Start listening on this agent's own inbound topic for incoming connection requests. "
        "Takes no arguments and does not open outgoing connections."
    )
)
async def monitor_connections() -> Annotated[CallToolResult, MonitorOutput]:
    """Start listening on this agent's inbound topic for connection requests."""
    try:
        engine = _get_engine()
    except ConfigError as e:
        return tool_error(code=ErrorCode.CONFIG_ERROR, message=str(e))

    topic_id = engine.config.inbound_topic_id
    started = engine.monitor_inbound()
    warnings: list[ToolWarning] = []
    if not started:
        warnings.append(
            ToolWarning(code=str(WarningCode.ALREADY_MONITORING), context={"topic_id": topic_id})
        )
        text = f"Already monitoring topic {topic_id}."
    else:
        text = f"Started monitoring inbound topic {topic_id} for connection requests."
    return tool_ok(
        text=text,
        structured={"topic_id": topic_id, "kind": str(TopicKind.INBOUND), "monitoring": True},
        warnings=warnings,
    )


@mcp.tool(description="Stop monitoring a topic (inbound or connection).")
async def stop_monitoring(topic_id: str) -> Annotated[CallToolResult, StopMonitoringOutput]:
    """Stop monitoring a topic."""
    if not is_topic_id(topic_id):
        return tool_error(
            code=ErrorCode.INVALID_ARGUMENT, message="topic_id is not a valid topic id"
        )
    try:
        engine = _get_engine()
    except ConfigError as e:
        return tool_error(code=ErrorCode.CONFIG_ERROR, message=str(e))

    stopped = await engine.stop_monitoring(topic_id)
    warnings: list[ToolWarning] = []
    if not stopped:
        warnings.append(
            ToolWarning(code=str(WarningCode.NOT_MONITORING), context={"topic_id": topic_id})
        )
    text = f"Stopped monitoring {topic_id}." if stopped else f"Topic {topic_id} was not monitored."
    return tool_ok(
        text=text, structured={"topic_id": topic_id, "stopped": stopped}, warnings=warnings
    )


@mcp.tool(description="Open a connection to another agent by account id and wait for it.")
async def initiate_connection(
    target_account_id: str,
) -> Annotated[CallToolResult, InitiateConnectionOutput]:
    """Send a connection request to another agent and wait (bounded) for confirmation."""
    if not isinstance(target_account_id, str) or not target_account_id.strip():
        return tool_error(
            code=ErrorCode.INVALID_ARGUMENT, message="target_account_id must be a non-empty string"
        )
    try:
        engine = _get_engine()
    except ConfigError as e:
        return tool_error(code=ErrorCode.CONFIG_ERROR, message=str(e))

    conn = await engine.initiate_outbound(target_account_id.strip())
    structured = {"connection": _connection_struct(conn)}
    if conn.status != ConnectionState.ESTABLISHED:
        return tool_error(
            code=ErrorCode(conn.error_code or ErrorCode.CONNECTION_TIMEOUT),
            message=f"Could not establish a connection with {conn.target_account_id}.",
            structured=structured,
        )
    return tool_ok(
        text=(
            f"Connected to {conn.target_account_id} "
            f"via connection topic {conn.connection_topic_id}."
        ),
        structured=structured,
    )


@mcp.tool(description="List connections known to this agent, in the order they were created.")
def list_connections() -> Annotated[CallToolResult, ConnectionListOutput]:
    """List connections and currently monitored topics."""
    try:
        engine = _get_engine()
    except ConfigError as e:
        return tool_error(code=ErrorCode.CONFIG_ERROR, message=str(e))

    conns = engine.list_active_connections()
    monitored = engine.monitored_topics()
    lines = [f"Connections: {len(conns)}"]
    for c in conns[:20]:
        lines.append(
            f"- {c.target_account_id} topic={c.connection_topic_id} status={c.status}"
        )
    if len(conns) > 20:
        lines.append(f"... ({len(conns) - 20} more)")
    return tool_ok(
        text="\n".join(lines),
        structured={
            "connections": [_connection_struct(c) for c in conns],
            "monitored_topics": monitored,
        },
    )


@mcp.tool(description="Send a message on an established connection topic.")
async def send_message(
    connection_topic_id: str,
    message: str,
) -> Annotated[CallToolResult, SendMessageOutput]:
    """Send a message; long messages are stored out of band automatically."""
    if not is_topic_id(connection_topic_id):
        return tool_error(
            code=ErrorCode.INVALID_ARGUMENT, message="connection_topic_id is not a valid topic id"
        )
    if not isinstance(message, str) or not message:
        return tool_error(
            code=ErrorCode.INVALID_ARGUMENT, message="message must be a non-empty string"
        )
    try:
        engine = _get_engine()
    except ConfigError as e:
        return tool_error(code=ErrorCode.CONFIG_ERROR, message=str(e))

    if engine.negotiator.get_by_topic(connection_topic_id) is None:
        return tool_error(
            code=ErrorCode.CONNECTION_NOT_FOUND,
            message=f"No connection uses topic {connection_topic_id}.",
        )
    try:
        seq = await engine.send_message(connection_topic_id, message)
    except SubmitFailedError as e:
        return tool_error(code=ErrorCode.SUBMIT_FAILED, message=str(e))
    return tool_ok(
        text=f"Message sent on {connection_topic_id} with sequence number {seq}.",
        structured={"connection_topic_id": connection_topic_id, "seq": seq},
    )


@mcp.tool(description="Return messages received on a connection topic since the last check.")
async def check_messages(
    connection_topic_id: str,
    max_items: int = 20,
    refresh: bool = True,
) -> Annotated[CallToolResult, CheckMessagesOutput]:
    """Drain received messages for a connection topic.

    refresh: run one poll cycle first (subject to rate-limit backoff).
    """
    if not is_topic_id(connection_topic_id):
        return tool_error(
            code=ErrorCode.INVALID_ARGUMENT, message="connection_topic_id is not a valid topic id"
        )
    if not isinstance(max_items, int) or max_items <= 0:
        return tool_error(code=ErrorCode.INVALID_ARGUMENT, message="max_items must be > 0")
    try:
        engine = _get_engine()
    except ConfigError as e:
        return tool_error(code=ErrorCode.CONFIG_ERROR, message=str(e))

    if refresh and connection_topic_id in engine.monitored_topics():
        await engine.poll_once(connection_topic_id)

    box = _inbox.get(connection_topic_id, deque())
    messages: list[dict[str, Any]] = []
    while box and len(messages) < max_items:
        messages.append(box.popleft())

    warnings: list[ToolWarning] = []
    if box:
        warnings.append(
            ToolWarning(
                code=str(WarningCode.INBOX_TRUNCATED),
                context={"returned": len(messages), "remaining": len(box)},
            )
        )

    lines = [f"Messages on {connection_topic_id}: {len(messages)}"]
    for m in messages:
        lines.append(f"[{m['seq']}] {m['sender']}: {preview(m['content'])}")
    return tool_ok(
        text="\n".join(lines),
        structured={
            "connection_topic_id": connection_topic_id,
            "messages": messages,
            "count": len(messages),
        },
        warnings=warnings,
    )


def main() -> None:
    global _config
    # Missing identifiers are fatal here, before the transport starts.
    _config = EngineConfig.from_env()
    setup_logging(_config.log_level)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()

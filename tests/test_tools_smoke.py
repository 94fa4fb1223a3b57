from __future__ import annotations

import os
import sys
from pathlib import Path

import anyio
import pytest
from mcp.client.session import ClientSession
from mcp.client.stdio import StdioServerParameters, stdio_client

from agent_link.db import TopicLogDB


def _bin(name: str) -> str:
    return str(Path(sys.executable).with_name(name))


def _env(db_path: str, account_id: str, inbound_topic_id: str) -> dict[str, str]:
    return {
        **os.environ,
        "AGENT_LINK_DB": db_path,
        "AGENT_LINK_ACCOUNT_ID": account_id,
        "AGENT_LINK_INBOUND_TOPIC_ID": inbound_topic_id,
        "AGENT_LINK_POLL_INTERVAL_SECONDS": "0.1",
        "AGENT_LINK_CONFIRM_POLL_SECONDS": "0.1",
        "AGENT_LINK_CONFIRM_MAX_ATTEMPTS": "100",
        "AGENT_LINK_LOG_LEVEL": "WARNING",
    }


@pytest.mark.anyio
async def test_two_peer_smoke(tmp_path):
    db_path = str(tmp_path / "link.sqlite")
    db = TopicLogDB(path=db_path)
    alice, _ = db.register_agent(account_id="0.0.1001", name="alice")
    bob, _ = db.register_agent(account_id="0.0.2002", name="bob")

    alice_server = StdioServerParameters(
        command=_bin("agent-link"), env=_env(db_path, alice.account_id, alice.inbound_topic_id)
    )
    bob_server = StdioServerParameters(
        command=_bin("agent-link"), env=_env(db_path, bob.account_id, bob.inbound_topic_id)
    )

    async with (
        stdio_client(bob_server) as (b_read, b_write),
        ClientSession(b_read, b_write) as bob_session,
        stdio_client(alice_server) as (a_read, a_write),
        ClientSession(a_read, a_write) as alice_session,
    ):
        await bob_session.initialize()
        await alice_session.initialize()

        tools = await bob_session.list_tools()
        tool_names = {t.name for t in tools.tools}
        assert {
            "ping",
            "monitor_connections",
            "stop_monitoring",
            "initiate_connection",
            "list_connections",
            "send_message",
            "check_messages",
        } <= tool_names

        pong = await bob_session.call_tool("ping", {})
        assert pong.isError is False
        assert pong.structuredContent["account_id"] == bob.account_id

        started = await bob_session.call_tool("monitor_connections", {})
        assert started.isError is False
        assert started.structuredContent["topic_id"] == bob.inbound_topic_id

        again = await bob_session.call_tool("monitor_connections", {})
        assert again.isError is False
        assert again.structuredContent["warnings"][0]["code"] == "ALREADY_MONITORING"

        connected = await alice_session.call_tool(
            "initiate_connection", {"target_account_id": bob.account_id}
        )
        assert connected.isError is False, connected.content[0].text
        connection = connected.structuredContent["connection"]
        assert connection["status"] == "established"
        topic = connection["connection_topic_id"]

        sent = await alice_session.call_tool(
            "send_message", {"connection_topic_id": topic, "message": "hello bob"}
        )
        assert sent.isError is False
        assert sent.structuredContent["seq"] == 1

        messages: list[dict] = []
        for _ in range(50):
            checked = await bob_session.call_tool(
                "check_messages", {"connection_topic_id": topic}
            )
            assert checked.isError is False
            messages.extend(checked.structuredContent["messages"])
            if messages:
                break
            await anyio.sleep(0.1)
        assert [m["content"] for m in messages] == ["hello bob"]

        listed = await bob_session.call_tool("list_connections", {})
        assert listed.isError is False
        [bob_conn] = listed.structuredContent["connections"]
        assert bob_conn["target_account_id"] == alice.account_id
        assert bob_conn["connection_topic_id"] == topic
        assert topic in listed.structuredContent["monitored_topics"]

        unknown = await alice_session.call_tool(
            "send_message", {"connection_topic_id": "0.0.424242", "message": "hi"}
        )
        assert unknown.isError is True
        assert unknown.structuredContent["error"]["code"] == "CONNECTION_NOT_FOUND"

        bad = await bob_session.call_tool("stop_monitoring", {"topic_id": "nope"})
        assert bad.isError is True
        assert bad.structuredContent["error"]["code"] == "INVALID_ARGUMENT"

        stopped = await bob_session.call_tool("stop_monitoring", {"topic_id": topic})
        assert stopped.isError is False
        assert stopped.structuredContent["stopped"] is True

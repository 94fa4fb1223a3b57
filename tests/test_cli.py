from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from agent_link.cli import cli
from agent_link.db import TopicLogDB
from agent_link.entrypoint import main
from agent_link.log_client import decode_raw_records
from agent_link.models import Operation, encode_payload, operator_id


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("AGENT_LINK_ACCOUNT_ID", "AGENT_LINK_INBOUND_TOPIC_ID", "AGENT_LINK_DB"):
        monkeypatch.delenv(name, raising=False)


def test_cli_agents_register_and_list(tmp_path: Path) -> None:
    db_path = str(tmp_path / "link.sqlite")
    runner = CliRunner()

    res = runner.invoke(
        cli, ["--db-path", db_path, "agents", "register", "0.0.1001", "--name", "alice", "--json"]
    )
    assert res.exit_code == 0, res.output
    payload = json.loads(res.output)
    assert payload["created"] is True
    assert payload["name"] == "alice"

    again = runner.invoke(cli, ["--db-path", db_path, "agents", "register", "0.0.1001"])
    assert again.exit_code == 0, again.output
    assert "Already registered" in again.output

    listed = runner.invoke(cli, ["--db-path", db_path, "agents", "list", "--json"])
    assert listed.exit_code == 0, listed.output
    agents = json.loads(listed.output)["agents"]
    assert [a["account_id"] for a in agents] == ["0.0.1001"]
    assert agents[0]["inbound_topic_id"] == payload["inbound_topic_id"]


def test_cli_topics_list_json_includes_counts(tmp_path: Path) -> None:
    db_path = str(tmp_path / "link.sqlite")
    db = TopicLogDB(path=db_path)
    t1 = db.create_topic(memo="pink")
    t2 = db.create_topic(memo="blue")
    db.append(topic_id=t1, payload={"op": "message"})
    db.append(topic_id=t1, payload={"op": "message"})
    db.append(topic_id=t2, payload={"op": "message"})

    runner = CliRunner()
    res = runner.invoke(cli, ["--db-path", db_path, "topics", "list", "--json"])
    assert res.exit_code == 0, res.output

    topics = {t["topic_id"]: t for t in json.loads(res.output)["topics"]}
    assert topics[t1]["counts"] == {"records": 2, "last_seq": 2}
    assert topics[t2]["counts"] == {"records": 1, "last_seq": 1}
    assert topics[t1]["memo"] == "pink"


def test_cli_db_wipe_deletes_db_file(tmp_path: Path) -> None:
    db_path = tmp_path / "link.sqlite"
    TopicLogDB(path=str(db_path)).create_topic()

    assert db_path.exists()

    runner = CliRunner()
    res = runner.invoke(cli, ["--db-path", str(db_path), "db", "wipe", "--yes"])
    assert res.exit_code == 0, res.output
    assert not db_path.exists()


def test_cli_topics_watch_shows_recent_records(tmp_path: Path) -> None:
    db_path = str(tmp_path / "link.sqlite")
    db = TopicLogDB(path=db_path)
    t = db.create_topic()
    for sender, content in [("0.0.1@alice", "Hello!"), ("0.0.2@bob", "Hi there!")]:
        db.append(
            topic_id=t,
            payload=encode_payload(operation=Operation.MESSAGE, sender=sender, data=content),
        )
    for i in range(3):
        db.append(
            topic_id=t,
            payload=encode_payload(
                operation=Operation.MESSAGE, sender="0.0.1@alice", data=f"Message number {i}"
            ),
        )

    runner = CliRunner()
    res = runner.invoke(cli, ["--db-path", db_path, "topics", "watch", t, "-n", "10"])
    assert res.exit_code == 0, res.output
    assert t in res.output
    assert "Hello!" in res.output
    assert "0.0.2@bob" in res.output

    res = runner.invoke(cli, ["--db-path", db_path, "topics", "watch", t, "-n", "2"])
    assert res.exit_code == 0, res.output
    assert "Message number 2" in res.output
    assert "Message number 1" in res.output
    assert "Message number 0" not in res.output
    assert "Hello!" not in res.output


def test_cli_topics_watch_topic_not_found(tmp_path: Path) -> None:
    db_path = str(tmp_path / "link.sqlite")
    TopicLogDB(path=db_path).create_topic()

    runner = CliRunner()
    res = runner.invoke(cli, ["--db-path", db_path, "topics", "watch", "0.0.1"])
    assert res.exit_code != 0
    assert "Topic not found" in res.output


def test_cli_topics_watch_tail_alias() -> None:
    runner = CliRunner()
    res = runner.invoke(cli, ["topics", "watch", "--help"])
    assert res.exit_code == 0
    assert "--tail" in res.output
    assert "Wait for new records" in res.output


def test_cli_monitor_once_accepts_connection_request(tmp_path: Path) -> None:
    db_path = str(tmp_path / "link.sqlite")
    db = TopicLogDB(path=db_path)
    alice, _ = db.register_agent(account_id="0.0.1001")
    bob, _ = db.register_agent(account_id="0.0.2002")
    db.append(
        topic_id=bob.inbound_topic_id,
        payload=encode_payload(
            operation=Operation.CONNECTION_REQUEST,
            sender=operator_id(alice.inbound_topic_id, alice.account_id),
        ),
    )

    runner = CliRunner()
    res = runner.invoke(
        cli, ["--db-path", db_path, "monitor", "--account-id", "0.0.2002", "--once"]
    )
    assert res.exit_code == 0, res.output
    assert "Connection with 0.0.1001: established" in res.output

    records = decode_raw_records(db.read(topic_id=bob.inbound_topic_id))
    created = [r for r in records if r.operation == Operation.CONNECTION_CREATED]
    assert len(created) == 1
    assert created[0].connection_id == 1
    assert db.topic_exists(topic_id=created[0].connection_topic_id)


def test_cli_monitor_unregistered_agent_fails(tmp_path: Path) -> None:
    db_path = str(tmp_path / "link.sqlite")

    runner = CliRunner()
    res = runner.invoke(
        cli, ["--db-path", db_path, "monitor", "--account-id", "0.0.5", "--once"]
    )
    assert res.exit_code != 0
    assert "not registered" in res.output


def test_cli_connect_to_unknown_agent_fails(tmp_path: Path) -> None:
    db_path = str(tmp_path / "link.sqlite")
    TopicLogDB(path=db_path).register_agent(account_id="0.0.1001")

    runner = CliRunner()
    res = runner.invoke(
        cli,
        [
            "--db-path",
            db_path,
            "connect",
            "0.0.9999",
            "--account-id",
            "0.0.1001",
            "--attempts",
            "1",
            "--poll-seconds",
            "0",
        ],
    )
    assert res.exit_code != 0
    assert "failed" in res.output
    assert "Could not connect to 0.0.9999" in res.output


def test_cli_send_appends_message(tmp_path: Path) -> None:
    db_path = str(tmp_path / "link.sqlite")
    db = TopicLogDB(path=db_path)
    alice, _ = db.register_agent(account_id="0.0.1001")
    topic = db.create_topic(memo="connection:test")

    runner = CliRunner()
    res = runner.invoke(
        cli, ["--db-path", db_path, "send", topic, "hello there", "--account-id", "0.0.1001"]
    )
    assert res.exit_code == 0, res.output
    assert f"Sent message #1 on {topic}" in res.output

    [record] = decode_raw_records(db.read(topic_id=topic))
    assert record.payload == "hello there"
    assert record.sender == operator_id(alice.inbound_topic_id, "0.0.1001")


def test_entrypoint_exposes_cli_group(tmp_path: Path) -> None:
    runner = CliRunner()
    res = runner.invoke(main, ["cli", "--help"])
    assert res.exit_code == 0
    assert "agents" in res.output
    assert "monitor" in res.output

from __future__ import annotations

import asyncio
import json
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Any

import click

from agent_link.common import preview, setup_logging
from agent_link.config import ConfigError, EngineConfig
from agent_link.db import AgentNotFoundError, TopicLogDB
from agent_link.engine import MonitoringEngine
from agent_link.log_client import LocalTopicLogClient, SubmitFailedError, decode_raw_records
from agent_link.models import ActiveConnection, ConnectionState, Operation, Record


@click.group()
@click.option(
    "--db-path",
    default=None,
    help="SQLite DB path (defaults to $AGENT_LINK_DB or ~/.agent_link/agent_link.sqlite).",
)
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
@click.pass_context
def cli(ctx: click.Context, db_path: str | None, log_level: str) -> None:
    """Administrative CLI for agent-link."""
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path
    setup_logging(log_level)


def _db(ctx: click.Context) -> TopicLogDB:
    db_path = None
    if ctx.obj:
        db_path = ctx.obj.get("db_path")
    return TopicLogDB(path=db_path)


def _engine(
    ctx: click.Context,
    *,
    account_id: str | None,
    inbound_topic_id: str | None,
    **overrides: Any,
) -> MonitoringEngine:
    db = _db(ctx)
    account_id = account_id or os.environ.get("AGENT_LINK_ACCOUNT_ID")
    if account_id and not inbound_topic_id and not os.environ.get("AGENT_LINK_INBOUND_TOPIC_ID"):
        try:
            inbound_topic_id = db.get_agent(account_id=account_id).inbound_topic_id
        except AgentNotFoundError:
            raise click.ClickException(
                f"Agent {account_id} is not registered; pass --inbound-topic or run "
                "`agent-link cli agents register`."
            ) from None
    try:
        config = EngineConfig.from_env(
            account_id=account_id,
            inbound_topic_id=inbound_topic_id,
            db_path=db.path,
            **overrides,
        )
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    return MonitoringEngine(config, LocalTopicLogClient(db))


_account_option = click.option(
    "--account-id",
    default=None,
    help="Local account id (defaults to $AGENT_LINK_ACCOUNT_ID).",
)
_inbound_option = click.option(
    "--inbound-topic",
    "inbound_topic_id",
    default=None,
    help="Local inbound topic (defaults to the registered one or $AGENT_LINK_INBOUND_TOPIC_ID).",
)


@cli.group("db")
def db_group() -> None:
    """Database operations."""


@db_group.command("wipe")
@click.option("--yes", is_flag=True, help="Do not prompt for confirmation.")
@click.pass_context
def db_wipe(ctx: click.Context, *, yes: bool) -> None:
    """Delete the local topic log SQLite file (and WAL/SHM sidecars)."""
    db = _db(ctx)
    db_path = db.path
    if db_path == ":memory:":
        raise click.ClickException("Cannot wipe an in-memory DB.")

    main = Path(db_path)
    candidates = [main, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")]

    click.echo(f"DB path: {main}")
    existing = [p for p in candidates if p.exists()]
    if not existing:
        click.echo("Nothing to delete (DB file not found).")
        return

    click.echo("Will delete:")
    for p in existing:
        click.echo(f"- {p}")

    if not yes and not click.confirm("Delete these files?", default=False):
        raise click.ClickException("Canceled.")

    removed = 0
    for p in existing:
        try:
            p.unlink()
        except FileNotFoundError:  # pragma: no cover
            continue
        removed += 1

    click.echo(f"Deleted {removed} file(s).")


@cli.group("agents")
def agents_group() -> None:
    """Agent directory operations."""


@agents_group.command("register")
@click.argument("account_id")
@click.option("--name", default=None, help="Display name.")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of text.")
@click.pass_context
def agents_register(ctx: click.Context, account_id: str, *, name: str | None, as_json: bool) -> None:
    """Register an agent and allocate its inbound/outbound topics."""
    agent, created = _db(ctx).register_agent(account_id=account_id, name=name)
    if as_json:
        click.echo(
            json.dumps(
                {
                    "account_id": agent.account_id,
                    "name": agent.name,
                    "inbound_topic_id": agent.inbound_topic_id,
                    "outbound_topic_id": agent.outbound_topic_id,
                    "created": created,
                },
                ensure_ascii=True,
                sort_keys=True,
                indent=2,
            )
        )
        return
    verb = "Registered" if created else "Already registered:"
    click.echo(
        f"{verb} {agent.name} ({agent.account_id}) "
        f"inbound={agent.inbound_topic_id} outbound={agent.outbound_topic_id}"
    )


@agents_group.command("list")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of text.")
@click.pass_context
def agents_list(ctx: click.Context, *, as_json: bool) -> None:
    """List registered agents."""
    agents = _db(ctx).list_agents()
    if as_json:
        click.echo(
            json.dumps(
                {
                    "agents": [
                        {
                            "account_id": a.account_id,
                            "name": a.name,
                            "inbound_topic_id": a.inbound_topic_id,
                            "outbound_topic_id": a.outbound_topic_id,
                        }
                        for a in agents
                    ]
                },
                ensure_ascii=True,
                sort_keys=True,
                indent=2,
            )
        )
        return
    click.echo(f"Agents: {len(agents)}")
    for a in agents:
        click.echo(f"- {a.name} ({a.account_id}) inbound={a.inbound_topic_id}")


@cli.group("topics")
def topics_group() -> None:
    """Topic operations."""


@topics_group.command("list")
@click.option("--limit", type=int, default=200, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table.")
@click.pass_context
def topics_list(ctx: click.Context, *, limit: int, as_json: bool) -> None:
    """List topics with record counts."""
    if limit <= 0:
        raise click.ClickException("limit must be > 0")

    db = _db(ctx)
    rows = db.topic_list_with_counts(limit=limit)

    if as_json:
        click.echo(
            json.dumps(
                {
                    "topics": [
                        {
                            "topic_id": r.topic_id,
                            "memo": r.memo,
                            "created_at": r.created_at,
                            "counts": {"records": r.record_count, "last_seq": r.last_seq},
                        }
                        for r in rows
                    ]
                },
                ensure_ascii=True,
                sort_keys=True,
                indent=2,
            )
        )
        return

    click.echo(f"DB path: {db.path}")
    click.echo(f"Topics: {len(rows)}")
    if not rows:
        return

    headers = ["topic_id", "memo", "records", "last_seq"]
    cols = {h: len(h) for h in headers}
    for r in rows:
        cols["topic_id"] = max(cols["topic_id"], len(r.topic_id))
        cols["memo"] = max(cols["memo"], len(r.memo or ""))
        cols["records"] = max(cols["records"], len(str(r.record_count)))
        cols["last_seq"] = max(cols["last_seq"], len(str(r.last_seq)))

    def _cell(key: str, val: Any) -> str:
        s = str(val)
        return s.rjust(cols[key]) if key in {"records", "last_seq"} else s.ljust(cols[key])

    click.echo(" ".join(_cell(h, h) for h in headers))
    for r in rows:
        click.echo(
            " ".join(
                [
                    _cell("topic_id", r.topic_id),
                    _cell("memo", r.memo or ""),
                    _cell("records", r.record_count),
                    _cell("last_seq", r.last_seq),
                ]
            )
        )


# Colors for different senders (cycles through these)
_SENDER_COLORS = ["cyan", "magenta", "yellow", "green", "blue", "red"]
_sender_color_map: dict[str, str] = {}


def _get_sender_color(sender: str) -> str:
    """Get a consistent color for a sender."""
    if sender not in _sender_color_map:
        _sender_color_map[sender] = _SENDER_COLORS[len(_sender_color_map) % len(_SENDER_COLORS)]
    return _sender_color_map[sender]


def _format_record(record: Record, *, show_time: bool = True, content: str | None = None) -> str:
    """Format a record for display."""
    sender_styled = click.style(record.sender or "?", fg=_get_sender_color(record.sender), bold=True)
    seq_styled = click.style(f"[{record.seq}]", fg="white", dim=True)

    parts = [seq_styled, sender_styled]

    if show_time:
        ts = datetime.fromtimestamp(record.created_at).strftime("%H:%M:%S")
        parts.append(click.style(ts, fg="white", dim=True))

    if record.operation == Operation.MESSAGE:
        body = preview(record.payload if content is None else content, max_chars=100)
    elif record.operation == Operation.CONNECTION_CREATED:
        body = click.style(
            f"connection_created for #{record.connection_id} -> {record.connection_topic_id}",
            fg="green",
        )
    else:
        body = click.style("connection_request", fg="yellow")

    return f"{' '.join(parts)}: {body}"


@topics_group.command("watch")
@click.argument("topic_id")
@click.option(
    "--follow",
    "-f",
    "--tail",
    is_flag=True,
    help="Wait for new records (like tail -f). Alias: --tail.",
)
@click.option(
    "--last",
    "-n",
    type=int,
    default=10,
    show_default=True,
    help="Show last N records initially.",
)
@click.pass_context
def topics_watch(ctx: click.Context, topic_id: str, *, follow: bool, last: int) -> None:
    """Watch records on a topic.

    Examples:

        agent-link cli topics watch <topic_id>          # Show recent records
        agent-link cli topics watch <topic_id> -f       # Follow new records
        agent-link cli topics watch <topic_id> -f -n 0  # Follow, skip history
    """
    db = _db(ctx)
    if not db.topic_exists(topic_id=topic_id):
        raise click.ClickException(f"Topic not found: {topic_id}")

    click.echo(click.style(f"Watching topic: {topic_id}", fg="green", bold=True))
    click.echo()

    initial = db.read_latest(topic_id=topic_id, limit=max(last, 1))
    last_seq = initial[-1].seq if initial else 0
    if last > 0:
        for record in decode_raw_records(initial):
            click.echo(_format_record(record))

    if not follow:
        return

    click.echo()
    click.echo(click.style("--- Waiting for new records (Ctrl+C to exit) ---", dim=True))
    click.echo()

    try:
        while True:
            rows = db.read(topic_id=topic_id, after_seq=last_seq, limit=100)
            for record in decode_raw_records(rows):
                click.echo(_format_record(record))
            if rows:
                last_seq = rows[-1].seq
            time.sleep(1.0)
    except KeyboardInterrupt:
        click.echo()
        click.echo(click.style("Stopped watching.", dim=True))


def _echo_connection(conn: ActiveConnection) -> None:
    color = "green" if conn.status == ConnectionState.ESTABLISHED else "red"
    click.echo(
        click.style(
            f"Connection with {conn.target_account_id}: {conn.status} "
            f"(topic={conn.connection_topic_id}, request=#{conn.request_seq})",
            fg=color,
        )
    )


def _echo_message(record: Record, content: str) -> None:
    click.echo(_format_record(record, content=content))


async def _run_monitor(engine: MonitoringEngine, *, once: bool) -> None:
    engine.message_handler = _echo_message
    engine.monitor_inbound(_echo_connection, run_loop=not once)
    if once:
        # Inbound first so freshly accepted connections are polled in the same pass.
        await engine.poll_once(engine.config.inbound_topic_id)
        await engine.poll_all_once()
        await engine.shutdown()
        return
    try:
        while engine.monitored_topics():
            await asyncio.sleep(1.0)
    finally:
        await engine.shutdown()


@cli.command("monitor")
@_account_option
@_inbound_option
@click.option("--interval", type=float, default=None, help="Seconds between polls.")
@click.option("--once", is_flag=True, help="Run a single poll pass and exit.")
@click.pass_context
def monitor(
    ctx: click.Context,
    *,
    account_id: str | None,
    inbound_topic_id: str | None,
    interval: float | None,
    once: bool,
) -> None:
    """Accept connection requests and print messages on established connections."""
    engine = _engine(
        ctx,
        account_id=account_id,
        inbound_topic_id=inbound_topic_id,
        poll_interval=interval,
    )
    click.echo(
        click.style(
            f"Monitoring {engine.config.inbound_topic_id} as {engine.config.account_id}",
            fg="green",
            bold=True,
        )
    )
    try:
        asyncio.run(_run_monitor(engine, once=once))
    except KeyboardInterrupt:
        click.echo()
        click.echo(click.style("Stopped monitoring.", dim=True))


@cli.command("connect")
@click.argument("target_account_id")
@_account_option
@_inbound_option
@click.option("--attempts", type=int, default=None, help="Confirmation reads before giving up.")
@click.option("--poll-seconds", type=float, default=None, help="Seconds between confirmation reads.")
@click.pass_context
def connect(
    ctx: click.Context,
    target_account_id: str,
    *,
    account_id: str | None,
    inbound_topic_id: str | None,
    attempts: int | None,
    poll_seconds: float | None,
) -> None:
    """Request a connection with another agent and wait for confirmation."""
    engine = _engine(
        ctx,
        account_id=account_id,
        inbound_topic_id=inbound_topic_id,
        confirm_max_attempts=attempts,
        confirm_poll_seconds=poll_seconds,
    )
    conn = asyncio.run(engine.initiate_outbound(target_account_id, monitor=False))
    _echo_connection(conn)
    if conn.status != ConnectionState.ESTABLISHED:
        raise click.ClickException(f"Could not connect to {target_account_id}.")


@cli.command("send")
@click.argument("connection_topic_id")
@click.argument("message")
@_account_option
@_inbound_option
@click.pass_context
def send(
    ctx: click.Context,
    connection_topic_id: str,
    message: str,
    *,
    account_id: str | None,
    inbound_topic_id: str | None,
) -> None:
    """Send a message on a connection topic."""
    engine = _engine(ctx, account_id=account_id, inbound_topic_id=inbound_topic_id)
    try:
        seq = asyncio.run(engine.send_message(connection_topic_id, message))
    except SubmitFailedError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Sent message #{seq} on {connection_topic_id}.")

from __future__ import annotations

import json
import logging
import os
import re
import sys
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from mcp.types import CallToolResult, TextContent

TOPIC_ID_RE = re.compile(r"^\d+\.\d+\.\d+$")


class ErrorCode(StrEnum):
    RATE_LIMITED = "RATE_LIMITED"
    READ_FAILED = "READ_FAILED"
    SUBMIT_FAILED = "SUBMIT_FAILED"
    MALFORMED_RECORD = "MALFORMED_RECORD"
    PAYLOAD_RESOLUTION_FAILED = "PAYLOAD_RESOLUTION_FAILED"
    HANDLER_FAILED = "HANDLER_FAILED"
    CONNECTION_TIMEOUT = "CONNECTION_TIMEOUT"
    CONNECTION_NOT_FOUND = "CONNECTION_NOT_FOUND"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    CONFIG_ERROR = "CONFIG_ERROR"


class WarningCode(StrEnum):
    ALREADY_MONITORING = "ALREADY_MONITORING"
    NOT_MONITORING = "NOT_MONITORING"
    INBOX_TRUNCATED = "INBOX_TRUNCATED"


@dataclass(frozen=True, slots=True)
class ToolWarning:
    code: str
    message: str | None = None
    context: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code}
        if self.message is not None:
            out["message"] = self.message
        if self.context is not None:
            out["context"] = self.context
        return out


def now() -> float:
    return time.time()


def is_topic_id(value: object) -> bool:
    return isinstance(value, str) and TOPIC_ID_RE.match(value) is not None


def env_int(name: str, *, default: int, min_value: int | None = None) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as e:  # pragma: no cover
            raise ValueError(f"{name} must be an int") from e
    if min_value is not None and value < min_value:
        raise ValueError(f"{name} must be >= {min_value}")
    return value


def env_float(name: str, *, default: float, min_value: float | None = None) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as e:
            raise ValueError(f"{name} must be a number") from e
    if min_value is not None and value < min_value:
        raise ValueError(f"{name} must be >= {min_value}")
    return value


def env_str(name: str, *, default: str) -> str:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value


def json_dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=True, separators=(",", ":"), sort_keys=True)


def preview(text: str, *, max_chars: int = 80) -> str:
    lines = text.split("\n")
    return lines[0][:max_chars] + " ..." if len(lines) > 1 else text[:max_chars]


def setup_logging(level: str | int = "INFO") -> None:
    """Configure the root logger with a single stderr handler.

    stderr keeps stdout free for the MCP stdio transport.
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"unknown log level: {level}")
        level = resolved

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )

    root = logging.getLogger()
    root.setLevel(level)
    for existing in list(root.handlers):
        if getattr(existing, "_agent_link", False):
            root.removeHandler(existing)
    handler._agent_link = True  # type: ignore[attr-defined]
    root.addHandler(handler)


def tool_ok(
    *,
    text: str,
    structured: dict[str, Any] | None = None,
    warnings: list[ToolWarning] | None = None,
) -> CallToolResult:
    payload: dict[str, Any] = {} if structured is None else dict(structured)
    if warnings:
        payload["warnings"] = [w.to_dict() for w in warnings]
    return CallToolResult(
        content=[TextContent(type="text", text=text)],
        structuredContent=payload,
    )


def tool_error(
    *,
    code: ErrorCode,
    message: str,
    structured: dict[str, Any] | None = None,
) -> CallToolResult:
    payload: dict[str, Any] = {"error": {"code": str(code), "message": message}}
    if structured:
        payload.update(structured)
    return CallToolResult(
        content=[TextContent(type="text", text=message)],
        structuredContent=payload,
        isError=True,
    )

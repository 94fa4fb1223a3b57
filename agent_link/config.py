from __future__ import annotations

import os
from dataclasses import dataclass

from agent_link.backoff import (
    DEFAULT_BASE_BACKOFF_SECONDS,
    DEFAULT_JITTER,
    DEFAULT_MAX_BACKOFF_SECONDS,
)
from agent_link.common import env_float, env_int, env_str, is_topic_id
from agent_link.negotiator import DEFAULT_CONFIRM_MAX_ATTEMPTS, DEFAULT_CONFIRM_POLL_SECONDS
from agent_link.orchestrator import DEFAULT_POLL_INTERVAL_SECONDS

DEFAULT_MAX_INLINE_BYTES = 1024


class ConfigError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class EngineConfig:
    account_id: str
    inbound_topic_id: str
    outbound_topic_id: str | None = None
    db_path: str | None = None
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    backoff_base: float = DEFAULT_BASE_BACKOFF_SECONDS
    backoff_max: float = DEFAULT_MAX_BACKOFF_SECONDS
    backoff_jitter: float = DEFAULT_JITTER
    confirm_max_attempts: int = DEFAULT_CONFIRM_MAX_ATTEMPTS
    confirm_poll_seconds: float = DEFAULT_CONFIRM_POLL_SECONDS
    max_inline_bytes: int = DEFAULT_MAX_INLINE_BYTES
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.account_id or not self.account_id.strip():
            raise ConfigError("account_id is required")
        if not is_topic_id(self.inbound_topic_id):
            raise ConfigError(f"inbound_topic_id is not a valid topic id: {self.inbound_topic_id!r}")
        if self.outbound_topic_id is not None and not is_topic_id(self.outbound_topic_id):
            raise ConfigError(
                f"outbound_topic_id is not a valid topic id: {self.outbound_topic_id!r}"
            )
        if self.poll_interval <= 0:
            raise ConfigError("poll_interval must be > 0")
        if self.backoff_base <= 0:
            raise ConfigError("backoff_base must be > 0")
        if self.backoff_max < self.backoff_base:
            raise ConfigError("backoff_max must be >= backoff_base")
        if not 0 <= self.backoff_jitter < 1:
            raise ConfigError("backoff_jitter must be in [0, 1)")
        if self.confirm_max_attempts < 1:
            raise ConfigError("confirm_max_attempts must be >= 1")
        if self.confirm_poll_seconds < 0:
            raise ConfigError("confirm_poll_seconds must be >= 0")
        if self.max_inline_bytes < 1:
            raise ConfigError("max_inline_bytes must be >= 1")

    @classmethod
    def from_env(cls, **overrides: object) -> EngineConfig:
        """Build a config from AGENT_LINK_* variables; keyword overrides win when not None."""
        try:
            values: dict[str, object] = {
                "account_id": env_str("AGENT_LINK_ACCOUNT_ID", default=""),
                "inbound_topic_id": env_str("AGENT_LINK_INBOUND_TOPIC_ID", default=""),
                "outbound_topic_id": os.environ.get("AGENT_LINK_OUTBOUND_TOPIC_ID") or None,
                "db_path": os.environ.get("AGENT_LINK_DB") or None,
                "poll_interval": env_float(
                    "AGENT_LINK_POLL_INTERVAL_SECONDS",
                    default=DEFAULT_POLL_INTERVAL_SECONDS,
                    min_value=0.01,
                ),
                "backoff_base": env_float(
                    "AGENT_LINK_BACKOFF_BASE_SECONDS",
                    default=DEFAULT_BASE_BACKOFF_SECONDS,
                    min_value=0.01,
                ),
                "backoff_max": env_float(
                    "AGENT_LINK_BACKOFF_MAX_SECONDS",
                    default=DEFAULT_MAX_BACKOFF_SECONDS,
                    min_value=0.01,
                ),
                "backoff_jitter": env_float(
                    "AGENT_LINK_BACKOFF_JITTER", default=DEFAULT_JITTER, min_value=0.0
                ),
                "confirm_max_attempts": env_int(
                    "AGENT_LINK_CONFIRM_MAX_ATTEMPTS",
                    default=DEFAULT_CONFIRM_MAX_ATTEMPTS,
                    min_value=1,
                ),
                "confirm_poll_seconds": env_float(
                    "AGENT_LINK_CONFIRM_POLL_SECONDS",
                    default=DEFAULT_CONFIRM_POLL_SECONDS,
                    min_value=0.0,
                ),
                "max_inline_bytes": env_int(
                    "AGENT_LINK_MAX_INLINE_BYTES", default=DEFAULT_MAX_INLINE_BYTES, min_value=1
                ),
                "log_level": env_str("AGENT_LINK_LOG_LEVEL", default="INFO"),
            }
        except ValueError as e:
            raise ConfigError(str(e)) from e

        for key, value in overrides.items():
            if key not in values:
                raise TypeError(f"unknown config field: {key}")
            if value is not None:
                values[key] = value

        if not values["account_id"]:
            raise ConfigError("AGENT_LINK_ACCOUNT_ID is required")
        if not values["inbound_topic_id"]:
            raise ConfigError("AGENT_LINK_INBOUND_TOPIC_ID is required")
        return cls(**values)  # type: ignore[arg-type]

from __future__ import annotations

import pytest

from agent_link.config import ConfigError, EngineConfig

ENV_VARS = [
    "AGENT_LINK_ACCOUNT_ID",
    "AGENT_LINK_INBOUND_TOPIC_ID",
    "AGENT_LINK_OUTBOUND_TOPIC_ID",
    "AGENT_LINK_DB",
    "AGENT_LINK_POLL_INTERVAL_SECONDS",
    "AGENT_LINK_BACKOFF_BASE_SECONDS",
    "AGENT_LINK_BACKOFF_MAX_SECONDS",
    "AGENT_LINK_BACKOFF_JITTER",
    "AGENT_LINK_CONFIRM_MAX_ATTEMPTS",
    "AGENT_LINK_CONFIRM_POLL_SECONDS",
    "AGENT_LINK_MAX_INLINE_BYTES",
    "AGENT_LINK_LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_from_env_reads_variables(monkeypatch):
    monkeypatch.setenv("AGENT_LINK_ACCOUNT_ID", "0.0.222")
    monkeypatch.setenv("AGENT_LINK_INBOUND_TOPIC_ID", "0.0.100")
    monkeypatch.setenv("AGENT_LINK_POLL_INTERVAL_SECONDS", "2.5")
    monkeypatch.setenv("AGENT_LINK_CONFIRM_MAX_ATTEMPTS", "4")

    config = EngineConfig.from_env()

    assert config.account_id == "0.0.222"
    assert config.inbound_topic_id == "0.0.100"
    assert config.poll_interval == 2.5
    assert config.confirm_max_attempts == 4
    assert config.backoff_base == 60.0
    assert config.backoff_max == 300.0
    assert config.backoff_jitter == 0.3
    assert config.max_inline_bytes == 1024


def test_overrides_win_over_env(monkeypatch):
    monkeypatch.setenv("AGENT_LINK_ACCOUNT_ID", "0.0.222")
    monkeypatch.setenv("AGENT_LINK_INBOUND_TOPIC_ID", "0.0.100")

    config = EngineConfig.from_env(inbound_topic_id="0.0.101", poll_interval=None)

    assert config.inbound_topic_id == "0.0.101"
    assert config.poll_interval == 10.0


def test_missing_identifiers_raise():
    with pytest.raises(ConfigError, match="AGENT_LINK_ACCOUNT_ID"):
        EngineConfig.from_env()
    with pytest.raises(ConfigError, match="AGENT_LINK_INBOUND_TOPIC_ID"):
        EngineConfig.from_env(account_id="0.0.222")


def test_invalid_values_raise(monkeypatch):
    monkeypatch.setenv("AGENT_LINK_POLL_INTERVAL_SECONDS", "soon")
    with pytest.raises(ConfigError):
        EngineConfig.from_env(account_id="0.0.222", inbound_topic_id="0.0.100")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"inbound_topic_id": "topic-1"},
        {"outbound_topic_id": "0.0"},
        {"poll_interval": 0},
        {"backoff_base": 100.0, "backoff_max": 50.0},
        {"backoff_jitter": 1.5},
        {"backoff_jitter": -0.1},
        {"confirm_max_attempts": 0},
        {"confirm_poll_seconds": -1.0},
        {"max_inline_bytes": 0},
    ],
)
def test_post_init_validation(kwargs):
    values = {"account_id": "0.0.222", "inbound_topic_id": "0.0.100", **kwargs}
    with pytest.raises(ConfigError):
        EngineConfig(**values)


def test_jitter_out_of_range_from_env_is_a_config_error(monkeypatch):
    monkeypatch.setenv("AGENT_LINK_BACKOFF_JITTER", "1.5")

    with pytest.raises(ConfigError, match="backoff_jitter"):
        EngineConfig.from_env(account_id="0.0.222", inbound_topic_id="0.0.100")


def test_unknown_override_rejected():
    with pytest.raises(TypeError):
        EngineConfig.from_env(account_id="0.0.222", inbound_topic_id="0.0.100", colour="blue")

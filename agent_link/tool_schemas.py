from __future__ import annotations

from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, model_validator

ConnectionStatus = Literal["proposed", "confirmed", "established", "failed"]
TopicKindName = Literal["inbound", "connection"]
DirectionName = Literal["inbound", "outbound"]


class ToolErrorInfo(BaseModel):
    code: str
    message: str


class ToolWarningInfo(BaseModel):
    code: str
    message: str | None = None
    context: dict[str, Any] | None = None


class ToolOutputBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    error: ToolErrorInfo | None = None
    warnings: list[ToolWarningInfo] | None = None

    required_on_success: ClassVar[tuple[str, ...]] = ()

    @model_validator(mode="after")
    def _validate_required_on_success(self) -> ToolOutputBase:
        if self.error is not None:
            return self
        for field in self.required_on_success:
            if getattr(self, field) is None:
                raise ValueError(f"Missing required field: {field}")
        return self


class ConnectionInfo(BaseModel):
    target_account_id: str
    target_agent_name: str | None
    target_inbound_topic_id: str | None
    connection_topic_id: str | None
    status: ConnectionStatus
    direction: DirectionName
    request_seq: int | None
    local_topic_id: str
    created_at: float
    error_code: str | None = None


class InboxMessageInfo(BaseModel):
    topic_id: str
    seq: int
    sender: str
    created_at: float
    content: str


class PingOutput(ToolOutputBase):
    required_on_success = ("ok", "account_id", "inbound_topic_id")

    ok: bool | None = None
    account_id: str | None = None
    inbound_topic_id: str | None = None


class MonitorOutput(ToolOutputBase):
    required_on_success = ("topic_id", "kind", "monitoring")

    topic_id: str | None = None
    kind: TopicKindName | None = None
    monitoring: bool | None = None


class StopMonitoringOutput(ToolOutputBase):
    required_on_success = ("topic_id", "stopped")

    topic_id: str | None = None
    stopped: bool | None = None


class InitiateConnectionOutput(ToolOutputBase):
    required_on_success = ("connection",)

    connection: ConnectionInfo | None = None


class ConnectionListOutput(ToolOutputBase):
    required_on_success = ("connections", "monitored_topics")

    connections: list[ConnectionInfo] | None = None
    monitored_topics: list[str] | None = None


class SendMessageOutput(ToolOutputBase):
    required_on_success = ("connection_topic_id", "seq")

    connection_topic_id: str | None = None
    seq: int | None = None


class CheckMessagesOutput(ToolOutputBase):
    required_on_success = ("connection_topic_id", "messages", "count")

    connection_topic_id: str | None = None
    messages: list[InboxMessageInfo] | None = None
    count: int | None = None

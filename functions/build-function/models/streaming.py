"""Read-only projections of build Jobs for log viewers."""

from typing import Literal

from pydantic import BaseModel, Field

LOG_STREAM_ENDPOINT = "/api/logs/stream"


class ContainerInfo(BaseModel):
    name: str
    state: str


class StreamParameters(BaseModel):
    pod_name: str = Field(serialization_alias="podName")
    namespace: str
    follow: bool = True
    tail_lines: int = Field(default=200, serialization_alias="tailLines")
    timestamps: bool = True
    container: str | None = None


class WebsocketInfo(BaseModel):
    endpoint: str = LOG_STREAM_ENDPOINT
    parameters: StreamParameters


class StreamingInfo(BaseModel):
    """Descriptor handed to a client that should stream live pod logs."""

    status: Literal["Running", "Pending"]
    streaming_required: bool = Field(default=True, serialization_alias="streamingRequired")
    pod_name: str = Field(serialization_alias="podName")
    websocket: WebsocketInfo
    containers: list[ContainerInfo] = Field(default_factory=list)


class LogSourceStatus(BaseModel):
    """Why logs cannot be streamed right now."""

    status: Literal["Unavailable", "NotFound", "Completed", "Failed", "Unknown"]
    streaming_required: bool = Field(default=False, serialization_alias="streamingRequired")
    pod_name: str | None = Field(default=None, serialization_alias="podName")
    containers: list[ContainerInfo] | None = None
    message: str | None = None


class EventSource(BaseModel):
    component: str | None = None
    host: str | None = None


class JobEvent(BaseModel):
    """A cluster event concerning a Job or one of its pods."""

    name: str
    namespace: str
    reason: str
    message: str
    type: str
    count: int
    first_timestamp: str | None = Field(default=None, serialization_alias="firstTimestamp")
    last_timestamp: str | None = Field(default=None, serialization_alias="lastTimestamp")
    event_time: str | None = Field(default=None, serialization_alias="eventTime")
    source: EventSource | None = None

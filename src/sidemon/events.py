"""Flow events carried by the events websocket, decoded into typed records."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Union

from sidemon.models import SUBFLOW_ID_PREFIX, SUBFLOW_STATUS_FAILED

log = logging.getLogger(__name__)

EVENT_STATUS_CHANGE = "status_change"
EVENT_DEV_RUN_STARTED = "dev_run_started"
EVENT_DEV_RUN_ENDED = "dev_run_ended"
EVENT_DEV_RUN_OUTPUT = "dev_run_output"
EVENT_END_STREAM = "end_stream"


class EventDecodeError(ValueError):
    """A push-stream message that is not a well-formed flow event."""


@dataclass(frozen=True)
class StatusChangeEvent:
    parent_id: str
    target_id: str
    status: str

    @property
    def is_failed_subflow(self) -> bool:
        return self.target_id.startswith(SUBFLOW_ID_PREFIX) and self.status == SUBFLOW_STATUS_FAILED


@dataclass(frozen=True)
class DevRunStartedEvent:
    parent_id: str
    dev_run_id: str
    command_id: str = ""


@dataclass(frozen=True)
class DevRunEndedEvent:
    parent_id: str
    dev_run_id: str
    command_id: str = ""


@dataclass(frozen=True)
class DevRunOutputEvent:
    parent_id: str
    dev_run_id: str
    stream: str
    chunk: str
    sequence: int = 0


@dataclass(frozen=True)
class EndStreamEvent:
    parent_id: str


FlowEvent = Union[
    StatusChangeEvent,
    DevRunStartedEvent,
    DevRunEndedEvent,
    DevRunOutputEvent,
    EndStreamEvent,
]


def _field(data: dict[str, Any], key: str) -> str:
    value = data.get(key, "")
    if not isinstance(value, str):
        raise EventDecodeError(f"field {key!r} must be a string")
    return value


def decode_flow_event(raw: str | bytes) -> FlowEvent | None:
    """Decode one stream message.

    Returns None for event types this client does not act on. Raises
    :class:`EventDecodeError` when the message is not a JSON object or a known
    event type has malformed fields.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise EventDecodeError(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise EventDecodeError("flow event must be a JSON object")

    event_type = data.get("eventType")
    parent_id = _field(data, "parentId")
    if event_type == EVENT_STATUS_CHANGE:
        return StatusChangeEvent(
            parent_id=parent_id,
            target_id=_field(data, "targetId"),
            status=_field(data, "status"),
        )
    if event_type == EVENT_DEV_RUN_STARTED:
        return DevRunStartedEvent(
            parent_id=parent_id,
            dev_run_id=_field(data, "devRunId"),
            command_id=_field(data, "commandId"),
        )
    if event_type == EVENT_DEV_RUN_ENDED:
        return DevRunEndedEvent(
            parent_id=parent_id,
            dev_run_id=_field(data, "devRunId"),
            command_id=_field(data, "commandId"),
        )
    if event_type == EVENT_DEV_RUN_OUTPUT:
        sequence = data.get("sequence", 0)
        return DevRunOutputEvent(
            parent_id=parent_id,
            dev_run_id=_field(data, "devRunId"),
            stream=_field(data, "stream"),
            chunk=_field(data, "chunk"),
            sequence=sequence if isinstance(sequence, int) else 0,
        )
    if event_type == EVENT_END_STREAM:
        return EndStreamEvent(parent_id=parent_id)
    log.debug("Ignoring flow event of type %r", event_type)
    return None

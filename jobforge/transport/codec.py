"""
Conversion between transport events and flat broker records.

Stream entries and status hashes hold string fields only. Structured values
(``args``, ``options``, ``queues``) are JSON-encoded; field names are
camelCase on the wire.
"""

import json
import time
from typing import Any

from jobforge.types.events import TransportEvent, transport_event_adapter
from jobforge.types.job import JobStatusInfo

# Fields whose values are JSON documents inside a flat record
_JSON_FIELDS = ("args", "options", "queues", "updates")


def encode_event(event: TransportEvent) -> dict[str, str]:
    """
    Flatten an event into a stream record.

    Args:
        event: The event to encode.

    Returns:
        dict[str, str]: Field/value pairs, including a millisecond ``timestamp``.
    """
    data = event.model_dump(mode="json", by_alias=True, exclude_none=True)
    record: dict[str, str] = {"timestamp": str(int(time.time() * 1000))}
    for key, value in data.items():
        if key in _JSON_FIELDS:
            record[key] = json.dumps(value)
        else:
            record[key] = str(value)
    return record


def decode_event(record: dict[str, str], queue: str | None = None) -> TransportEvent:
    """
    Rebuild an event from a stream record.

    Args:
        record: Field/value pairs read from the broker.
        queue: Queue name used when the record carries none.

    Returns:
        TransportEvent: The validated event.

    Raises:
        ValueError: If the record is malformed or misses required fields.
    """
    data: dict[str, Any] = {k: v for k, v in record.items() if k != "timestamp"}
    for key in _JSON_FIELDS:
        if key in data:
            data[key] = json.loads(data[key])
    if queue is not None and not data.get("queue"):
        data["queue"] = queue
    return transport_event_adapter.validate_python(data)


def encode_control(event: TransportEvent) -> str:
    """Serialize a control event (cancel, cancelAll, worker events) for pub/sub."""
    return event.model_dump_json(by_alias=True, exclude_none=True)


def decode_control(message: str) -> TransportEvent:
    """
    Parse a control message published on a channel.

    Raises:
        ValueError: If the message is not a valid event.
    """
    return transport_event_adapter.validate_json(message)


def encode_status(info: JobStatusInfo) -> dict[str, str]:
    """Flatten a status record into hash fields."""
    data = info.model_dump(mode="json", by_alias=True, exclude_none=True)
    return {key: str(value) for key, value in data.items()}


def decode_status(fields: dict[str, str]) -> JobStatusInfo:
    """
    Rebuild a status record from hash fields.

    Empty strings (e.g. a cleared error) are read as missing values.
    """
    data = {key: value for key, value in fields.items() if value != ""}
    return JobStatusInfo.model_validate(data)

"""
Browser activity events and their wire format.

Wire field names differ from the attribute names and are part of the
external contract:

    ts_utc -> timestamp_epoch_ms
    ts_iso -> timestamp_iso
    url    -> url
    title  -> title
    type   -> event_type
    data   -> data
"""
from enum import Enum
from typing import Any

import orjson
import pydantic
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, field_validator

from .errors import DecodeError


class EventType(str, Enum):
    """Closed set of recorded browser actions."""
    NAVIGATE = "navigate"
    VISIBLE_TEXT = "visible_text"
    CLICK = "click"
    INPUT = "input"
    SCROLL = "scroll"
    FOCUS = "focus"


ALLOWED_EVENT_TYPES: frozenset[str] = frozenset(t.value for t in EventType)

# Timestamps are stored in a signed 64-bit INTEGER column
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


class Event(BaseModel):
    """
    One recorded browser action.

    Absent fields decode to zero values so that the validator, not the
    decoder, rejects them. Wrong JSON types are decode errors.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    timestamp_epoch_ms: StrictInt = Field(default=0, alias="ts_utc", ge=INT64_MIN, le=INT64_MAX)
    timestamp_iso: StrictStr = Field(default="", alias="ts_iso")
    url: StrictStr = ""
    title: StrictStr | None = None
    event_type: StrictStr = Field(default="", alias="type")
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("data", mode="before")
    @classmethod
    def null_data_is_empty(cls, v: Any) -> Any:
        return {} if v is None else v


class Batch(BaseModel):
    """Ordered, possibly empty group of events submitted together."""
    model_config = ConfigDict(extra="ignore")

    events: list[Event] = Field(default_factory=list)

    @field_validator("events", mode="before")
    @classmethod
    def null_events_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    def __len__(self) -> int:
        return len(self.events)


def decode_batch(raw: bytes | str) -> Batch:
    """
    Parse a submission body into a Batch.

    Raises:
        DecodeError: body is not valid JSON, is not an object, or has a
            field of the wrong type. Semantic checks are left to the store.
    """
    try:
        doc = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise DecodeError(f"invalid JSON: {exc}") from exc

    if doc is None:
        return Batch()
    if not isinstance(doc, dict):
        raise DecodeError(f"expected a JSON object, got {type(doc).__name__}")

    try:
        return Batch.model_validate(doc)
    except pydantic.ValidationError as exc:
        raise DecodeError(f"malformed batch: {exc.error_count()} error(s)") from exc


def event_to_wire(event: Event) -> dict[str, Any]:
    return event.model_dump(by_alias=True)


def encode(event: Event) -> bytes:
    """Serialize one event to wire JSON; a missing title becomes null."""
    return orjson.dumps(event_to_wire(event))


def encode_batch(batch: Batch) -> bytes:
    return orjson.dumps({"events": [event_to_wire(e) for e in batch.events]})

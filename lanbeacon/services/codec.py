"""
Wire format for discovery traffic.

Every datagram is a UTF-8 JSON object. Announcements carry ``"type": "announce"``
and requests carry ``"type": "discover"``. Peers running the older protocol send
announcements without a ``type`` field and requests as the bare text
``DISCOVER``; both are still understood.

All inbound payloads are untrusted. Decoding either returns a message or raises
a ``DecodeError`` subclass, whatever the input.
"""
import ipaddress
import json
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from lanbeacon.errors import MalformedMessageError, MissingFieldError

ANNOUNCE_TYPE = "announce"
DISCOVER_TYPE = "discover"
LEGACY_DISCOVER = "DISCOVER"

# Anything bigger is not one of ours; refuse before parsing.
MAX_MESSAGE_SIZE = 8192
RECV_BUFFER_SIZE = MAX_MESSAGE_SIZE + 1

REQUIRED_FIELDS = ("service", "ip", "port", "key")
# Declared optional fields left out of the payload when unset
OPTIONAL_FIELDS = ("version", "capabilities")

# Deepest container nesting accepted in a payload
MAX_NESTING = 32


class Announcement(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    type: Literal["announce"] = ANNOUNCE_TYPE
    service: str = Field(strict=True)
    ip: str = Field(strict=True)
    port: int = Field(strict=True, ge=1, le=65535)
    key: str = Field(strict=True)
    version: Optional[str] = None
    capabilities: Optional[List[str]] = None

    @field_validator("ip")
    @classmethod
    def _dotted_quad(cls, value: str) -> str:
        try:
            ipaddress.IPv4Address(value)
        except ValueError:
            raise ValueError(f"not a dotted-quad IPv4 address: {value!r}")
        return value

    @property
    def address(self):
        return (self.ip, self.port)


class DiscoveryRequest(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    type: Literal["discover"] = DISCOVER_TYPE


Message = Union[Announcement, DiscoveryRequest]


def encode(message: Message) -> bytes:
    payload = message.model_dump(mode="json")
    for name in OPTIONAL_FIELDS:
        if name in payload and payload[name] is None:
            del payload[name]
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def encode_announcement(announcement: Announcement) -> bytes:
    return encode(announcement)


def encode_request(request: Optional[DiscoveryRequest] = None) -> bytes:
    return encode(request or DiscoveryRequest())


def _load_payload(data: bytes):
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise MalformedMessageError(f"expected bytes, got {type(data).__name__}")
    if len(data) == 0:
        raise MalformedMessageError("empty datagram")
    if len(data) > MAX_MESSAGE_SIZE:
        raise MalformedMessageError(f"datagram of {len(data)} bytes exceeds {MAX_MESSAGE_SIZE}")

    try:
        text = bytes(data).decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedMessageError(f"not UTF-8: {e}")

    if text.strip().upper() == LEGACY_DISCOVER:
        return {"type": DISCOVER_TYPE}

    try:
        payload = json.loads(text)
    except (ValueError, RecursionError) as e:
        raise MalformedMessageError(f"not JSON: {e}")

    if not isinstance(payload, dict):
        raise MalformedMessageError(f"expected a JSON object, got {type(payload).__name__}")
    if _nesting(payload) > MAX_NESTING:
        raise MalformedMessageError(f"payload nested deeper than {MAX_NESTING} levels")
    return payload


def _nesting(value) -> int:
    deepest = 0
    stack = [(value, 1)]
    while stack:
        item, depth = stack.pop()
        if isinstance(item, dict):
            children = item.values()
        elif isinstance(item, list):
            children = item
        else:
            continue
        deepest = max(deepest, depth)
        if deepest > MAX_NESTING:
            return deepest
        stack.extend((child, depth + 1) for child in children)
    return deepest


def _build(model, payload: dict):
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        errors = e.errors()
        detail = errors[0]["msg"] if errors else str(e)
        raise MalformedMessageError(f"invalid {model.__name__}: {detail}")


def decode_message(data: bytes) -> Message:
    """Decode either message kind, dispatching on the ``type`` field."""
    payload = _load_payload(data)
    kind = payload.get("type", ANNOUNCE_TYPE)

    if kind == DISCOVER_TYPE:
        return _build(DiscoveryRequest, payload)

    if kind != ANNOUNCE_TYPE:
        raise MalformedMessageError(f"unknown message type: {kind!r}")

    for field in REQUIRED_FIELDS:
        if field not in payload:
            raise MissingFieldError(field)
    return _build(Announcement, payload)


def decode_announcement(data: bytes) -> Announcement:
    message = decode_message(data)
    if not isinstance(message, Announcement):
        raise MalformedMessageError("expected an announcement, got a discovery request")
    return message


def decode_request(data: bytes) -> DiscoveryRequest:
    message = decode_message(data)
    if not isinstance(message, DiscoveryRequest):
        raise MalformedMessageError("expected a discovery request, got an announcement")
    return message


decode = decode_announcement

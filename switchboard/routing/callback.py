"""Compact inline-button callback data: ``svc:<short-id>|k1:v1;k2:v2``.

Platforms cap callback data at 64 bytes, so services are addressed by a short
id derived from their full id and resolved back through the chat's snapshot.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field

MAX_CALLBACK_BYTES = 64
PREFIX = "svc:"
KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")
VALUE_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]*$")


class CallbackFormatError(ValueError):
    pass


@dataclass(frozen=True)
class CallbackData:
    short_id: str
    params: dict[str, str] = field(default_factory=dict)


def short_id_for(service_id: str, length: int = 6) -> str:
    return hashlib.sha256(service_id.encode("utf-8")).hexdigest()[:length]


def encode_callback(short_id: str, params: dict[str, str] | None = None) -> str:
    if not KEY_PATTERN.match(short_id):
        raise CallbackFormatError(f"invalid short id: {short_id!r}")
    parts: list[str] = []
    for key, value in (params or {}).items():
        text = str(value)
        if not KEY_PATTERN.match(str(key)) or not VALUE_PATTERN.match(text):
            raise CallbackFormatError(f"invalid callback parameter {key!r}={value!r}")
        parts.append(f"{key}:{text}")
    encoded = PREFIX + short_id
    if parts:
        encoded += "|" + ";".join(parts)
    if len(encoded.encode("ascii")) > MAX_CALLBACK_BYTES:
        raise CallbackFormatError(f"callback data exceeds {MAX_CALLBACK_BYTES} bytes")
    return encoded


def parse_callback(data: str) -> CallbackData:
    try:
        raw = data.encode("ascii")
    except UnicodeEncodeError as exc:
        raise CallbackFormatError("callback data must be ASCII") from exc
    if len(raw) > MAX_CALLBACK_BYTES:
        raise CallbackFormatError(f"callback data exceeds {MAX_CALLBACK_BYTES} bytes")
    if not data.startswith(PREFIX):
        raise CallbackFormatError("callback data missing service prefix")

    head, sep, tail = data[len(PREFIX):].partition("|")
    if not KEY_PATTERN.match(head):
        raise CallbackFormatError(f"invalid short id: {head!r}")
    params: dict[str, str] = {}
    if sep and tail:
        for item in tail.split(";"):
            key, colon, value = item.partition(":")
            if not colon or not KEY_PATTERN.match(key) or not VALUE_PATTERN.match(value):
                raise CallbackFormatError(f"invalid callback parameter: {item!r}")
            if key in params:
                raise CallbackFormatError(f"duplicate callback parameter: {key!r}")
            params[key] = value
    return CallbackData(short_id=head, params=params)

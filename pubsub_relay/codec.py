"""
Pub/Sub body codec.

Two stages:
- decode_body: base64 text -> UTF-8 text, reported as a result value
  (DecodedText | DecodeFailure); never raises.
- classify_payload: JSON parse with a raw-text fallback.
"""

from __future__ import annotations

import base64
import json
import re
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union


_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")


class DecodeFailureKind(str, Enum):
    INVALID_ENCODING = "invalid_encoding"
    EMPTY_AFTER_DECODE = "empty_after_decode"
    DECODE_ERROR = "decode_error"


@dataclass(frozen=True, slots=True)
class DecodeFailure:
    kind: DecodeFailureKind
    detail: str = ""
    stack: Optional[str] = None


@dataclass(frozen=True, slots=True)
class DecodedText:
    text: str


DecodeResult = Union[DecodedText, DecodeFailure]


@dataclass(frozen=True, slots=True)
class StructuredPayload:
    value: Any

    @property
    def is_object(self) -> bool:
        return isinstance(self.value, dict)


@dataclass(frozen=True, slots=True)
class TextPayload:
    text: str

    @property
    def is_object(self) -> bool:
        return False


Payload = Union[StructuredPayload, TextPayload]


def is_valid_base64(body: Optional[str]) -> bool:
    # Syntactic only: "abc" matches but still fails to decode (bad padding).
    if body is None:
        return False
    return _BASE64_RE.fullmatch(body) is not None


def decode_body(body: Optional[str]) -> DecodeResult:
    if body is None or not _BASE64_RE.fullmatch(body):
        return DecodeFailure(DecodeFailureKind.INVALID_ENCODING, detail="invalid base64 string format")

    try:
        raw = base64.b64decode(body, validate=True)
        if not raw:
            return DecodeFailure(DecodeFailureKind.EMPTY_AFTER_DECODE, detail="decoded buffer is empty")
        # Stray non-UTF-8 bytes become U+FFFD rather than dropping the message.
        return DecodedText(raw.decode("utf-8", errors="replace"))
    except Exception as e:
        return DecodeFailure(
            DecodeFailureKind.DECODE_ERROR,
            detail=str(e) or e.__class__.__name__,
            stack=traceback.format_exc()[-8000:],
        )


def classify_payload(text: str) -> Payload:
    try:
        return StructuredPayload(json.loads(text))
    except (ValueError, RecursionError):
        return TextPayload(text)


def is_empty_payload(payload: Payload) -> bool:
    if isinstance(payload, TextPayload):
        return payload.text == ""
    value = payload.value
    return value is None or (isinstance(value, dict) and not value)


def payload_log_value(payload: Payload) -> Any:
    if isinstance(payload, TextPayload):
        return payload.text
    return payload.value

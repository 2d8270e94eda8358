from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence


UNKNOWN = "<unknown>"


def _first_present(data: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for k in keys:
        if k in data:
            return data.get(k)
    return None


def _str_or_unknown(v: Any) -> str:
    s = str(v).strip() if v is not None else ""
    return s or UNKNOWN


def _normalize_attributes(raw: Any) -> Dict[str, str]:
    attributes: Dict[str, str] = {}
    if isinstance(raw, Mapping):
        for k, v in raw.items():
            if k is None:
                continue
            attributes[str(k)] = "" if v is None else str(v)
    return attributes


@dataclass(frozen=True, slots=True)
class InboundEnvelope:
    """
    One Pub/Sub message as delivered by the transport.

    Missing delivery metadata is replaced by the "<unknown>" sentinel here so
    downstream code never has to deal with absent ids/timestamps. `data` keeps
    its absence: an absent body is a decode failure, not an empty string.
    """

    message_id: str = UNKNOWN
    publish_time: str = UNKNOWN
    data: Optional[str] = None
    attributes: Dict[str, str] = field(default_factory=dict)

    @staticmethod
    def from_message(message: Any) -> "InboundEnvelope":
        if not isinstance(message, Mapping):
            return InboundEnvelope()

        data = message.get("data")
        return InboundEnvelope(
            # Aliases (do not remove): message_id/publish_time are the python client spellings.
            message_id=_str_or_unknown(_first_present(message, ("messageId", "message_id"))),
            publish_time=_str_or_unknown(_first_present(message, ("publishTime", "publish_time"))),
            data=data if isinstance(data, str) else None,
            attributes=_normalize_attributes(message.get("attributes")),
        )

    @staticmethod
    def from_push(body: Mapping[str, Any]) -> "InboundEnvelope":
        """
        Unwrap a push request body / CloudEvent data:
        {"message": {...}, "subscription": "projects/.../subscriptions/..."}
        """
        return InboundEnvelope.from_message(body.get("message"))

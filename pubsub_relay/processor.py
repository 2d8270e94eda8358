"""
Message processor: decode -> classify/log -> persist -> relay.

Failure policy:
- decode failures and non-object payloads are logged and absorbed
- the store write result is observed but never gates the publish
- publish failures propagate so the transport can redeliver the message
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from pubsub_relay.codec import (
    DecodeFailure,
    DecodeFailureKind,
    Payload,
    StructuredPayload,
    classify_payload,
    decode_body,
    is_empty_payload,
    payload_log_value,
)
from pubsub_relay.contracts import RelayPublisher, StoreSink
from pubsub_relay.envelope import InboundEnvelope
from pubsub_relay.logging import bind_message_id, log_event
from pubsub_relay.record_formatter import StoredRecord, build_row_key, column_value, to_json


logger = logging.getLogger(__name__)

STATUS_PENDING = "PENDING"
DEFAULT_SOURCE = "pubsub"
DEFAULT_EVENT_TYPE = "UNKNOWN"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_event_id() -> str:
    return str(uuid.uuid4())


def iso_millis(dt: datetime) -> str:
    """`2025-05-15T05:13:48.218Z` (same shape as JS Date.toISOString)."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def epoch_millis(dt: datetime) -> int:
    # Integer arithmetic: float timestamps can round .218 down to .217.
    return (dt.astimezone(timezone.utc) - _EPOCH) // timedelta(milliseconds=1)


@dataclass(frozen=True, slots=True)
class RelayOutcome:
    event_id: str
    row_key: str
    stored: bool
    delivery_id: str


class MessageProcessor:
    def __init__(
        self,
        *,
        store: StoreSink,
        publisher: RelayPublisher,
        topic_name: str,
        clock: Callable[[], datetime] = _utc_now,
        id_factory: Callable[[], str] = _new_event_id,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._topic_name = str(topic_name)
        self._clock = clock
        self._id_factory = id_factory

    async def handle(self, envelope: InboundEnvelope) -> Optional[RelayOutcome]:
        with bind_message_id(envelope.message_id):
            return await self._handle(envelope)

    async def _handle(self, envelope: InboundEnvelope) -> Optional[RelayOutcome]:
        decoded = decode_body(envelope.data)
        if isinstance(decoded, DecodeFailure):
            self._log_decode_failure(envelope, decoded)
            return None

        payload = classify_payload(decoded.text)

        log_event(
            logger,
            "pubsub.received",
            message=f"Received Pub/Sub message: ID={envelope.message_id}, published at {envelope.publish_time}",
            messageId=envelope.message_id,
            publishTime=envelope.publish_time,
        )
        self._log_message_details(payload, envelope.attributes)

        return await self._persist_and_relay(envelope, payload)

    def _log_decode_failure(self, envelope: InboundEnvelope, failure: DecodeFailure) -> None:
        if failure.kind is DecodeFailureKind.EMPTY_AFTER_DECODE:
            log_event(
                logger,
                "pubsub.decode_empty",
                severity="WARNING",
                message="Decoded buffer is empty",
                messageId=envelope.message_id,
            )
        elif failure.kind is DecodeFailureKind.INVALID_ENCODING:
            log_event(
                logger,
                "pubsub.invalid_base64",
                severity="ERROR",
                message="Invalid base64 string format detected",
                messageId=envelope.message_id,
            )
        else:
            log_event(
                logger,
                "pubsub.decode_error",
                severity="ERROR",
                message="Error decoding base64 data",
                messageId=envelope.message_id,
                error=failure.detail,
                stack=failure.stack,
            )

    def _log_message_details(self, payload: Payload, attributes: Mapping[str, str]) -> None:
        if is_empty_payload(payload):
            log_event(logger, "pubsub.payload_empty", message="Message payload is empty")
        else:
            log_event(logger, "pubsub.payload", message="Message payload", payload=payload_log_value(payload))

        if attributes:
            log_event(logger, "pubsub.attributes", message="Message attributes", attributes=dict(attributes))
        else:
            log_event(logger, "pubsub.attributes_empty", message="Message has no attributes")

    def _derive_event_id(self, payload: Dict[str, Any]) -> str:
        raw = payload.get("eventId")
        if not raw:
            return self._id_factory()
        return raw if isinstance(raw, str) else to_json(raw)

    def build_record(self, payload: Dict[str, Any], attributes: Mapping[str, str], *, event_id: str) -> StoredRecord:
        now = self._clock()
        # createdAt/updatedAt share one instant: rows are written once and never revised.
        ts = iso_millis(now)
        meta = {
            "createdAt": column_value(ts),
            "updatedAt": column_value(ts),
            "status": column_value(STATUS_PENDING),
            "retryCount": column_value("0"),
            "source": column_value(attributes.get("source") or DEFAULT_SOURCE),
        }
        data = {
            "eventBody": column_value(to_json(payload)),
            "eventId": column_value(event_id),
            "eventType": column_value(attributes.get("eventType") or DEFAULT_EVENT_TYPE),
        }
        return StoredRecord(row_key=build_row_key(event_id, epoch_millis(now)), meta=meta, data=data)

    async def _persist_and_relay(self, envelope: InboundEnvelope, payload: Payload) -> Optional[RelayOutcome]:
        if not (isinstance(payload, StructuredPayload) and payload.is_object):
            log_event(
                logger,
                "pubsub.payload_not_object",
                severity="ERROR",
                message="Payload is not a valid JSON object",
                messageId=envelope.message_id,
                payloadType=type(payload_log_value(payload)).__name__,
            )
            return None

        body: Dict[str, Any] = payload.value
        event_id = self._derive_event_id(body)
        record = self.build_record(body, envelope.attributes, event_id=event_id)

        try:
            stored = await self._store.write(record.row_key, record.data, record.meta)
        except Exception as e:
            log_event(
                logger,
                "store.write_failed",
                severity="ERROR",
                message=f"Error saving event to store: {e}",
                exc_info=True,
                rowKey=record.row_key,
                error_type=e.__class__.__name__,
            )
            stored = False

        delivery_id = await self._publisher.publish(
            self._topic_name,
            body,
            {**envelope.attributes, "eventId": event_id},
        )

        log_event(
            logger,
            "relay.ok",
            message="Event relayed",
            messageId=envelope.message_id,
            eventId=event_id,
            rowKey=record.row_key,
            stored=stored,
            deliveryId=delivery_id,
            topic=self._topic_name,
        )
        return RelayOutcome(event_id=event_id, row_key=record.row_key, stored=stored, delivery_id=delivery_id)

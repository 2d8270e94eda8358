"""
Processor behavior per message: decode/classify/log, then store-then-forward.
"""

import asyncio
import base64
import json
import logging

import pytest

from pubsub_relay.bigtable_sink import BigtableStoreSink
from pubsub_relay.envelope import InboundEnvelope
from pubsub_relay.processor import MessageProcessor, epoch_millis, iso_millis
from pubsub_relay.record_formatter import StringValue, format_columns

from tests.fakes import FIXED_NOW, TOPIC, FakePublisher, FakeStore, b64


PROCESSOR_LOGGER = "pubsub_relay.processor"


def _events(caplog) -> list[str]:
    return [r.event_type for r in caplog.records if r.name == PROCESSOR_LOGGER]


def _envelope(data, *, attributes=None) -> InboundEnvelope:
    return InboundEnvelope.from_message(
        {
            "messageId": "14538995975168121",
            "publishTime": "2025-05-15T05:13:49.502Z",
            "data": data,
            "attributes": attributes or {},
        }
    )


@pytest.mark.asyncio
async def test_object_payload_is_stored_then_relayed(processor, store, publisher, caplog) -> None:
    caplog.set_level(logging.DEBUG)

    outcome = await processor.handle(_envelope(b64({"eventId": "E1", "x": 1})))

    assert _events(caplog) == ["pubsub.received", "pubsub.payload", "pubsub.attributes_empty", "relay.ok"]
    received = next(r for r in caplog.records if getattr(r, "event_type", "") == "pubsub.received")
    assert "ID=14538995975168121" in received.getMessage()
    assert "2025-05-15T05:13:49.502Z" in received.getMessage()

    assert len(store.calls) == 1
    call = store.calls[0]
    assert call["row_key"] == f"E1-{epoch_millis(FIXED_NOW)}"
    assert call["data"]["eventId"] == StringValue("E1")

    assert publisher.calls == [{"topic": TOPIC, "payload": {"eventId": "E1", "x": 1}, "attributes": {"eventId": "E1"}}]

    assert outcome is not None
    assert outcome.event_id == "E1"
    assert outcome.stored is True
    assert outcome.delivery_id == "delivery-1"


@pytest.mark.asyncio
async def test_record_columns(processor, store) -> None:
    payload = {"eventId": "E1", "nested": {"a": [1, 2]}}
    await processor.handle(_envelope(b64(payload), attributes={"source": "kafka", "eventType": "HoldDeleted"}))

    call = store.calls[0]
    ts = iso_millis(FIXED_NOW)
    assert ts == "2025-05-15T05:13:48.218Z"
    assert format_columns(call["meta"]) == {
        "createdAt": ts.encode(),
        "updatedAt": ts.encode(),
        "status": b"PENDING",
        "retryCount": b"0",
        "source": b"kafka",
    }
    assert format_columns(call["data"]) == {
        "eventBody": b'{"eventId":"E1","nested":{"a":[1,2]}}',
        "eventId": b"E1",
        "eventType": b"HoldDeleted",
    }


@pytest.mark.asyncio
async def test_defaults_for_source_and_event_type(processor, store) -> None:
    await processor.handle(_envelope(b64({"eventId": "E1"})))
    meta = format_columns(store.calls[0]["meta"])
    data = format_columns(store.calls[0]["data"])
    assert meta["source"] == b"pubsub"
    assert data["eventType"] == b"UNKNOWN"


@pytest.mark.asyncio
async def test_inbound_attributes_are_kept_and_event_id_injected(processor, publisher, caplog) -> None:
    caplog.set_level(logging.INFO)
    attributes = {"messageId": "5697666b", "sourceKafkaTopic": "bast_account_billing_hold_v1"}

    await processor.handle(_envelope(b64({"eventId": "E1"}), attributes=attributes))

    assert publisher.calls[0]["attributes"] == {**attributes, "eventId": "E1"}
    attrs_rec = next(r for r in caplog.records if getattr(r, "event_type", "") == "pubsub.attributes")
    assert attrs_rec.attributes == attributes


@pytest.mark.asyncio
async def test_plain_text_payload_is_not_persisted(processor, store, publisher, caplog) -> None:
    caplog.set_level(logging.INFO)

    outcome = await processor.handle(_envelope(b64("plain text")))

    assert outcome is None
    assert _events(caplog) == ["pubsub.received", "pubsub.payload", "pubsub.attributes_empty", "pubsub.payload_not_object"]
    payload_rec = next(r for r in caplog.records if getattr(r, "event_type", "") == "pubsub.payload")
    assert payload_rec.payload == "plain text"
    not_object = next(r for r in caplog.records if getattr(r, "event_type", "") == "pubsub.payload_not_object")
    assert not_object.levelno == logging.ERROR
    assert store.calls == []
    assert publisher.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("value", [42, "just a string", [1, 2], [{"eventId": "E1"}], True])
async def test_scalar_and_array_json_is_not_persisted(processor, store, publisher, caplog, value) -> None:
    caplog.set_level(logging.INFO)
    assert await processor.handle(_envelope(b64(json.dumps(value)))) is None
    assert "pubsub.payload_not_object" in _events(caplog)
    assert store.calls == []
    assert publisher.calls == []


@pytest.mark.asyncio
async def test_empty_body_is_warning_and_halts(processor, store, publisher, caplog) -> None:
    caplog.set_level(logging.DEBUG)

    assert await processor.handle(_envelope("")) is None

    records = [r for r in caplog.records if r.name == PROCESSOR_LOGGER]
    assert len(records) == 1
    assert records[0].event_type == "pubsub.decode_empty"
    assert records[0].levelno == logging.WARNING
    assert store.calls == []
    assert publisher.calls == []


@pytest.mark.asyncio
async def test_absent_body_is_invalid_encoding(processor, store, publisher, caplog) -> None:
    caplog.set_level(logging.DEBUG)

    assert await processor.handle(InboundEnvelope.from_message({"messageId": "m-1"})) is None

    records = [r for r in caplog.records if r.name == PROCESSOR_LOGGER]
    assert [r.event_type for r in records] == ["pubsub.invalid_base64"]
    assert records[0].levelno == logging.ERROR
    assert store.calls == []
    assert publisher.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("data", ["not base64!", "€€€", "YQ===="])
async def test_malformed_body_never_writes_or_publishes(processor, store, publisher, data) -> None:
    assert await processor.handle(_envelope(data)) is None
    assert store.calls == []
    assert publisher.calls == []


@pytest.mark.asyncio
async def test_decode_error_logs_detail(processor, store, publisher, caplog) -> None:
    caplog.set_level(logging.DEBUG)

    assert await processor.handle(_envelope("abc")) is None

    records = [r for r in caplog.records if r.name == PROCESSOR_LOGGER]
    assert [r.event_type for r in records] == ["pubsub.decode_error"]
    assert records[0].levelno == logging.ERROR
    assert records[0].error
    assert "Traceback" in records[0].stack
    assert store.calls == []
    assert publisher.calls == []


@pytest.mark.asyncio
async def test_empty_object_is_logged_empty_but_still_relayed(processor, store, publisher, caplog) -> None:
    caplog.set_level(logging.INFO)

    outcome = await processor.handle(_envelope(b64({})))

    assert _events(caplog)[:3] == ["pubsub.received", "pubsub.payload_empty", "pubsub.attributes_empty"]
    assert outcome is not None
    assert outcome.event_id == "generated-id"
    assert store.calls[0]["row_key"] == f"generated-id-{epoch_millis(FIXED_NOW)}"
    assert publisher.calls == [{"topic": TOPIC, "payload": {}, "attributes": {"eventId": "generated-id"}}]


@pytest.mark.asyncio
@pytest.mark.parametrize("event_id", ["", None, 0, False])
async def test_falsy_event_id_is_replaced(processor, publisher, event_id) -> None:
    outcome = await processor.handle(_envelope(b64({"eventId": event_id, "x": 1})))
    assert outcome is not None
    assert outcome.event_id == "generated-id"
    # The relayed body is the inbound payload, falsy eventId included.
    assert publisher.calls[0]["payload"] == {"eventId": event_id, "x": 1}


@pytest.mark.asyncio
async def test_non_string_event_id_is_rendered_as_json(processor, store, publisher) -> None:
    outcome = await processor.handle(_envelope(b64({"eventId": 42})))
    assert outcome is not None
    assert outcome.event_id == "42"
    assert publisher.calls[0]["attributes"] == {"eventId": "42"}
    assert format_columns(store.calls[0]["data"])["eventId"] == b"42"


def test_default_event_ids_are_uuids(store, publisher) -> None:
    p = MessageProcessor(store=store, publisher=publisher, topic_name=TOPIC)
    first = asyncio.run(p.handle(_envelope(b64({"x": 1}))))
    second = asyncio.run(p.handle(_envelope(b64({"x": 1}))))
    assert first is not None and second is not None
    assert len(first.event_id) == 36
    assert first.event_id != second.event_id


@pytest.mark.asyncio
async def test_store_failure_does_not_block_publish(publisher, caplog) -> None:
    caplog.set_level(logging.INFO)
    store = FakeStore(result=False)
    p = MessageProcessor(store=store, publisher=publisher, topic_name=TOPIC, clock=lambda: FIXED_NOW)

    outcome = await p.handle(_envelope(b64({"eventId": "E1"})))

    assert len(store.calls) == 1
    assert len(publisher.calls) == 1
    assert outcome is not None
    assert outcome.stored is False
    relayed = next(r for r in caplog.records if getattr(r, "event_type", "") == "relay.ok")
    assert relayed.stored is False


class _ExplodingTable:
    def direct_row(self, row_key):
        raise ConnectionError("bigtable unreachable")


@pytest.mark.asyncio
async def test_raising_store_transport_is_absorbed_and_publish_proceeds(publisher) -> None:
    sink = BigtableStoreSink(project_id="p", instance_id="i", table_id="t", table=_ExplodingTable())
    p = MessageProcessor(store=sink, publisher=publisher, topic_name=TOPIC)

    outcome = await p.handle(_envelope(b64({"eventId": "E1"})))

    assert outcome is not None
    assert outcome.stored is False
    assert len(publisher.calls) == 1


class _RaisingStore:
    def __init__(self) -> None:
        self.calls = 0

    async def write(self, row_key, data, meta) -> bool:
        self.calls += 1
        raise ConnectionError("store down")


@pytest.mark.asyncio
async def test_raising_store_does_not_block_publish(publisher, caplog) -> None:
    caplog.set_level(logging.INFO)
    store = _RaisingStore()
    p = MessageProcessor(store=store, publisher=publisher, topic_name=TOPIC, clock=lambda: FIXED_NOW)

    outcome = await p.handle(_envelope(b64({"eventId": "E1"})))

    assert store.calls == 1
    assert publisher.calls == [{"topic": TOPIC, "payload": {"eventId": "E1"}, "attributes": {"eventId": "E1"}}]
    assert outcome is not None
    assert outcome.stored is False
    failed = next(r for r in caplog.records if getattr(r, "event_type", "") == "store.write_failed")
    assert failed.levelno == logging.ERROR
    assert failed.exc_info is not None
    assert _events(caplog)[-2:] == ["store.write_failed", "relay.ok"]


@pytest.mark.asyncio
async def test_non_utf8_byte_in_object_is_still_relayed(processor, store, publisher) -> None:
    body = base64.b64encode(b'{"eventId":"E1","name":"caf\xe9"}').decode("ascii")

    outcome = await processor.handle(_envelope(body))

    assert outcome is not None
    assert len(store.calls) == 1
    assert publisher.calls[0]["payload"] == {"eventId": "E1", "name": "caf�"}


@pytest.mark.asyncio
async def test_publish_failure_propagates_after_store_write(store) -> None:
    failing = FakePublisher(error=RuntimeError("pubsub down"))
    p = MessageProcessor(store=store, publisher=failing, topic_name=TOPIC)

    with pytest.raises(RuntimeError, match="pubsub down"):
        await p.handle(_envelope(b64({"eventId": "E1"})))

    assert len(store.calls) == 1
    assert len(failing.calls) == 1


@pytest.mark.asyncio
async def test_reprocessing_same_event_yields_distinct_rows(store, publisher) -> None:
    ticks = iter([FIXED_NOW, FIXED_NOW.replace(microsecond=219000)])
    p = MessageProcessor(store=store, publisher=publisher, topic_name=TOPIC, clock=lambda: next(ticks))

    await p.handle(_envelope(b64({"eventId": "E1"})))
    await p.handle(_envelope(b64({"eventId": "E1"})))

    keys = [c["row_key"] for c in store.calls]
    assert keys[0] != keys[1]
    assert all(k.startswith("E1-") for k in keys)


@pytest.mark.asyncio
async def test_concurrent_messages_are_independent(processor, store, publisher) -> None:
    outcomes = await asyncio.gather(
        processor.handle(_envelope(b64({"eventId": "A"}))),
        processor.handle(_envelope(b64({"eventId": "B"}))),
        processor.handle(_envelope(None)),
    )
    assert [o.event_id if o else None for o in outcomes] == ["A", "B", None]
    assert sorted(c["attributes"]["eventId"] for c in publisher.calls) == ["A", "B"]
    assert len(store.calls) == 2

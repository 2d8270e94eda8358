from __future__ import annotations

import pytest

from pubsub_relay.processor import MessageProcessor
from tests.fakes import FIXED_NOW, TOPIC, FakePublisher, FakeStore


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def processor(store: FakeStore, publisher: FakePublisher) -> MessageProcessor:
    return MessageProcessor(
        store=store,
        publisher=publisher,
        topic_name=TOPIC,
        clock=lambda: FIXED_NOW,
        id_factory=lambda: "generated-id",
    )

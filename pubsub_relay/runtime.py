from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from pubsub_relay.bigtable_sink import BigtableStoreSink
from pubsub_relay.config import Settings
from pubsub_relay.logging import log_event
from pubsub_relay.processor import MessageProcessor
from pubsub_relay.publisher import PubSubRelayPublisher


logger = logging.getLogger(__name__)


@dataclass
class RelayRuntime:
    """
    Long-lived client handles shared by every in-flight message.
    """

    processor: MessageProcessor
    store: Optional[Any] = None
    publisher: Optional[Any] = None

    def close(self) -> None:
        for resource in (self.publisher, self.store):
            close = getattr(resource, "close", None)
            if callable(close):
                close()


def build_runtime(settings: Settings) -> RelayRuntime:
    store = BigtableStoreSink(
        project_id=settings.GCP_PROJECT,
        instance_id=settings.BIGTABLE_INSTANCE,
        table_id=settings.BIGTABLE_TABLE,
    )
    store.initialize()

    publisher = PubSubRelayPublisher(project_id=settings.GCP_PROJECT)
    processor = MessageProcessor(store=store, publisher=publisher, topic_name=settings.PUBSUB_TOPIC)

    log_event(
        logger,
        "startup",
        message="Relay runtime ready",
        gcp_project=settings.GCP_PROJECT,
        bigtable_instance=settings.BIGTABLE_INSTANCE,
        bigtable_table=settings.BIGTABLE_TABLE,
        topic=settings.PUBSUB_TOPIC,
    )
    return RelayRuntime(processor=processor, store=store, publisher=publisher)

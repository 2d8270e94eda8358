from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional

from pubsub_relay.logging import log_event
from pubsub_relay.record_formatter import to_json


logger = logging.getLogger(__name__)


class PubSubRelayPublisher:
    """
    Google Pub/Sub publisher for relayed events.

    Lazy-imports `google.cloud.pubsub_v1` so the codebase can still import in
    environments where Pub/Sub dependencies are not installed yet. Publish
    failures are logged and re-raised.
    """

    def __init__(self, *, project_id: Optional[str], publisher_client: Any = None) -> None:
        self.project_id = project_id

        try:
            from google.cloud import pubsub_v1  # type: ignore
        except Exception as e:  # pragma: no cover
            raise RuntimeError(
                "google-cloud-pubsub is required to use PubSubRelayPublisher. "
                "Install with: pip install google-cloud-pubsub"
            ) from e

        self._client = publisher_client if publisher_client is not None else pubsub_v1.PublisherClient()
        self._message_type = pubsub_v1.types.PubsubMessage

    def topic_path(self, topic: str) -> str:
        t = str(topic or "").strip()
        if t.startswith("projects/") and "/topics/" in t:
            return t
        if not self.project_id:
            raise ValueError(f"GCP project id is required to resolve topic: {t}")
        return self._client.topic_path(str(self.project_id), t)

    def _publish_sync(self, topic_path: str, data: bytes, attributes: Mapping[str, str]) -> str:
        # Inbound attribute names are arbitrary ("topic", "ordering_key", ...), so they
        # travel inside the message rather than as PublisherClient.publish kwargs.
        message = self._message_type(data=data, attributes=dict(attributes))
        # No deadline here: the client's own retry/timeout settings apply.
        response = self._client.api.publish(topic=topic_path, messages=[message])
        return str(response.message_ids[0])

    async def publish(self, topic: str, payload: Any, attributes: Mapping[str, str]) -> str:
        try:
            topic_path = self.topic_path(topic)
            data = to_json(payload).encode("utf-8")
            attrs = {str(k): str(v) for k, v in (attributes or {}).items()}
            message_id = await asyncio.to_thread(self._publish_sync, topic_path, data, attrs)
        except Exception as e:
            log_event(
                logger,
                "pubsub.publish_failed",
                severity="ERROR",
                message=f"Failed to publish message to {topic}: {e}",
                exc_info=True,
                topic=str(topic),
                error_type=e.__class__.__name__,
            )
            raise

        log_event(
            logger,
            "pubsub.published",
            severity="DEBUG",
            message=f"Message published to {topic}: {message_id}",
            topic=str(topic),
            message_id=message_id,
        )
        return message_id

    def close(self) -> None:
        """
        Best-effort shutdown for the underlying Pub/Sub client.

        PublisherClient can own background batching threads and gRPC channels.
        """
        client = getattr(self, "_client", None)
        if client is None:
            return

        try:
            stop = getattr(client, "stop", None)
            if callable(stop):
                stop()
        except Exception:
            log_event(logger, "pubsub.close_failed", severity="WARNING", message="Error stopping Pub/Sub publisher", exc_info=True)

        try:
            transport = getattr(client, "transport", None)
            transport_close = getattr(transport, "close", None)
            if callable(transport_close):
                transport_close()
        except Exception:
            log_event(logger, "pubsub.close_failed", severity="WARNING", message="Error closing Pub/Sub transport", exc_info=True)

"""
CloudEvent entry point (Cloud Functions 2nd gen / Eventarc Pub/Sub trigger).

The platform invokes `handle_cloud_event` once per delivered message. Errors
are logged and re-raised so the platform can apply its retry policy.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Any, Mapping, Optional

from pubsub_relay.config import get_settings
from pubsub_relay.envelope import InboundEnvelope
from pubsub_relay.logging import init_structured_logging, log_event
from pubsub_relay.runtime import RelayRuntime, build_runtime


logger = logging.getLogger("pubsub_relay.function")

_runtime_lock = threading.Lock()
_runtime: Optional[RelayRuntime] = None


def get_runtime() -> RelayRuntime:
    """
    Process-wide runtime, built once per instance on first invocation.
    """
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            settings = get_settings()
            init_structured_logging(service=settings.SERVICE_NAME, env=settings.ENV, level=settings.LOG_LEVEL)
            _runtime = build_runtime(settings)
        return _runtime


def set_runtime(runtime: Optional[RelayRuntime]) -> None:
    global _runtime
    with _runtime_lock:
        _runtime = runtime


def _event_data(cloud_event: Any) -> Mapping[str, Any]:
    # functions-framework passes a cloudevents.CloudEvent; tests pass plain dicts.
    data = getattr(cloud_event, "data", None)
    if data is None and isinstance(cloud_event, Mapping):
        data = cloud_event.get("data", cloud_event)
    return data if isinstance(data, Mapping) else {}


async def handle_cloud_event_async(cloud_event: Any) -> None:
    data = _event_data(cloud_event)
    try:
        processor = get_runtime().processor
        log_event(
            logger,
            "pubsub.raw_event",
            severity="DEBUG",
            message="RAW EVENT ↓\n" + json.dumps(data, indent=2, ensure_ascii=False, default=str),
        )
        await processor.handle(InboundEnvelope.from_push(data))
    except Exception as e:
        log_event(
            logger,
            "pubsub.function_failed",
            severity="ERROR",
            message=f"Error processing PubSub message: {e}",
            exc_info=True,
            error_type=e.__class__.__name__,
        )
        raise


def handle_cloud_event(cloud_event: Any) -> None:
    asyncio.run(handle_cloud_event_async(cloud_event))

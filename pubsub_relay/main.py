"""
HTTP front door for the relay (Cloud Run).

Routes:
- POST /pubsub/push   Pub/Sub push subscription endpoint
- POST /pubsub/test   synchronous diagnostics entry point (same message shape as push.message)
- GET  /healthz, /readyz

Run with `uvicorn pubsub_relay.main:app` or `python -m pubsub_relay.main`.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, HTTPException, Request, Response

from pubsub_relay.config import Settings, get_settings
from pubsub_relay.envelope import InboundEnvelope
from pubsub_relay.logging import init_structured_logging, install_fastapi_request_id_middleware, log_event
from pubsub_relay.processor import MessageProcessor
from pubsub_relay.runtime import RelayRuntime, build_runtime


SERVICE_NAME = "pubsub-bigtable-relay"

logger = logging.getLogger("pubsub_relay.http")


def _processor_or_503(app: FastAPI) -> MessageProcessor:
    runtime: Optional[RelayRuntime] = getattr(app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="not_ready")
    return runtime.processor


async def _read_json(req: Request) -> Any:
    try:
        return await req.json()
    except Exception as e:
        log_event(logger, "pubsub.rejected", severity="ERROR", message="Request body is not valid JSON", reason="invalid_json", error=str(e))
        raise HTTPException(status_code=400, detail="invalid_json") from e


async def _handle_or_500(processor: MessageProcessor, envelope: InboundEnvelope) -> None:
    try:
        await processor.handle(envelope)
    except Exception as e:
        log_event(
            logger,
            "pubsub.handle_failed",
            severity="ERROR",
            message=f"Error handling Pub/Sub event: {e}",
            exc_info=True,
            messageId=envelope.message_id,
            error_type=e.__class__.__name__,
        )
        raise HTTPException(status_code=500, detail="Internal Server Error") from e


def create_app(
    *,
    settings: Optional[Settings] = None,
    runtime: Optional[RelayRuntime] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """
    Build the FastAPI app.

    When `runtime` is given it is used as-is (and not closed on shutdown);
    otherwise Bigtable/Pub/Sub clients are built from settings at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned: Optional[RelayRuntime] = None
        if runtime is None:
            s = settings or get_settings()
            if configure_logging:
                init_structured_logging(service=s.SERVICE_NAME, env=s.ENV, level=s.LOG_LEVEL)
            app.state.test_endpoint_enabled = bool(s.ENABLE_TEST_ENDPOINT)
            # Client construction + table check are blocking network calls.
            owned = await asyncio.to_thread(build_runtime, s)
            app.state.runtime = owned
        else:
            app.state.runtime = runtime
        try:
            yield
        finally:
            app.state.runtime = None
            if owned is not None:
                owned.close()
                log_event(logger, "shutdown", message="Relay runtime closed")

    app = FastAPI(title="Pub/Sub to Bigtable Relay", version="0.1.0", lifespan=lifespan)
    app.state.runtime = None
    app.state.test_endpoint_enabled = True if settings is None else bool(settings.ENABLE_TEST_ENDPOINT)
    install_fastapi_request_id_middleware(app, service=settings.SERVICE_NAME if settings else SERVICE_NAME)

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        return {"status": "ok", "service": SERVICE_NAME, "ts": datetime.now(timezone.utc).isoformat()}

    @app.get("/readyz")
    async def readyz(response: Response) -> dict[str, Any]:
        ok = getattr(app.state, "runtime", None) is not None
        response.status_code = 200 if ok else 503
        return {"status": "ok" if ok else "not_ready", "service": SERVICE_NAME}

    @app.post("/pubsub/push", status_code=204)
    async def pubsub_push(req: Request) -> Response:
        """
        Pub/Sub push handler.

        2xx acks the message (including absorbed decode / non-object payload
        failures); 5xx makes Pub/Sub redeliver after a publish failure.
        """
        processor = _processor_or_503(app)
        body = await _read_json(req)
        if not isinstance(body, dict):
            log_event(logger, "pubsub.rejected", severity="ERROR", message="Push body is not an object", reason="invalid_envelope")
            raise HTTPException(status_code=400, detail="invalid_envelope")

        await _handle_or_500(processor, InboundEnvelope.from_push(body))
        return Response(status_code=204)

    @app.post("/pubsub/test", status_code=204)
    async def pubsub_test(req: Request) -> Response:
        if not getattr(app.state, "test_endpoint_enabled", False):
            raise HTTPException(status_code=404, detail="Not Found")
        processor = _processor_or_503(app)
        body = await _read_json(req)
        await _handle_or_500(processor, InboundEnvelope.from_message(body))
        return Response(status_code=204)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    s = get_settings()
    uvicorn.run("pubsub_relay.main:app", host=s.HOST, port=s.PORT, log_level="warning", access_log=False)

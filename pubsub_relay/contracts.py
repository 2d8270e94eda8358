from __future__ import annotations

from typing import Any, Mapping, Protocol

from pubsub_relay.record_formatter import ColumnValue


class StoreSink(Protocol):
    """
    Row store used by the processor.

    `write` must never raise: failures (including connectivity) are logged by
    the sink and reported as False.
    """

    async def write(
        self,
        row_key: str,
        data: Mapping[str, ColumnValue],
        meta: Mapping[str, ColumnValue],
    ) -> bool: ...


class RelayPublisher(Protocol):
    """
    Topic publisher used by the processor.

    Returns the broker-assigned delivery id; failures propagate to the caller.
    """

    async def publish(
        self,
        topic: str,
        payload: Any,
        attributes: Mapping[str, str],
    ) -> str: ...

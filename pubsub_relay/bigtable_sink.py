from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional

from pubsub_relay.logging import log_event
from pubsub_relay.record_formatter import DATA_FAMILY, META_FAMILY, ColumnValue, format_columns


logger = logging.getLogger(__name__)


class BigtableWriteError(RuntimeError):
    pass


class BigtableStoreSink:
    """
    Cloud Bigtable row writer (families `meta` and `data`).

    Lazy-imports `google.cloud.bigtable` so tests can inject a table double
    without the client library configured. Writes never raise; the outcome is
    reported as a bool and the cause is logged here.
    """

    def __init__(
        self,
        *,
        project_id: Optional[str],
        instance_id: str,
        table_id: str,
        client: Any = None,
        table: Any = None,
    ) -> None:
        self.project_id = project_id
        self.instance_id = str(instance_id)
        self.table_id = str(table_id)

        if table is None and client is None:
            try:
                from google.cloud import bigtable  # type: ignore
            except Exception as e:  # pragma: no cover
                raise RuntimeError(
                    "google-cloud-bigtable is required to use BigtableStoreSink. "
                    "Install with: pip install google-cloud-bigtable"
                ) from e
            # admin=True is needed for table.exists() during initialize().
            client = bigtable.Client(project=project_id, admin=True)

        self._client = client
        self._table = table if table is not None else client.instance(self.instance_id).table(self.table_id)

    def initialize(self) -> bool:
        """
        Check the target table is reachable. Never raises; returns whether the
        table was confirmed to exist.
        """
        log_event(
            logger,
            "bigtable.connect",
            message=f"Initializing connection to Bigtable instance: {self.instance_id}, table: {self.table_id}",
            instance=self.instance_id,
            table=self.table_id,
        )
        try:
            exists = bool(self._table.exists())
        except Exception as e:
            log_event(
                logger,
                "bigtable.connect_failed",
                severity="ERROR",
                message="Failed to initialize Bigtable connection",
                exc_info=True,
                error=str(e),
                instance=self.instance_id,
                table=self.table_id,
            )
            return False

        if exists:
            log_event(logger, "bigtable.connected", message=f"Connected to Bigtable table: {self.table_id}", table=self.table_id)
        else:
            log_event(
                logger,
                "bigtable.table_missing",
                severity="WARNING",
                message=f"Table {self.table_id} does not exist - please ensure it is created",
                table=self.table_id,
            )
        return exists

    def _write_sync(self, row_key: str, families: Mapping[str, Mapping[str, bytes]]) -> None:
        row = self._table.direct_row(row_key)
        for family, columns in families.items():
            for column, value in columns.items():
                row.set_cell(family, column, value)

        statuses = self._table.mutate_rows([row])
        for status in statuses or []:
            code = int(getattr(status, "code", 0) or 0)
            if code != 0:
                raise BigtableWriteError(f"mutate_rows failed: code={code} message={getattr(status, 'message', '')}")

    async def write(
        self,
        row_key: str,
        data: Mapping[str, ColumnValue],
        meta: Mapping[str, ColumnValue],
    ) -> bool:
        try:
            families = {
                META_FAMILY: format_columns(meta),
                DATA_FAMILY: format_columns(data),
            }
            await asyncio.to_thread(self._write_sync, row_key, families)
        except Exception as e:
            log_event(
                logger,
                "bigtable.write_failed",
                severity="ERROR",
                message=f"Error saving event to Bigtable: {e}",
                exc_info=True,
                row_key=row_key,
                error_type=e.__class__.__name__,
            )
            return False

        log_event(logger, "bigtable.write_ok", message=f"Event saved to Bigtable with row key: {row_key}", row_key=row_key)
        return True

    def close(self) -> None:
        """
        Best-effort shutdown of the underlying client (gRPC channels).
        """
        client = self._client
        if client is None:
            return
        log_event(logger, "bigtable.close", message="Cleaning up Bigtable connections")
        try:
            close = getattr(client, "close", None)
            if callable(close):
                close()
        except Exception as e:
            log_event(
                logger,
                "bigtable.close_failed",
                severity="ERROR",
                message="Error during Bigtable cleanup",
                exc_info=True,
                error=str(e),
            )
            return
        log_event(logger, "bigtable.closed", message="Bigtable connection closed successfully")

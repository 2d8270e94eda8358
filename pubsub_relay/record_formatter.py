from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Union


META_FAMILY = "meta"
DATA_FAMILY = "data"


def to_json(value: Any) -> str:
    # Compact separators match the producer-side JSON.stringify output.
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True, slots=True)
class StringValue:
    text: str

    def encode(self) -> bytes:
        return self.text.encode("utf-8")


@dataclass(frozen=True, slots=True)
class StructuredValue:
    value: Any

    def encode(self) -> bytes:
        return to_json(self.value).encode("utf-8")


ColumnValue = Union[StringValue, StructuredValue]


def column_value(raw: Any) -> ColumnValue:
    if isinstance(raw, str):
        return StringValue(raw)
    return StructuredValue(raw)


def columns_from_mapping(values: Mapping[str, Any]) -> Dict[str, ColumnValue]:
    return {str(k): column_value(v) for k, v in values.items()}


def format_columns(columns: Mapping[str, ColumnValue]) -> Dict[str, bytes]:
    """
    Byte-encode one column family. Strings are stored verbatim (UTF-8), every
    other value as its JSON text.
    """
    return {key: value.encode() for key, value in columns.items()}


def build_row_key(event_id: str, epoch_millis: int) -> str:
    return f"{event_id}-{int(epoch_millis)}"


@dataclass(frozen=True, slots=True)
class StoredRecord:
    row_key: str
    meta: Dict[str, ColumnValue] = field(default_factory=dict)
    data: Dict[str, ColumnValue] = field(default_factory=dict)

    def formatted(self) -> Dict[str, Dict[str, bytes]]:
        return {
            META_FAMILY: format_columns(self.meta),
            DATA_FAMILY: format_columns(self.data),
        }

"""
Read-only decoding of Apache Arrow IPC streams returned by dataflow query execution.

The executeQuery endpoint answers with an Arrow stream (schema header followed by
record batches). `decode_arrow_stream` turns those bytes into a column-oriented
table of display values wrapped in a `QueryResultSummary`. It never raises:
failures come back as a summary with `parsing_succeeded=False`.
"""

import asyncio
import base64
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import pyarrow as pa
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
DATE_FORMAT = "%Y-%m-%d"

_EPOCH = datetime(1970, 1, 1)
_MICROS_PER_UNIT = {"s": 1_000_000, "ms": 1_000, "us": 1}

# =============================================================================
#  MODELS
# =============================================================================

class ArrowColumnSchema(BaseModel):
    name: str
    type_tag: str = Field(..., alias="typeTag")
    nullable: bool = True
    metadata: Dict[str, str] = Field(default_factory=dict)
    model_config = {"populate_by_name": True, "frozen": True}


class ArrowSchemaDetails(BaseModel):
    field_count: int = Field(0, alias="fieldCount")
    columns: List[ArrowColumnSchema] = Field(default_factory=list)
    model_config = {"populate_by_name": True, "frozen": True}


class QueryResultSummary(BaseModel):
    """Decoded Arrow result: column names, counts, and the column -> values table."""
    columns: List[str] = Field(default_factory=list)
    row_count: int = Field(0, alias="rowCount")
    batch_count: int = Field(0, alias="batchCount")
    table: Dict[str, List[Any]] = Field(default_factory=dict)
    arrow_schema: Optional[ArrowSchemaDetails] = Field(None, alias="arrowSchema")
    parsing_succeeded: bool = Field(False, alias="parsingSucceeded")
    parsing_error: Optional[str] = Field(None, alias="parsingError")
    format: str = "Apache Arrow"
    model_config = {"populate_by_name": True, "frozen": True}

# =============================================================================
#  CELL DECODING
# =============================================================================

def _native(array: pa.Array, index: int) -> Any:
    return array[index].as_py()


def _timestamp(array: pa.TimestampArray, index: int) -> str:
    raw = array[index].value
    unit = array.type.unit
    micros = raw // 1_000 if unit == "ns" else raw * _MICROS_PER_UNIT[unit]
    try:
        return (_EPOCH + timedelta(microseconds=micros)).strftime(TIMESTAMP_FORMAT)
    except (OverflowError, ValueError):
        # outside datetime's year 1..9999 range
        return f"{raw} {unit}"


def _date(array: pa.Array, index: int) -> str:
    try:
        return array[index].as_py().strftime(DATE_FORMAT)
    except (OverflowError, ValueError):
        unit = "days" if isinstance(array, pa.Date32Array) else "ms"
        return f"{array[index].value} {unit}"


def _decimal(array: pa.Array, index: int) -> str:
    return str(array[index].as_py())


def _binary(array: pa.Array, index: int) -> str:
    return base64.b64encode(array[index].as_py()).decode("ascii")


_CELL_DECODERS: Tuple[Tuple[Tuple[type, ...], Callable[[pa.Array, int], Any]], ...] = (
    ((pa.StringArray, pa.LargeStringArray), _native),
    ((pa.Int8Array, pa.Int16Array, pa.Int32Array, pa.Int64Array,
      pa.UInt8Array, pa.UInt16Array, pa.UInt32Array, pa.UInt64Array), _native),
    ((pa.FloatArray, pa.DoubleArray), _native),
    ((pa.BooleanArray,), _native),
    ((pa.TimestampArray,), _timestamp),
    ((pa.Date32Array, pa.Date64Array), _date),
    ((pa.Decimal128Array, pa.Decimal256Array), _decimal),
    ((pa.BinaryArray, pa.LargeBinaryArray), _binary),
)


def decode_cell(array: pa.Array, index: int) -> Any:
    """
    Maps one cell of an Arrow array to a JSON-friendly display value.

    Nulls map to None before any type dispatch. Array kinds without a decoder
    produce a placeholder naming the array type and row.
    """
    if not array[index].is_valid:
        return None
    for array_types, decoder in _CELL_DECODERS:
        if isinstance(array, array_types):
            return decoder(array, index)
    return f"[{type(array).__name__}] - Unsupported type {array.type} at row {index}"

# =============================================================================
#  STREAM DECODING
# =============================================================================

def _column_schema(field: pa.Field) -> ArrowColumnSchema:
    metadata = {
        key.decode("utf-8", "replace"): value.decode("utf-8", "replace")
        for key, value in (field.metadata or {}).items()
    }
    return ArrowColumnSchema(name=field.name, type_tag=str(field.type), nullable=field.nullable, metadata=metadata)


def _unique_names(names: List[str]) -> List[str]:
    """First occurrence keeps its name; later duplicates get the next free `name (n)`."""
    reserved = set(names)
    emitted: set = set()
    unique = []
    for name in names:
        candidate = name
        suffix = 1
        while candidate in emitted or (candidate != name and candidate in reserved):
            suffix += 1
            candidate = f"{name} ({suffix})"
        emitted.add(candidate)
        unique.append(candidate)
    return unique


def build_query_result_summary(
    columns: List[str],
    values: List[List[Any]],
    row_count: int,
    batch_count: int,
    schema: Optional[ArrowSchemaDetails] = None,
) -> QueryResultSummary:
    """Assembles a successful summary from per-column value lists (same order as `columns`)."""
    return QueryResultSummary(
        columns=columns,
        row_count=row_count,
        batch_count=batch_count,
        table=dict(zip(columns, values)),
        arrow_schema=schema,
        parsing_succeeded=True,
    )


def failed_query_result_summary(error: str) -> QueryResultSummary:
    return QueryResultSummary(parsing_succeeded=False, parsing_error=error or "Unknown Arrow parsing error")


def decode_arrow_stream(data: bytes) -> QueryResultSummary:
    """Decodes an Arrow IPC stream into a `QueryResultSummary`. Never raises."""
    try:
        reader = pa.ipc.open_stream(data)
        fields = list(reader.schema)
        columns = _unique_names([field.name for field in fields])
        schema = ArrowSchemaDetails(field_count=len(fields), columns=[_column_schema(f) for f in fields])
        values: List[List[Any]] = [[] for _ in columns]
        row_count = 0
        batch_count = 0

        for batch in reader:
            batch_count += 1
            row_count += batch.num_rows
            for col_index in range(min(batch.num_columns, len(columns))):
                array = batch.column(col_index)
                column_values = values[col_index]
                for row_index in range(batch.num_rows):
                    try:
                        column_values.append(decode_cell(array, row_index))
                    except Exception as e:
                        logger.debug(f"Could not decode row {row_index} of column '{columns[col_index]}': {e}")
                        column_values.append("")

        logger.debug(f"Decoded Arrow stream: {len(columns)} columns, {row_count} rows, {batch_count} batches.")
        return build_query_result_summary(columns, values, row_count, batch_count, schema)
    except Exception as e:
        logger.warning(f"Arrow parsing failed: {e}", exc_info=True)
        return failed_query_result_summary(str(e) or type(e).__name__)


async def read_arrow_stream(data: bytes) -> QueryResultSummary:
    """Runs `decode_arrow_stream` in a worker thread so large buffers do not block the event loop."""
    return await asyncio.to_thread(decode_arrow_stream, data)

from datetime import date, datetime
from decimal import Decimal

import pyarrow as pa
import pytest

from dataflowmcp_server import arrow_reader
from dataflowmcp_server.arrow_reader import (
    QueryResultSummary,
    decode_arrow_stream,
    decode_cell,
    read_arrow_stream,
)


def _batch(**columns) -> pa.RecordBatch:
    return pa.RecordBatch.from_arrays(list(columns.values()), names=list(columns))


@pytest.mark.parametrize("array,expected", [
    (pa.array(["abc"], pa.string()), "abc"),
    (pa.array(["abc"], pa.large_string()), "abc"),
    (pa.array([-8], pa.int8()), -8),
    (pa.array([16], pa.int16()), 16),
    (pa.array([32], pa.int32()), 32),
    (pa.array([2**40], pa.int64()), 2**40),
    (pa.array([255], pa.uint8()), 255),
    (pa.array([2**63], pa.uint64()), 2**63),
    (pa.array([1.5], pa.float32()), 1.5),
    (pa.array([2.25], pa.float64()), 2.25),
    (pa.array([True], pa.bool_()), True),
    (pa.array([datetime(2024, 1, 2, 3, 4, 5)], pa.timestamp("s")), "2024-01-02 03:04:05"),
    (pa.array([datetime(2024, 1, 2, 3, 4, 5)], pa.timestamp("ms")), "2024-01-02 03:04:05"),
    (pa.array([1_700_000_000_123_456_789], pa.timestamp("ns", tz="UTC")), "2023-11-14 22:13:20"),
    (pa.array([date(2024, 2, 29)], pa.date32()), "2024-02-29"),
    (pa.array([date(2024, 2, 29)], pa.date64()), "2024-02-29"),
    (pa.array([Decimal("12.34")], pa.decimal128(10, 2)), "12.34"),
    (pa.array([Decimal("-0.50")], pa.decimal256(40, 2)), "-0.50"),
    (pa.array([b"\x00\x01"], pa.binary()), "AAE="),
    (pa.array([b"hi"], pa.large_binary()), "aGk="),
])
def test_decode_cell_type_mapping(array, expected):
    assert decode_cell(array, 0) == expected


def test_null_cells_decode_to_none_for_every_kind():
    for array in (
        pa.array([None], pa.string()),
        pa.array([None], pa.int64()),
        pa.array([None], pa.timestamp("us")),
        pa.array([None], pa.list_(pa.int32())),
    ):
        assert decode_cell(array, 0) is None


def test_unsupported_type_yields_placeholder():
    array = pa.array([[1, 2]], pa.list_(pa.int32()))
    value = decode_cell(array, 0)
    assert "ListArray" in value
    assert "row 0" in value


def test_decodes_stream_into_column_table(arrow_stream):
    data = arrow_stream([_batch(
        Id=pa.array([1, None, 3], pa.int64()),
        Name=pa.array(["a", "b", None], pa.string()),
    )])
    summary = decode_arrow_stream(data)
    assert summary.parsing_succeeded
    assert summary.parsing_error is None
    assert summary.columns == ["Id", "Name"]
    assert summary.row_count == 3
    assert summary.batch_count == 1
    assert summary.table == {"Id": [1, None, 3], "Name": ["a", "b", None]}
    assert summary.format == "Apache Arrow"


def test_unsupported_column_does_not_affect_others(arrow_stream):
    data = arrow_stream([_batch(
        Tags=pa.array([[1], [2, 3]], pa.list_(pa.int64())),
        Id=pa.array([10, 20], pa.int64()),
    )])
    summary = decode_arrow_stream(data)
    assert summary.parsing_succeeded
    assert summary.table["Id"] == [10, 20]
    assert all("ListArray" in v for v in summary.table["Tags"])


def test_multiple_batches_are_concatenated(arrow_stream):
    schema = pa.schema([("n", pa.int32())])
    batches = [
        pa.RecordBatch.from_arrays([pa.array([1, 2], pa.int32())], schema=schema),
        pa.RecordBatch.from_arrays([pa.array([3], pa.int32())], schema=schema),
    ]
    summary = decode_arrow_stream(arrow_stream(batches))
    assert summary.batch_count == 2
    assert summary.row_count == 3
    assert summary.table["n"] == [1, 2, 3]


def test_schema_only_stream_has_columns_and_no_rows(arrow_stream):
    schema = pa.schema([("a", pa.string()), ("b", pa.float64())])
    summary = decode_arrow_stream(arrow_stream([], schema=schema))
    assert summary.parsing_succeeded
    assert summary.columns == ["a", "b"]
    assert summary.row_count == 0
    assert summary.table == {"a": [], "b": []}


def test_schema_details_carry_type_nullability_and_metadata(arrow_stream):
    schema = pa.schema([
        pa.field("Id", pa.int64(), nullable=False, metadata={"source": "sql"}),
        pa.field("When", pa.timestamp("ms")),
    ])
    batch = pa.RecordBatch.from_arrays(
        [pa.array([1], pa.int64()), pa.array([datetime(2024, 1, 1)], pa.timestamp("ms"))],
        schema=schema,
    )
    details = decode_arrow_stream(arrow_stream([batch])).arrow_schema
    assert details.field_count == 2
    assert details.columns[0].name == "Id"
    assert details.columns[0].type_tag == "int64"
    assert details.columns[0].nullable is False
    assert details.columns[0].metadata == {"source": "sql"}
    assert details.columns[1].type_tag == "timestamp[ms]"


def test_duplicate_column_names_are_disambiguated(arrow_stream):
    batch = pa.RecordBatch.from_arrays([pa.array([1]), pa.array([2])], names=["x", "x"])
    summary = decode_arrow_stream(arrow_stream([batch]))
    assert summary.columns == ["x", "x (2)"]
    assert summary.table == {"x": [1], "x (2)": [2]}


@pytest.mark.parametrize("data", [b"", b"not an arrow stream", b"\xff" * 64])
def test_invalid_bytes_return_failed_summary(data):
    summary = decode_arrow_stream(data)
    assert summary.parsing_succeeded is False
    assert summary.parsing_error
    assert summary.columns == []
    assert summary.table == {}


def test_cell_failure_becomes_empty_string(arrow_stream, monkeypatch):
    original = arrow_reader.decode_cell

    def flaky(array, index):
        if index == 1:
            raise ValueError("boom")
        return original(array, index)

    monkeypatch.setattr(arrow_reader, "decode_cell", flaky)
    summary = decode_arrow_stream(arrow_stream([_batch(n=pa.array([1, 2, 3]))]))
    assert summary.parsing_succeeded
    assert summary.table["n"] == [1, "", 3]


def test_decoding_is_idempotent(arrow_stream):
    data = arrow_stream([_batch(a=pa.array(["x", None]), b=pa.array([1.0, 2.0]))])
    assert decode_arrow_stream(data) == decode_arrow_stream(data)


def test_summary_serializes_with_camel_case_aliases(arrow_stream):
    dumped = decode_arrow_stream(arrow_stream([_batch(a=pa.array([1]))])).model_dump(by_alias=True)
    assert dumped["rowCount"] == 1
    assert dumped["batchCount"] == 1
    assert dumped["parsingSucceeded"] is True
    assert dumped["arrowSchema"]["fieldCount"] == 1


@pytest.mark.asyncio
async def test_read_arrow_stream_runs_decoder(arrow_stream):
    summary = await read_arrow_stream(arrow_stream([_batch(a=pa.array([7]))]))
    assert isinstance(summary, QueryResultSummary)
    assert summary.table == {"a": [7]}


def test_renamed_duplicate_does_not_collide_with_existing_column(arrow_stream):
    batch = pa.RecordBatch.from_arrays(
        [pa.array([1]), pa.array([2]), pa.array([3])], names=["x", "x", "x (2)"]
    )
    summary = decode_arrow_stream(arrow_stream([batch]))
    assert summary.columns == ["x", "x (3)", "x (2)"]
    assert len(summary.table) == len(summary.columns)
    assert summary.table == {"x": [1], "x (3)": [2], "x (2)": [3]}


@pytest.mark.parametrize("array,expected", [
    (pa.array([2**62], pa.timestamp("s")), f"{2**62} s"),
    (pa.array([2**62], pa.timestamp("ms")), f"{2**62} ms"),
    (pa.array([-(2**62)], pa.timestamp("us")), f"{-(2**62)} us"),
    (pa.array([2**31 - 1], pa.date32()), f"{2**31 - 1} days"),
    (pa.array([2**62], pa.date64()), f"{2**62} ms"),
])
def test_out_of_range_temporal_values_fall_back_to_raw_value(array, expected):
    assert decode_cell(array, 0) == expected

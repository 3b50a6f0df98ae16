import pytest

from dataflowmcp_server.arrow_reader import build_query_result_summary, failed_query_result_summary
from dataflowmcp_server.query_report import (
    ExecuteDataflowQueryResponse,
    create_arrow_data_report,
    format_as_table,
    format_bytes,
    infer_data_type,
)


@pytest.mark.parametrize("size,expected", [
    (0, "0 B"),
    (512, "512 B"),
    (1536, "1.5 KB"),
    (5 * 1024 * 1024, "5 MB"),
    (3 * 1024 ** 3, "3 GB"),
    (2048 * 1024 ** 3, "2048 GB"),
])
def test_format_bytes(size, expected):
    assert format_bytes(size) == expected


def test_infer_data_type():
    assert infer_data_type([]) == "Unknown"
    assert infer_data_type([None, None]) == "Null"
    assert infer_data_type([None, 3]) == "int"
    assert infer_data_type(["x"]) == "str"


def test_format_as_table_excludes_metadata_column_and_renders_rows():
    table = format_as_table({
        "Id": [1, 2],
        "Active": [True, None],
        "PQ Arrow Metadata": ["meta", "meta"],
    })
    assert table["rowCount"] == 2
    assert table["columnCount"] == 2
    assert table["summary"] == "2 rows × 2 columns"
    assert [c["name"] for c in table["columns"]] == ["Id", "Active"]
    assert table["columns"][1]["dataType"] == "bool"
    assert table["rows"] == [{"Id": "1", "Active": "true"}, {"Id": "2", "Active": ""}]


def test_format_as_table_without_data():
    table = format_as_table({"PQ Arrow Metadata": []})
    assert table["rowCount"] == 0
    assert table["summary"] == "No data available"


def test_create_arrow_data_report_for_successful_query():
    summary = build_query_result_summary(["Id"], [[1, 2, 3]], row_count=3, batch_count=1)
    response = ExecuteDataflowQueryResponse(
        success=True, content_type="application/vnd.apache.arrow.stream", content_length=1536,
        metadata={"queryName": "Orders"}, summary=summary,
    )
    report = create_arrow_data_report(response)
    assert report["table"]["rowCount"] == 3
    assert report["executionSummary"]["dataSize"] == "1.5 KB"
    assert report["executionSummary"]["executionMetadata"] == {"queryName": "Orders"}
    assert report["arrowData"]["parsingStatus"] == "Success"
    assert report["arrowData"]["dataSummary"]["totalRows"] == 3
    assert report["arrowData"]["schema"] is None


def test_create_arrow_data_report_for_failed_parse():
    response = ExecuteDataflowQueryResponse(
        success=True, content_length=10, summary=failed_query_result_summary("bad stream"),
    )
    report = create_arrow_data_report(response)
    assert report["table"]["summary"] == "No data available"
    assert report["arrowData"]["parsingStatus"] == "Failed"
    assert report["arrowData"]["parsingError"] == "bad stream"
    assert "Batch information not available" in report["arrowData"]["processingNotes"]


def test_create_arrow_data_report_without_summary():
    report = create_arrow_data_report(ExecuteDataflowQueryResponse(success=False, error="boom"))
    assert report["arrowData"] is None
    assert report["executionSummary"]["success"] is False
    assert report["executionSummary"]["dataSize"] == "0 B"

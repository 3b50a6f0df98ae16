import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .arrow_reader import ArrowSchemaDetails, QueryResultSummary

logger = logging.getLogger(__name__)

ARROW_METADATA_COLUMN = "PQ Arrow Metadata"
SIZE_UNITS = ("B", "KB", "MB", "GB")


class ExecuteDataflowQueryResponse(BaseModel):
    success: bool
    content_type: Optional[str] = Field(None, alias="contentType")
    content_length: int = Field(0, alias="contentLength")
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    summary: Optional[QueryResultSummary] = None
    model_config = {"populate_by_name": True}


def format_bytes(size: int) -> str:
    """Human-readable size, e.g. 1536 -> '1.5 KB'."""
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(SIZE_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{value:.2f}".rstrip("0").rstrip(".") + f" {SIZE_UNITS[unit]}"


def infer_data_type(values: List[Any]) -> str:
    first = next((v for v in values if v is not None), None)
    if first is None:
        return "Unknown" if not values else "Null"
    return type(first).__name__


def _display(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def format_as_table(table: Dict[str, List[Any]]) -> Dict[str, Any]:
    columns = [name for name in table if name != ARROW_METADATA_COLUMN]
    if not columns:
        return {"format": "Table", "rowCount": 0, "columnCount": 0, "columns": [], "rows": [], "summary": "No data available"}

    row_count = max(len(table[name]) for name in columns)
    rows = []
    for index in range(row_count):
        rows.append({
            name: _display(table[name][index]) if index < len(table[name]) else ""
            for name in columns
        })

    return {
        "format": "Table",
        "rowCount": row_count,
        "columnCount": len(columns),
        "summary": f"{row_count} rows × {len(columns)} columns",
        "columns": [{"name": name, "dataType": infer_data_type(table[name])} for name in columns],
        "rows": rows,
    }


def _schema_info(schema: Optional[ArrowSchemaDetails]) -> Optional[Dict[str, Any]]:
    if schema is None:
        return None
    return {
        "fieldCount": schema.field_count,
        "columns": [
            {"name": c.name, "dataType": c.type_tag, "isNullable": c.nullable, "hasMetadata": bool(c.metadata)}
            for c in schema.columns
        ],
    }


def format_arrow_summary(summary: QueryResultSummary) -> Dict[str, Any]:
    notes = [
        "Data successfully parsed using Apache Arrow libraries" if summary.parsing_succeeded
        else "Arrow parsing failed, no tabular data could be extracted",
        f"Extracted {len(summary.columns)} columns with {summary.row_count} rows",
        f"Data organized in {summary.batch_count} Arrow record batches" if summary.batch_count > 0
        else "Batch information not available",
    ]
    return {
        "dataFormat": "Apache Arrow Stream",
        "parsingStatus": "Success" if summary.parsing_succeeded else "Failed",
        "parsingError": summary.parsing_error,
        "schema": _schema_info(summary.arrow_schema),
        "dataSummary": {
            "totalRows": summary.row_count,
            "batchCount": summary.batch_count,
            "columns": summary.columns,
        },
        "format": summary.format,
        "processingNotes": notes,
    }


def create_arrow_data_report(response: ExecuteDataflowQueryResponse) -> Dict[str, Any]:
    """Builds the camelCase report returned by the execute_dataflow_query tool."""
    summary = response.summary
    return {
        "table": format_as_table(summary.table) if summary else format_as_table({}),
        "executionSummary": {
            "success": response.success,
            "contentType": response.content_type,
            "contentLength": response.content_length,
            "dataSize": format_bytes(response.content_length),
            "executionMetadata": response.metadata,
        },
        "arrowData": format_arrow_summary(summary) if summary else None,
    }

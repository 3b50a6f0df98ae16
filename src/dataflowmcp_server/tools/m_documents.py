"""
Tools for validating and saving M (Power Query) section documents to Fabric Dataflows.

Saving is a three-stage flow: validate the document, extract its shared queries,
then sync the whole document to the dataflow. A failure at any stage is returned
as a payload naming that stage, so the caller can fix the document and retry.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from fastmcp import FastMCP, Context
from fastmcp.exceptions import ToolError
from pydantic import Field

from ..fabric_models import FabricApiException, FabricAuthException
from ..m_document import ParsedQuery, ValidationResult, parse_m_queries, validate_m_document
from ..sessions import get_session_fabric_client
from .common import remember_operation, require_value

logger = logging.getLogger(__name__)


def _validation_failure(result: ValidationResult, document: str) -> Dict[str, Any]:
    return {
        "success": False,
        "stage": "Validation",
        "errors": list(result.errors),
        "warnings": list(result.warnings),
        "suggestions": list(result.suggestions),
        "document": document,
    }


def _parsing_failure() -> Dict[str, Any]:
    return {
        "success": False,
        "stage": "Parsing",
        "errors": ["No valid queries found in the document"],
        "suggestions": ["Ensure queries are declared with 'shared QueryName = ...' syntax"],
    }


def _query_outline(queries: List[ParsedQuery]) -> List[Dict[str, Any]]:
    return [
        {"name": q.name, "codeLength": len(q.code), "hasAttribute": bool(q.attribute)}
        for q in queries
    ]


def _validate_and_parse(document: str) -> Tuple[ValidationResult, List[ParsedQuery], Optional[Dict[str, Any]]]:
    result = validate_m_document(document)
    if not result.is_valid:
        logger.info(f"M document failed validation with {len(result.errors)} errors.")
        return result, [], _validation_failure(result, document)

    queries = parse_m_queries(document)
    if not queries:
        return result, [], _parsing_failure()
    return result, queries, None


def _validation_complete(result: ValidationResult, queries: List[ParsedQuery]) -> Dict[str, Any]:
    return {
        "success": True,
        "stage": "ValidationComplete",
        "message": "Document is valid and ready to save",
        "detectedPattern": result.detected_pattern,
        "parsedQueries": _query_outline(queries),
        "queryCount": len(queries),
        "warnings": list(result.warnings),
        "suggestions": list(result.suggestions),
    }


def check_m_document(document: str) -> Dict[str, Any]:
    """Runs validation and parsing without saving. Returns the staged result payload."""
    result, queries, failure = _validate_and_parse(document)
    return failure or _validation_complete(result, queries)


async def validate_m_document_impl(
    ctx: Context,
    m_document: str = Field(..., description="The complete M section document to validate. Should start with 'section Section1;' and contain all shared queries.")
) -> Dict[str, Any]:
    """
    Validates an M section document without saving it: checks the section declaration,
    shared query declarations and bracket balance, detects the Gen1/Gen2 authoring pattern,
    and lists the queries that would be saved.
    """
    logger.info("Tool 'validate_m_document' called.")
    require_value(m_document, "m_document")
    return check_m_document(m_document)


async def validate_and_save_m_document_impl(
    ctx: Context,
    workspace_id: str = Field(..., description="The workspace ID containing the target dataflow."),
    dataflow_id: str = Field(..., description="The dataflow ID to save the document to."),
    m_document: str = Field(..., description="The complete M section document to validate and save. Should start with 'section Section1;' and contain all shared queries."),
    validate_only: bool = Field(False, description="If true, only validates without saving.")
) -> Dict[str, Any]:
    """
    Validates and saves an M section document to a dataflow.

    This tool:
    1. Validates the M document syntax and structure
    2. Extracts individual queries from the document
    3. Saves the document and its queries to the specified dataflow

    The M document should be a complete section document with all queries needed for the dataflow;
    it replaces the dataflow's current mashup. If validation fails, detailed error information is
    returned to help fix the document.
    """
    logger.info(f"Tool 'validate_and_save_m_document' called for dataflow {dataflow_id} in workspace {workspace_id}.")
    require_value(workspace_id, "workspace_id")
    require_value(dataflow_id, "dataflow_id")
    require_value(m_document, "m_document")

    result, queries, failure = _validate_and_parse(m_document)
    if failure:
        return failure
    if validate_only:
        return _validation_complete(result, queries)

    try:
        client = await get_session_fabric_client(ctx)
        save = await client.sync_mashup_document(
            workspace_id,
            dataflow_id,
            m_document,
            [(q.name, q.code, q.attribute) for q in queries],
        )
    except (FabricAuthException, FabricApiException) as e:
        raise ToolError(f"Failed to save M document: {e}") from e

    if not save.success:
        return {
            "success": False,
            "stage": "Save",
            "workspaceId": workspace_id,
            "dataflowId": dataflow_id,
            "detectedPattern": result.detected_pattern,
            "totalQueries": len(queries),
            "errorMessage": save.error_message,
            "message": "Failed to save queries to dataflow",
        }

    payload = {
        "success": True,
        "stage": "SaveComplete",
        "workspaceId": workspace_id,
        "dataflowId": dataflow_id,
        "detectedPattern": result.detected_pattern,
        "totalQueries": len(queries),
        "savedQueries": len(queries),
        "warnings": list(result.warnings),
        "message": f"Successfully saved all {len(queries)} queries to dataflow",
    }
    if save.operation_url:
        payload["jobId"] = remember_operation(save.operation_url)
        payload["message"] += ". The update is still being applied; use 'get_operation_status' to track completion."
    return payload


def register_m_document_tools(app: FastMCP):
    """Registers M document tools with the MCP app."""
    logger.info("Registering M Document tools...")
    app.tool(name="validate_m_document")(validate_m_document_impl)
    app.tool(name="validate_and_save_m_document")(validate_and_save_m_document_impl)
    logger.info("M Document tools registration complete.")

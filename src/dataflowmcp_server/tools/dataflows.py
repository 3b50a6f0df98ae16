import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from fastmcp import FastMCP, Context
from fastmcp.exceptions import ToolError
from pydantic import Field

from ..arrow_reader import read_arrow_stream
from ..dataflow_definitions import decode_definition
from ..fabric_models import (
    CreateDataflowRequest, Dataflow, ExecuteDataflowQueryRequest,
    FabricApiException, FabricAuthException,
)
from ..m_document import parse_m_queries, wrap_for_dataflow_query
from ..query_report import ExecuteDataflowQueryResponse, create_arrow_data_report
from ..sessions import get_session_fabric_client
from .common import require_value, track_operation

logger = logging.getLogger(__name__)

ARROW_CONTENT_TYPE = "application/vnd.apache.arrow.stream"


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _api_error_text(e: Exception) -> str:
    if isinstance(e, FabricApiException) and e.response_text:
        return f"{e} - {e.response_text}"
    return str(e)


def format_dataflow_info(dataflow: Dataflow) -> Dict[str, Any]:
    return dataflow.model_dump(by_alias=True, exclude_none=True)


async def list_dataflows_impl(
    ctx: Context,
    workspace_id: str = Field(..., description="The workspace ID to list dataflows from."),
    continuation_token: Optional[str] = Field(None, description="A token for retrieving the next page of results.")
) -> Dict[str, Any]:
    """Returns a list of Dataflows from the specified workspace. This API supports pagination."""
    logger.info(f"Tool 'list_dataflows' called for workspace {workspace_id}.")
    require_value(workspace_id, "workspace_id")
    try:
        client = await get_session_fabric_client(ctx)
        response = await client.list_dataflows(workspace_id, continuation_token)
        logger.info(f"Found {len(response.value)} dataflows in workspace {workspace_id}.")
        return {
            "workspaceId": workspace_id,
            "dataflowCount": len(response.value),
            "continuationToken": response.continuation_token,
            "continuationUri": response.continuation_uri,
            "hasMoreResults": bool(response.continuation_token),
            "dataflows": [format_dataflow_info(d) for d in response.value],
        }
    except (FabricAuthException, FabricApiException) as e:
        raise ToolError(f"Failed to list dataflows: {_api_error_text(e)}") from e


async def create_dataflow_impl(
    ctx: Context,
    workspace_id: str = Field(..., description="The workspace ID where the dataflow will be created."),
    display_name: str = Field(..., description="The Dataflow display name."),
    description: Optional[str] = Field(None, description="The Dataflow description (max 256 characters)."),
    folder_id: Optional[str] = Field(None, description="The folder ID where the dataflow will be created. Defaults to the workspace root.")
) -> Dict[str, Any]:
    """Creates a Dataflow in the specified workspace. The workspace must be on a supported Fabric capacity."""
    logger.info(f"Tool 'create_dataflow' called to create '{display_name}' in workspace {workspace_id}.")
    require_value(workspace_id, "workspace_id")
    require_value(display_name, "display_name")
    if description and len(description) > 256:
        raise ToolError("description must be 256 characters or fewer")
    try:
        client = await get_session_fabric_client(ctx)
        payload = CreateDataflowRequest(display_name=display_name, description=description, folder_id=folder_id)
        response = await client.create_dataflow(workspace_id, payload)

        if isinstance(response, Dataflow):
            logger.info(f"Successfully created dataflow with ID: {response.id}")
            return {
                "success": True,
                "message": f"Dataflow '{display_name}' created successfully",
                "dataflowId": response.id,
                **format_dataflow_info(response),
                "createdAt": _utc_now(),
            }
        if isinstance(response, httpx.Response) and response.status_code == 202:
            return track_operation(response, f"Creation of dataflow '{display_name}' initiated.")

        raise ToolError(f"Unexpected response type from API: {type(response)}")

    except FabricApiException as e:
        if e.status_code == 403:
            raise ToolError(
                "Access denied or feature not available. The workspace must be on a supported Fabric "
                f"capacity to create dataflows. Details: {_api_error_text(e)}"
            ) from e
        raise ToolError(f"Failed to create dataflow: {_api_error_text(e)}") from e
    except FabricAuthException as e:
        raise ToolError(f"Failed to create dataflow: {e}") from e


async def get_dataflow_definition_impl(
    ctx: Context,
    workspace_id: str = Field(..., description="The workspace ID containing the dataflow."),
    dataflow_id: str = Field(..., description="The dataflow ID to get the definition for.")
) -> Dict[str, Any]:
    """Gets a dataflow's decoded definition: its M section document (mashup.pq), query metadata and platform metadata."""
    logger.info(f"Tool 'get_dataflow_definition' called for dataflow {dataflow_id} in workspace {workspace_id}.")
    require_value(workspace_id, "workspace_id")
    require_value(dataflow_id, "dataflow_id")
    try:
        client = await get_session_fabric_client(ctx)
        definition = await client.get_dataflow_definition(workspace_id, dataflow_id)
        decoded = decode_definition(definition)
        queries = parse_m_queries(decoded.mashup_query) if decoded.mashup_query else []
        return {
            "workspaceId": workspace_id,
            "dataflowId": dataflow_id,
            "mashupQuery": decoded.mashup_query,
            "queryMetadata": decoded.query_metadata,
            "platformMetadata": decoded.platform_metadata,
            "queries": [q.model_dump(by_alias=True) for q in queries],
            "partPaths": [part.path for part in decoded.raw_parts],
        }
    except (FabricAuthException, FabricApiException) as e:
        raise ToolError(f"Failed to get dataflow definition: {_api_error_text(e)}") from e


async def execute_dataflow_query_impl(
    ctx: Context,
    workspace_id: str = Field(..., description="The workspace ID containing the dataflow."),
    dataflow_id: str = Field(..., description="The dataflow ID to execute the query against."),
    query_name: str = Field(..., description="The name of the query to execute."),
    custom_mashup_document: str = Field(..., description="The M (Power Query) query to execute. Either a complete section document or a single M expression, which is wrapped as 'shared <query_name> = ...;'.")
) -> Dict[str, Any]:
    """
    Executes a query against a dataflow and returns the results decoded from Apache Arrow format
    as a table. This allows you to run M (Power Query) queries against data sources connected
    through the dataflow.
    """
    logger.info(f"Tool 'execute_dataflow_query' called for query '{query_name}' on dataflow {dataflow_id}.")
    require_value(workspace_id, "workspace_id")
    require_value(dataflow_id, "dataflow_id")
    require_value(query_name, "query_name")
    require_value(custom_mashup_document, "custom_mashup_document")
    try:
        client = await get_session_fabric_client(ctx)
        request = ExecuteDataflowQueryRequest(
            query_name=query_name,
            custom_mashup_document=wrap_for_dataflow_query(custom_mashup_document, query_name),
        )
        data = await client.execute_query(workspace_id, dataflow_id, request)
        summary = await read_arrow_stream(data)

        response = ExecuteDataflowQueryResponse(
            success=True,
            content_type=ARROW_CONTENT_TYPE,
            content_length=len(data),
            summary=summary,
            metadata={
                "executedAt": _utc_now(),
                "workspaceId": workspace_id,
                "dataflowId": dataflow_id,
                "queryName": query_name,
            },
        )
        return {
            "success": True,
            "message": f"Query '{query_name}' executed successfully on dataflow {dataflow_id}",
            **create_arrow_data_report(response),
        }
    except (FabricAuthException, FabricApiException) as e:
        logger.error(f"Error executing query '{query_name}' on dataflow {dataflow_id}: {e}")
        raise ToolError(f"Failed to execute query '{query_name}' on dataflow {dataflow_id}: {_api_error_text(e)}") from e


def register_dataflow_tools(app: FastMCP):
    """Registers dataflow-related tools with the MCP app."""
    logger.info("Registering Fabric Dataflow tools...")
    app.tool(name="list_dataflows")(list_dataflows_impl)
    app.tool(name="create_dataflow")(create_dataflow_impl)
    app.tool(name="get_dataflow_definition")(get_dataflow_definition_impl)
    app.tool(name="execute_dataflow_query")(execute_dataflow_query_impl)
    logger.info("Fabric Dataflow tools registration complete.")

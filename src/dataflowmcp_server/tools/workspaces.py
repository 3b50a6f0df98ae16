import logging
from typing import Optional, Dict, Any

from fastmcp import FastMCP, Context
from fastmcp.exceptions import ToolError
from pydantic import Field

from ..fabric_models import FabricApiException, FabricAuthException
from ..sessions import get_session_fabric_client, job_status_store

logger = logging.getLogger(__name__)


async def list_workspaces_impl(
    ctx: Context,
    continuation_token: Optional[str] = Field(None, description="A token for retrieving the next page of results.")
) -> Dict[str, Any]:
    """Lists the Fabric workspaces the authenticated principal can access. This API supports pagination."""
    logger.info("Tool 'list_workspaces' called.")
    try:
        client = await get_session_fabric_client(ctx)
        response = await client.list_workspaces(continuation_token)
        logger.info(f"Found {len(response.value)} workspaces.")
        return {
            "totalCount": len(response.value),
            "continuationToken": response.continuation_token,
            "hasMoreResults": bool(response.continuation_token),
            "workspaces": [w.model_dump(by_alias=True, exclude_none=True) for w in response.value],
        }
    except (FabricAuthException, FabricApiException) as e:
        raise ToolError(f"Failed to list workspaces: {e}") from e

async def get_operation_status_impl(
    ctx: Context,
    job_id: str = Field(..., description="The job ID returned from a long-running operation.")
) -> Dict[str, Any]:
    """Checks the status of a long-running operation (like dataflow creation or a definition update)."""
    logger.info(f"Tool 'get_operation_status' called for job ID {job_id}.")
    operation_url = job_status_store.get(job_id)
    if not operation_url:
        raise ToolError(f"Job ID '{job_id}' not found or has expired.")
    try:
        client = await get_session_fabric_client(ctx)
        response = await client.poll_lro_status(operation_url)
        poll_data = response.json()
        status = poll_data.get("status")

        if status in ("Succeeded", "Failed", "Canceled"):
            job_status_store.pop(job_id, None)

        return poll_data

    except (FabricAuthException, FabricApiException) as e:
        raise ToolError(f"Failed to get operation status for job {job_id}: {e}") from e
    except Exception as e:
        raise ToolError(f"An unexpected error occurred: {str(e)}") from e

def register_workspace_tools(app: FastMCP):
    logger.info("Registering Fabric Workspace tools...")
    app.tool(name="list_workspaces")(list_workspaces_impl)
    app.tool(name="get_operation_status")(get_operation_status_impl)
    logger.info("Fabric Workspace tools registration complete.")

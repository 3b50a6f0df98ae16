import logging
from typing import Any, Dict, Optional

from fastmcp import FastMCP, Context
from fastmcp.exceptions import ToolError
from pydantic import Field

from ..fabric_models import Connection, FabricApiException, FabricAuthException
from ..sessions import get_session_fabric_client
from .common import require_value

logger = logging.getLogger(__name__)


def format_connection_info(connection: Connection) -> Dict[str, Any]:
    # Connection type and path live under connectionDetails in the raw API response
    details = connection.connection_details
    credentials = connection.credential_details
    return {
        "id": connection.id,
        "displayName": connection.display_name,
        "connectionType": details.type if details else None,
        "connectionPath": details.path if details else None,
        "connectivityType": connection.connectivity_type,
        "credentialType": credentials.credential_type if credentials else None,
        "privacyLevel": connection.privacy_level,
        "allowGatewayUsage": connection.allow_connection_usage_in_gateway,
        "gatewayId": connection.gateway_id,
    }


async def list_connections_impl(
    ctx: Context,
    continuation_token: Optional[str] = Field(None, description="A token for retrieving the next page of results.")
) -> Dict[str, Any]:
    """
    Lists all connections accessible by the authenticated principal, providing comprehensive details for each.
    The list is tenant-wide but automatically scoped by the principal's permissions.
    """
    logger.info("Tool 'list_connections' called.")
    try:
        client = await get_session_fabric_client(ctx)
        response = await client.list_connections(continuation_token)
        return {
            "totalCount": len(response.value),
            "continuationToken": response.continuation_token,
            "hasMoreResults": bool(response.continuation_token),
            "connections": [format_connection_info(c) for c in response.value],
        }
    except (FabricAuthException, FabricApiException) as e:
        raise ToolError(f"Failed to list connections: {e.response_text if isinstance(e, FabricApiException) and e.response_text else e}") from e


async def get_connection_impl(
    ctx: Context,
    connection_id: str = Field(..., description="The ID of the connection to retrieve.")
) -> Dict[str, Any]:
    """Gets details about a specific connection by its ID."""
    logger.info(f"Tool 'get_connection' called for connection {connection_id}.")
    require_value(connection_id, "connection_id")
    try:
        client = await get_session_fabric_client(ctx)
        connection = await client.get_connection(connection_id)
        if not connection:
            raise ToolError(f"Connection with ID '{connection_id}' not found or you don't have permission to access it.")
        return format_connection_info(connection)
    except (FabricAuthException, FabricApiException) as e:
        raise ToolError(f"Failed to get connection: {e}") from e


def register_connection_tools(app: FastMCP):
    """Registers connection-related tools with the MCP app."""
    logger.info("Registering Fabric Connection tools...")
    app.tool(name="list_connections")(list_connections_impl)
    app.tool(name="get_connection")(get_connection_impl)
    logger.info("Fabric Connection tools registration complete.")

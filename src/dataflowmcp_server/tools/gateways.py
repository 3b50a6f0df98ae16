import logging
from typing import Any, Dict, Optional

from fastmcp import FastMCP, Context
from fastmcp.exceptions import ToolError
from pydantic import Field

from ..fabric_models import FabricApiException, FabricAuthException, Gateway
from ..sessions import get_session_fabric_client
from .common import require_value

logger = logging.getLogger(__name__)


def format_gateway_info(gateway: Gateway) -> Dict[str, Any]:
    """Flattens a gateway into the fields relevant for its type."""
    info = {"id": gateway.id, "type": gateway.type, "displayName": gateway.display_name}
    if gateway.type == "VirtualNetwork":
        info.update({
            "capacityId": gateway.capacity_id,
            "inactivityMinutesBeforeSleep": gateway.inactivity_minutes_before_sleep,
            "numberOfMemberGateways": gateway.number_of_member_gateways,
        })
    else:
        info.update({
            "version": gateway.version,
            "allowCloudConnectionRefresh": gateway.allow_cloud_connection_refresh,
            "allowCustomConnectors": gateway.allow_custom_connectors,
            "numberOfMemberGateways": gateway.number_of_member_gateways,
        })
    return {key: value for key, value in info.items() if value is not None}


async def list_gateways_impl(
    ctx: Context,
    continuation_token: Optional[str] = Field(None, description="A token for retrieving the next page of results.")
) -> Dict[str, Any]:
    """
    Lists all Microsoft Fabric gateways the user has permission for, including on-premises,
    on-premises (personal mode), and virtual network gateways.
    """
    logger.info("Tool 'list_gateways' called.")
    try:
        client = await get_session_fabric_client(ctx)
        response = await client.list_gateways(continuation_token)
        if not response.value:
            return {
                "totalCount": 0,
                "gateways": [],
                "message": "No gateways found. Make sure you have the required permissions (Gateway.Read.All or Gateway.ReadWrite.All).",
            }
        return {
            "totalCount": len(response.value),
            "continuationToken": response.continuation_token,
            "hasMoreResults": bool(response.continuation_token),
            "gateways": [format_gateway_info(g) for g in response.value],
        }
    except (FabricAuthException, FabricApiException) as e:
        raise ToolError(f"Failed to list gateways: {e.response_text if isinstance(e, FabricApiException) and e.response_text else e}") from e


async def get_gateway_impl(
    ctx: Context,
    gateway_id: str = Field(..., description="The ID of the gateway to retrieve.")
) -> Dict[str, Any]:
    """Gets details about a specific Microsoft Fabric gateway by its ID."""
    logger.info(f"Tool 'get_gateway' called for gateway {gateway_id}.")
    require_value(gateway_id, "gateway_id")
    try:
        client = await get_session_fabric_client(ctx)
        gateway = await client.get_gateway(gateway_id)
        if not gateway:
            raise ToolError(f"Gateway with ID '{gateway_id}' not found or you don't have permission to access it.")
        return format_gateway_info(gateway)
    except (FabricAuthException, FabricApiException) as e:
        raise ToolError(f"Failed to get gateway: {e}") from e


def register_gateway_tools(app: FastMCP):
    """Registers gateway-related tools with the MCP app."""
    logger.info("Registering Fabric Gateway tools...")
    app.tool(name="list_gateways")(list_gateways_impl)
    app.tool(name="get_gateway")(get_gateway_impl)
    logger.info("Fabric Gateway tools registration complete.")

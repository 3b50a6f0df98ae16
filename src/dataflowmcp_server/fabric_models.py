from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

# --- Custom Exceptions ---

NO_AUTHENTICATION_FOUND = "No valid authentication found. Please authenticate first."
AUTHENTICATION_EXPIRED = "Authentication token has expired. Please authenticate again."


class FabricAuthException(Exception):
    pass

class FabricApiException(Exception):
    def __init__(self, status_code: int, message: str, response_text: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.response_text = response_text

    def __str__(self):
        return f"Fabric API Error {self.status_code}: {self.message}"

# --- Paging ---

class PagedResponse(BaseModel):
    continuation_token: Optional[str] = Field(None, alias="continuationToken")
    continuation_uri: Optional[str] = Field(None, alias="continuationUri")
    model_config = {"populate_by_name": True}

# --- Workspaces ---

class Workspace(BaseModel):
    id: str
    display_name: Optional[str] = Field(None, alias="displayName")
    description: Optional[str] = None
    type: Optional[str] = None
    capacity_id: Optional[str] = Field(None, alias="capacityId")
    model_config = {"populate_by_name": True}

class ListWorkspacesResponse(PagedResponse):
    value: List[Workspace] = Field(default_factory=list)

# --- Gateways ---

class Gateway(BaseModel):
    """A Fabric gateway. Fields vary by gateway type, extras are kept."""
    id: str
    type: Optional[str] = None
    display_name: Optional[str] = Field(None, alias="displayName")
    version: Optional[str] = None
    allow_cloud_connection_refresh: Optional[bool] = Field(None, alias="allowCloudConnectionRefresh")
    allow_custom_connectors: Optional[bool] = Field(None, alias="allowCustomConnectors")
    number_of_member_gateways: Optional[int] = Field(None, alias="numberOfMemberGateways")
    capacity_id: Optional[str] = Field(None, alias="capacityId")
    inactivity_minutes_before_sleep: Optional[int] = Field(None, alias="inactivityMinutesBeforeSleep")
    model_config = {"populate_by_name": True, "extra": "allow"}

class ListGatewaysResponse(PagedResponse):
    value: List[Gateway] = Field(default_factory=list)

# --- Connections ---

class ConnectionDetails(BaseModel):
    type: Optional[str] = None
    path: Optional[str] = None

class CredentialDetails(BaseModel):
    credential_type: Optional[str] = Field(None, alias="credentialType")
    single_sign_on_type: Optional[str] = Field(None, alias="singleSignOnType")
    connection_encryption: Optional[str] = Field(None, alias="connectionEncryption")
    skip_test_connection: Optional[bool] = Field(None, alias="skipTestConnection")
    model_config = {"populate_by_name": True}

class Connection(BaseModel):
    """Represents the comprehensive details of a Fabric connection."""
    id: str
    display_name: Optional[str] = Field(None, alias="displayName")
    connectivity_type: Optional[str] = Field(None, alias="connectivityType")
    connection_details: Optional[ConnectionDetails] = Field(None, alias="connectionDetails")
    credential_details: Optional[CredentialDetails] = Field(None, alias="credentialDetails")
    privacy_level: Optional[str] = Field(None, alias="privacyLevel")
    allow_connection_usage_in_gateway: Optional[bool] = Field(None, alias="allowConnectionUsageInGateway")
    gateway_id: Optional[str] = Field(None, alias="gatewayId")
    model_config = {"populate_by_name": True}

class ListConnectionsResponse(PagedResponse):
    value: List[Connection] = Field(default_factory=list)

# --- Dataflows ---

class Dataflow(BaseModel):
    id: str
    display_name: Optional[str] = Field(None, alias="displayName")
    description: Optional[str] = None
    type: Optional[str] = None
    workspace_id: Optional[str] = Field(None, alias="workspaceId")
    folder_id: Optional[str] = Field(None, alias="folderId")
    model_config = {"populate_by_name": True}

class ListDataflowsResponse(PagedResponse):
    value: List[Dataflow] = Field(default_factory=list)

class CreateDataflowRequest(BaseModel):
    display_name: str = Field(..., alias="displayName", min_length=1)
    description: Optional[str] = Field(None, max_length=256)
    folder_id: Optional[str] = Field(None, alias="folderId")
    model_config = {"populate_by_name": True}

class DefinitionPart(BaseModel):
    path: str
    payload: str
    payload_type: str = Field("InlineBase64", alias="payloadType")
    model_config = {"populate_by_name": True}

class DataflowDefinition(BaseModel):
    parts: List[DefinitionPart] = Field(default_factory=list)

class DecodedDataflowDefinition(BaseModel):
    """Decoded view of a dataflow definition's parts."""
    query_metadata: Optional[Dict[str, Any]] = Field(None, alias="queryMetadata")
    mashup_query: Optional[str] = Field(None, alias="mashupQuery")
    platform_metadata: Optional[Dict[str, Any]] = Field(None, alias="platformMetadata")
    raw_parts: List[DefinitionPart] = Field(default_factory=list, alias="rawParts")
    model_config = {"populate_by_name": True}

class SaveResult(BaseModel):
    success: bool
    workspace_id: str = Field(..., alias="workspaceId")
    dataflow_id: str = Field(..., alias="dataflowId")
    error_message: Optional[str] = Field(None, alias="errorMessage")
    operation_url: Optional[str] = Field(None, alias="operationUrl")
    model_config = {"populate_by_name": True}

# --- Query execution ---

class ExecuteDataflowQueryRequest(BaseModel):
    # The executeQuery endpoint expects a capitalized QueryName key.
    query_name: str = Field(..., alias="QueryName", min_length=1)
    custom_mashup_document: str = Field(..., alias="customMashupDocument", min_length=1)
    model_config = {"populate_by_name": True}

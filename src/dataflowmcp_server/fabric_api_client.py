import asyncio
import httpx
import logging
import json
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type, TypeVar, Union
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import CredentialUnavailableError
from azure.identity.aio import DefaultAzureCredential
from pydantic import BaseModel, ValidationError

from .dataflow_definitions import apply_mashup_document
from .fabric_models import (
    AUTHENTICATION_EXPIRED, NO_AUTHENTICATION_FOUND,
    FabricApiException, FabricAuthException,
    Connection, CreateDataflowRequest, Dataflow, DataflowDefinition, ExecuteDataflowQueryRequest,
    Gateway, ListConnectionsResponse, ListDataflowsResponse, ListGatewaysResponse, ListWorkspacesResponse,
    SaveResult,
)

logger = logging.getLogger(__name__)
ResponseType = TypeVar("ResponseType", bound=BaseModel)

FABRIC_SCOPE = "https://api.fabric.microsoft.com/.default"
LRO_MAX_POLLS = 30
LRO_DEFAULT_DELAY = 2.0

def retry_after_seconds(headers: httpx.Headers, default: float) -> float:
    """Reads Retry-After as delta-seconds or an HTTP-date; falls back to `default`."""
    value = headers.get("Retry-After")
    if not value:
        return default
    if value.strip().replace(".", "", 1).isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring unparseable Retry-After header: {value!r}")
        return default
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())

class FabricApiClient:
    def __init__(self, base_url: str, credential: DefaultAzureCredential, timeout: float = 300.0):
        self._base_url = base_url.rstrip('/')
        self._credential = credential
        self._httpx_client = httpx.AsyncClient(
            headers={"User-Agent": "DataflowMCP-Server/0.1.0"},
            timeout=timeout
        )

    @classmethod
    async def create(cls, base_url: str, timeout: float = 300.0) -> "FabricApiClient":
        logger.info("Initializing FabricApiClient with DefaultAzureCredential.")
        try:
            credential = DefaultAzureCredential()
            return cls(base_url, credential, timeout)
        except Exception as e:
            raise FabricAuthException(f"Failed to set up Azure credentials: {e}") from e

    async def close(self):
        await self._credential.close()
        if self._httpx_client and not self._httpx_client.is_closed:
            await self._httpx_client.aclose()
        logger.debug("Fabric API client and credentials closed.")

    async def _get_auth_header(self, scope: str = FABRIC_SCOPE) -> Dict[str, str]:
        """Gets an auth token for the specified API scope."""
        try:
            token_object = await self._credential.get_token(scope)
        except CredentialUnavailableError as e:
            raise FabricAuthException(f"{NO_AUTHENTICATION_FOUND} {e}") from e
        except ClientAuthenticationError as e:
            raise FabricAuthException(f"Failed to acquire access token for scope {scope}: {e}") from e
        if not token_object or not token_object.token:
            raise FabricAuthException(NO_AUTHENTICATION_FOUND)
        if token_object.expires_on <= time.time():
            raise FabricAuthException(AUTHENTICATION_EXPIRED)
        return {"Authorization": f"Bearer {token_object.token}"}

    def _url(self, path: str) -> str:
        return f"{self._base_url}/v1/{path.lstrip('/')}"

    async def _make_request(
        self, method: str, url: str, params: Optional[Dict] = None, json_body: Optional[Any] = None,
        response_model: Optional[Type[ResponseType]] = None, headers: Optional[Dict] = None,
        allow_404: bool = False, unwrap_value: bool = True, raw_response: bool = False
    ) -> Union[ResponseType, List[ResponseType], httpx.Response, Dict[str, Any], None]:

        json_payload = json_body.model_dump(by_alias=True, exclude_none=True) if isinstance(json_body, BaseModel) else json_body

        logger.info(f"API request: {method} {url}")
        if json_payload: logger.debug(f"BODY:\n{json.dumps(json_payload, indent=2)}")

        try:
            response = await self._httpx_client.request(
                method, url, params=params, json=json_payload, headers=headers
            )
            if response.status_code == 202: return response
            if 200 <= response.status_code < 300:
                if raw_response or response.status_code == 204 or not response.content: return response
                response_json = response.json()
                data_to_validate = response_json.get("value", response_json) if unwrap_value and isinstance(response_json, dict) else response_json
                if response_model:
                    if isinstance(data_to_validate, list):
                        return [response_model.model_validate(item) for item in data_to_validate]
                    return response_model.model_validate(data_to_validate)
                return response_json
            elif response.status_code == 404 and allow_404: return None
            else: response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise FabricApiException(e.response.status_code, "API request failed", e.response.text) from e
        except (ValidationError, json.JSONDecodeError) as e:
            raise FabricApiException(0, f"Failed to validate or decode API response: {e}. Raw: {response.text if 'response' in locals() else 'N/A'}")
        except httpx.RequestError as e:
            raise FabricApiException(0, f"HTTP request error: {e}")
        return None

    @staticmethod
    def _paging(continuation_token: Optional[str]) -> Optional[Dict[str, str]]:
        return {"continuationToken": continuation_token} if continuation_token else None

    # --- Workspaces ---
    async def list_workspaces(self, continuation_token: Optional[str] = None) -> ListWorkspacesResponse:
        headers = await self._get_auth_header()
        result = await self._make_request(
            "GET", self._url("workspaces"), params=self._paging(continuation_token), headers=headers,
            response_model=ListWorkspacesResponse, unwrap_value=False
        )
        return result or ListWorkspacesResponse()

    # --- Gateways ---
    async def list_gateways(self, continuation_token: Optional[str] = None) -> ListGatewaysResponse:
        headers = await self._get_auth_header()
        result = await self._make_request(
            "GET", self._url("gateways"), params=self._paging(continuation_token), headers=headers,
            response_model=ListGatewaysResponse, unwrap_value=False
        )
        return result or ListGatewaysResponse()

    async def get_gateway(self, gateway_id: str) -> Optional[Gateway]:
        headers = await self._get_auth_header()
        return await self._make_request("GET", self._url(f"gateways/{gateway_id}"), headers=headers, response_model=Gateway, allow_404=True)

    # --- Connections ---
    async def list_connections(self, continuation_token: Optional[str] = None) -> ListConnectionsResponse:
        headers = await self._get_auth_header()
        result = await self._make_request(
            "GET", self._url("connections"), params=self._paging(continuation_token), headers=headers,
            response_model=ListConnectionsResponse, unwrap_value=False
        )
        return result or ListConnectionsResponse()

    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        headers = await self._get_auth_header()
        return await self._make_request("GET", self._url(f"connections/{connection_id}"), headers=headers, response_model=Connection, allow_404=True)

    # --- Dataflows ---
    async def list_dataflows(self, workspace_id: str, continuation_token: Optional[str] = None) -> ListDataflowsResponse:
        headers = await self._get_auth_header()
        logger.info(f"Fetching dataflows from workspace {workspace_id}")
        result = await self._make_request(
            "GET", self._url(f"workspaces/{workspace_id}/dataflows"), params=self._paging(continuation_token),
            headers=headers, response_model=ListDataflowsResponse, unwrap_value=False
        )
        return result or ListDataflowsResponse()

    async def create_dataflow(self, workspace_id: str, payload: CreateDataflowRequest) -> Union[Dataflow, httpx.Response, None]:
        headers = await self._get_auth_header()
        return await self._make_request(
            "POST", self._url(f"workspaces/{workspace_id}/dataflows"), json_body=payload, headers=headers, response_model=Dataflow
        )

    async def get_dataflow_definition(self, workspace_id: str, dataflow_id: str) -> DataflowDefinition:
        headers = await self._get_auth_header()
        response = await self._make_request(
            "POST", self._url(f"workspaces/{workspace_id}/items/{dataflow_id}/getDefinition"), json_body={}, headers=headers
        )
        if isinstance(response, httpx.Response):
            if response.status_code != 202:
                raise FabricApiException(response.status_code, "getDefinition returned no content", response.text)
            response = await self.wait_for_operation_result(response)
        if not isinstance(response, dict) or "definition" not in response:
            raise FabricApiException(0, "Failed to get dataflow definition response")
        return DataflowDefinition.model_validate(response["definition"])

    async def update_dataflow_definition(self, workspace_id: str, dataflow_id: str, definition: DataflowDefinition) -> httpx.Response:
        headers = await self._get_auth_header()
        logger.info(f"Updating dataflow definition for {dataflow_id}")
        return await self._make_request(
            "POST", self._url(f"workspaces/{workspace_id}/items/{dataflow_id}/updateDefinition"),
            json_body={"definition": definition.model_dump(by_alias=True, exclude_none=True)}, headers=headers, raw_response=True
        )

    async def execute_query(self, workspace_id: str, dataflow_id: str, request: ExecuteDataflowQueryRequest) -> bytes:
        """Executes a query against a dataflow and returns the raw Apache Arrow stream."""
        headers = await self._get_auth_header()
        logger.info(f"Executing query '{request.query_name}' on dataflow {dataflow_id} in workspace {workspace_id}")
        response = await self._make_request(
            "POST", self._url(f"workspaces/{workspace_id}/dataflows/{dataflow_id}/executeQuery"),
            json_body=request, headers=headers, raw_response=True
        )
        if not isinstance(response, httpx.Response) or response.status_code == 202:
            raise FabricApiException(getattr(response, "status_code", 0), "executeQuery did not return result data")
        logger.info(f"Query '{request.query_name}' returned {len(response.content)} bytes")
        return response.content

    async def sync_mashup_document(
        self, workspace_id: str, dataflow_id: str, document: str,
        queries: Sequence[Tuple[str, str, Optional[str]]]
    ) -> SaveResult:
        """
        Replaces the dataflow's mashup.pq with `document` and rewrites queryMetadata.json
        to match `queries`. The document is treated as the complete desired state.
        """
        try:
            current = await self.get_dataflow_definition(workspace_id, dataflow_id)
            updated = apply_mashup_document(current, document, list(queries))
            response = await self.update_dataflow_definition(workspace_id, dataflow_id, updated)
        except (FabricAuthException, FabricApiException) as e:
            logger.error(f"Failed to sync M document to dataflow {dataflow_id}: {e}")
            message = e.response_text if isinstance(e, FabricApiException) and e.response_text else str(e)
            return SaveResult(success=False, workspace_id=workspace_id, dataflow_id=dataflow_id, error_message=message)

        operation_url = None
        if response.status_code == 202:
            operation_url = response.headers.get("Location") or response.headers.get("Operation-Location")
        logger.info(f"Synced {len(queries)} queries to dataflow {dataflow_id} (HTTP {response.status_code})")
        return SaveResult(success=True, workspace_id=workspace_id, dataflow_id=dataflow_id, operation_url=operation_url)

    # --- Long-running operations ---
    async def poll_lro_status(self, operation_url: str) -> httpx.Response:
        headers = await self._get_auth_header()
        response = await self._httpx_client.get(operation_url, headers=headers)
        response.raise_for_status()
        return response

    async def wait_for_operation_result(self, accepted: httpx.Response) -> Dict[str, Any]:
        """Polls a 202 operation until it finishes and returns its result payload."""
        operation_url = accepted.headers.get("Location") or accepted.headers.get("Operation-Location")
        if not operation_url:
            raise FabricApiException(202, "API accepted the request but did not provide a status location URL.")

        delay = retry_after_seconds(accepted.headers, LRO_DEFAULT_DELAY)
        try:
            for _ in range(LRO_MAX_POLLS):
                await asyncio.sleep(delay)
                poll = await self.poll_lro_status(operation_url)
                status = poll.json().get("status")
                if status == "Succeeded":
                    headers = await self._get_auth_header()
                    result = await self._httpx_client.get(f"{operation_url.rstrip('/')}/result", headers=headers)
                    result.raise_for_status()
                    return result.json()
                if status in ("Failed", "Canceled"):
                    raise FabricApiException(0, f"Operation {status.lower()}", poll.text)
                delay = retry_after_seconds(poll.headers, delay)
        except httpx.HTTPStatusError as e:
            raise FabricApiException(e.response.status_code, "Operation polling failed", e.response.text) from e
        except json.JSONDecodeError as e:
            raise FabricApiException(0, f"Operation returned an undecodable response: {e}") from e
        except httpx.RequestError as e:
            raise FabricApiException(0, f"HTTP request error: {e}")
        raise FabricApiException(0, f"Operation did not complete after {LRO_MAX_POLLS} polls")

import time
from typing import Callable, List, Optional

import httpx
import pyarrow as pa
import pytest
from azure.core.credentials import AccessToken

from dataflowmcp_server.fabric_api_client import FabricApiClient


class FakeCredential:
    """Stands in for DefaultAzureCredential; hands out a fixed token."""

    def __init__(self, token: str = "test-token", expires_in: int = 3600):
        self.token = token
        self.expires_in = expires_in
        self.closed = False

    async def get_token(self, *scopes, **kwargs) -> AccessToken:
        return AccessToken(self.token, int(time.time()) + self.expires_in)

    async def close(self):
        self.closed = True


def build_arrow_stream(batches: List[pa.RecordBatch], schema: Optional[pa.Schema] = None) -> bytes:
    schema = schema or batches[0].schema
    sink = pa.BufferOutputStream()
    with pa.ipc.new_stream(sink, schema) as writer:
        for batch in batches:
            writer.write_batch(batch)
    return sink.getvalue().to_pybytes()


@pytest.fixture
def fake_credential() -> type:
    return FakeCredential


@pytest.fixture
def arrow_stream() -> Callable[..., bytes]:
    return build_arrow_stream


@pytest.fixture
def make_client():
    """Builds a FabricApiClient whose HTTP traffic goes to `handler`."""
    def _make(handler, credential: Optional[FakeCredential] = None) -> FabricApiClient:
        client = FabricApiClient("https://fabric.test", credential or FakeCredential())
        client._httpx_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return client

    return _make

import os
from typing import AsyncGenerator

import dotenv
import pytest
import pytest_asyncio

from dataflowmcp_server.fabric_api_client import FabricApiClient

dotenv.load_dotenv()


def _require_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        pytest.skip(f"{name} is not set; live Fabric API tests are skipped.")
    return value


@pytest_asyncio.fixture(scope="function")
async def fabric_client() -> AsyncGenerator[FabricApiClient, None]:
    """Fresh client per test so each test owns its event loop and credential."""
    base_url = os.getenv("FABRIC_API_BASE_URL", "https://api.fabric.microsoft.com")
    client = await FabricApiClient.create(base_url)
    try:
        yield client
    finally:
        await client.close()


@pytest.fixture(scope="session")
def workspace_id() -> str:
    return _require_env("FABRIC_WORKSPACE_ID")


@pytest.fixture(scope="session")
def dataflow_id() -> str:
    return _require_env("FABRIC_DATAFLOW_ID")

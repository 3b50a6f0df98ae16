from __future__ import annotations

import argparse
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator

import dotenv
import uvicorn
from fastmcp import FastMCP

from .sessions import close_all_clients

dotenv.load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
log_format = '%(asctime)s %(levelname)-8s %(name)s | %(message)s'
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format=log_format, stream=sys.stderr, force=True)
logger = logging.getLogger("dataflowmcp_server.app")

@asynccontextmanager
async def app_lifespan(app: FastMCP) -> AsyncIterator[None]:
    logger.info("DataflowMCP Server starting up.")
    yield
    closed = await close_all_clients()
    logger.info(f"DataflowMCP Server shut down. Closed {closed} clients.")

mcp_app = FastMCP(
    name="DataflowMCP Server",
    instructions=(
        "This server exposes tools for Microsoft Fabric Dataflows: gateways, connections, "
        "dataflow management, M section document validation and saving, and M query execution."
    ),
    lifespan=app_lifespan,
)

def register_tools() -> None:
    logger.info("Registering tools...")
    from .tools import connections, dataflows, gateways, m_documents, workspaces
    workspaces.register_workspace_tools(mcp_app)
    gateways.register_gateway_tools(mcp_app)
    connections.register_connection_tools(mcp_app)
    dataflows.register_dataflow_tools(mcp_app)
    m_documents.register_m_document_tools(mcp_app)
    logger.info("Successfully registered all tools.")

def main() -> None:
    parser = argparse.ArgumentParser(description="Run DataflowMCP Server.")
    parser.add_argument("--transport", choices=["http", "stdio"], default="http", help="MCP transport to serve.")
    parser.add_argument("--port", type=int, default=8081, help="Port to listen on.")
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Host to bind to.")
    args = parser.parse_args()

    register_tools()
    if args.transport == "stdio":
        logger.info("Starting MCP server over stdio...")
        mcp_app.run(transport="stdio")
        return

    logger.info(f"Starting MCP server via HTTP on {args.host}:{args.port}...")
    uvicorn.run(mcp_app.http_app(), host=args.host, port=args.port)

if __name__ == "__main__":
    main()

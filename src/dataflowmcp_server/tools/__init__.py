"""
DataflowMCP Server Tools Package

This package contains MCP (Model Context Protocol) tools for working with Microsoft Fabric Dataflows.

Modules:
- workspaces: Workspace listing and long-running operation status
- gateways: Gateway listing and details
- connections: Connection listing and details
- dataflows: Dataflow listing, creation, definitions, and M query execution
- m_documents: M section document validation and saving
- common: Argument checks and operation tracking shared by the tools
"""

__all__ = [
    "workspaces",
    "gateways",
    "connections",
    "dataflows",
    "m_documents",
    "common",
]

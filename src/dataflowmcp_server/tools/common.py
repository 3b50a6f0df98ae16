import uuid
from typing import Any, Dict, Optional

import httpx
from fastmcp.exceptions import ToolError

from ..sessions import job_status_store


def require_value(value: Optional[str], name: str) -> str:
    """Raises ToolError when a required string argument is missing or blank."""
    if value is None or not str(value).strip():
        raise ToolError(f"{name} is required")
    return value


def remember_operation(operation_url: str) -> str:
    """Stores an operation status URL under a new job id for get_operation_status."""
    job_id = str(uuid.uuid4())
    job_status_store[job_id] = operation_url
    return job_id


def track_operation(response: httpx.Response, message: str) -> Dict[str, Any]:
    """Stores the status URL of a 202 response and returns a job handle for get_operation_status."""
    operation_url = response.headers.get("Location") or response.headers.get("Operation-Location")
    if not operation_url:
        return {"status": "Accepted (Untrackable)", "message": message}

    job_id = remember_operation(operation_url)
    return {"status": "Accepted", "jobId": job_id, "message": f"{message} Use 'get_operation_status' to check progress."}

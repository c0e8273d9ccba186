"""Response envelope shared by every gateway endpoint.

Shape::

    {"success": bool, "data"?: ..., "error"?: str, "timestamp": ISO-8601, "requestId": str}

Every response carries the correlation id in ``X-Correlation-ID``.
Failures expose only the error class's public message; 429 and retryable
503 responses add a ``Retry-After`` header.
"""

from typing import Any, Dict, Optional

from starlette.responses import JSONResponse

from smcp_gateway.constants import CORRELATION_HEADER
from smcp_gateway.errors import GatewayError
from smcp_gateway.tenants.models import utcnow


def envelope(
    success: bool,
    *,
    data: Any = None,
    error: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": success}
    if data is not None:
        body["data"] = data
    if error is not None:
        body["error"] = error
    body["timestamp"] = utcnow().isoformat().replace("+00:00", "Z")
    if request_id:
        body["requestId"] = request_id
    return body


def api_response(data: Any, correlation_id: str, status_code: int = 200) -> JSONResponse:
    """Successful response wrapping *data*."""
    return JSONResponse(
        envelope(True, data=data, request_id=correlation_id),
        status_code=status_code,
        headers={CORRELATION_HEADER: correlation_id},
    )


def error_response(exc: GatewayError, correlation_id: str) -> JSONResponse:
    """Failure response for a classified error.  ``exc.detail`` never leaves the process."""
    headers = {CORRELATION_HEADER: correlation_id}
    if exc.retryable or exc.status_code == 429:
        headers["Retry-After"] = str(exc.retry_after or 1)
    return JSONResponse(
        envelope(False, error=exc.public_message, request_id=correlation_id),
        status_code=exc.status_code,
        headers=headers,
    )

import logging
from typing import Mapping, Optional

from fastapi.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

# Transport-level headers that must not be copied from an upstream response
SKIPPED_UPSTREAM_HEADERS = frozenset(
    {"content-length", "content-encoding", "transfer-encoding", "connection", "content-type"}
)


def error_response(message: str, err_type: str, status_code: int, code: Optional[int] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": message,
                "type": err_type,
                "code": code if code is not None else status_code,
            }
        },
    )


def forward_upstream_error(status_code: int, headers: Mapping[str, str], body: bytes, request_id: str = "-") -> Response:
    """Relay a provider error (status >= 400) to the caller without translating it."""
    logger.warning(
        f"[{request_id}] Upstream error response: status={status_code} body={body[:500].decode('utf-8', errors='replace')}",
        extra={"status_code": status_code},
    )
    forwarded = {k: v for k, v in headers.items() if k.lower() not in SKIPPED_UPSTREAM_HEADERS}
    return Response(
        content=body,
        status_code=status_code,
        headers=forwarded,
        media_type="application/json",
    )


def bad_gateway(err: Exception, request_id: str = "-", stage: str = "forward request") -> JSONResponse:
    """Network-level failure talking to the provider (DNS, connect, timeout)."""
    logger.error(
        f"[{request_id}] Upstream transport error during '{stage}': {type(err).__name__}: {err}",
        extra={"error_type": type(err).__name__, "stage": stage},
    )
    return error_response("Error forwarding request", "bad_gateway", 502)


def internal_error(err: Exception, request_id: str = "-", stage: str = "") -> JSONResponse:
    """Map unexpected exceptions to 500 error with detailed logging."""
    logger.error(
        f"[{request_id}] Internal error during '{stage}': {type(err).__name__}: {err}",
        exc_info=True,
        extra={
            "error_type": type(err).__name__,
            "error_message": str(err),
            "stage": stage,
        },
    )

    # Avoid leaking internal details to client
    return error_response("Internal server error", "internal_error", 500)

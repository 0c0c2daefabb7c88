"""Unary (non-streaming) upstream response handling."""

import logging
import uuid
from typing import Callable, Optional

import httpx
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from .decompress import DecompressionError, decompress_body
from .errors import bad_gateway, error_response, internal_error
from .openai_models import ChatCompletion

logger = logging.getLogger(__name__)

# Parses a decoded upstream body into the OpenAI-compatible completion
CompletionTranslator = Callable[[bytes], ChatCompletion]


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


async def read_raw_body(upstream: httpx.Response) -> bytes:
    """Read the still-encoded body of a streamed httpx response and close it."""
    try:
        return b"".join([chunk async for chunk in upstream.aiter_raw()])
    finally:
        await upstream.aclose()


def render_unary_response(
    status_code: int,
    content_encoding: Optional[str],
    raw_body: bytes,
    translate: CompletionTranslator,
    request_id: str = "-",
) -> Response:
    """
    Decompress, parse and re-encode a completed upstream body.

    The status code mirrors upstream. Any decoding or parsing failure is a 500
    with a generic message; details only go to the log.
    """
    try:
        body = decompress_body(raw_body, content_encoding)
    except DecompressionError as e:
        return internal_error(e, request_id, stage="decompress upstream response")

    try:
        completion = translate(body)
    except (ValidationError, ValueError) as e:
        preview = body[:500].decode("utf-8", errors="replace")
        logger.error(f"[{request_id}] Error parsing upstream response: {e}; body={preview!r}")
        return error_response("Internal server error", "internal_error", 500)

    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("[%s] Modified response body: %s", request_id, completion.model_dump_json(exclude_none=True))

    return JSONResponse(status_code=status_code, content=completion.model_dump(exclude_none=True))


async def handle_unary_response(
    upstream: httpx.Response,
    translate: CompletionTranslator,
    request_id: str = "-",
) -> Response:
    try:
        raw = await read_raw_body(upstream)
    except httpx.HTTPError as e:
        return bad_gateway(e, request_id, stage="read upstream response")
    return render_unary_response(
        upstream.status_code,
        upstream.headers.get("content-encoding"),
        raw,
        translate,
        request_id,
    )

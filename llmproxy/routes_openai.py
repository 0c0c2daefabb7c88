import logging
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from .backends.base import Backend, request_id_of
from .backends.factory import build_backend
from .config import extract_bearer_token, get_settings
from .errors import error_response, internal_error
from .openai_models import ChatCompletionsRequest, ModelList

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_backend(req: Request) -> Backend:
    backend = getattr(req.app.state, "backend", None)
    if backend is None:
        backend = build_backend(getattr(req.app.state, "settings", None))
        req.app.state.backend = backend
    return backend


def _auth_guard(req: Request, backend: Backend) -> Optional[JSONResponse]:
    if not backend.requires_api_key:
        return None
    token = extract_bearer_token(req.headers.get("authorization"))
    if not token:
        logger.warning(f"[{request_id_of(req)}] No API key provided")
        return error_response("Missing API key", "authentication_error", 401)
    if not backend.validate_api_key(token):
        logger.warning(f"[{request_id_of(req)}] Invalid API key provided")
        return error_response("Invalid API key", "permission_error", 403)
    return None


@router.get("/v1/models", response_model=ModelList)
async def list_models(request: Request):
    backend = _get_backend(request)
    if (resp := _auth_guard(request, backend)) is not None:
        return resp

    try:
        models = await backend.list_models()
    except Exception as e:
        return internal_error(e, request_id_of(request), stage="list models")
    return ModelList(object="list", data=models)


@router.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    backend = _get_backend(request)
    if (resp := _auth_guard(request, backend)) is not None:
        return resp

    # Parsed after auth so unauthenticated callers never get schema feedback
    raw = await request.body()
    try:
        body = ChatCompletionsRequest.model_validate_json(raw)
    except ValidationError as e:
        preview = raw.decode("utf-8", errors="replace")
        max_len = get_settings().LOG_REQUEST_BODY_MAX_LENGTH
        if len(preview) > max_len:
            preview = preview[:max_len] + "...(truncated)"
        logger.warning(
            "[%s] Invalid chat completion request: errors=%s body=%s",
            request_id_of(request),
            e.errors(include_url=False),
            preview,
        )
        return error_response(f"Invalid request: {e.error_count()} validation error(s)", "invalid_request_error", 400)

    logger.debug(
        "[%s] Chat completion: model=%s messages=%d stream=%s",
        request_id_of(request),
        body.model,
        len(body.messages),
        bool(body.stream),
    )
    # The backend writes every outcome itself, errors included
    return await backend.handle_chat_completion(request, body)

"""Backend contract shared by all providers, plus the HTTP plumbing they have in common."""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

import httpx
from fastapi import Request
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from ..decompress import DecompressionError, decompress_body, iter_decompressed
from ..errors import bad_gateway, forward_upstream_error, internal_error
from ..openai_models import ChatCompletion, ChatCompletionsRequest, ModelData
from ..responses import handle_unary_response, new_completion_id
from ..streaming import (
    HEARTBEAT_INTERVAL,
    STREAM_HEADERS,
    StreamRelay,
    StreamTranslator,
    iter_line_frames,
    iter_lines,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DISCONNECT_POLL_INTERVAL = 0.25
# nginx status for a client that went away before the response
CLIENT_CLOSED_REQUEST = 499


class BackendOptions(BaseModel):
    """Immutable per-backend configuration, fixed at construction."""
    model_config = ConfigDict(frozen=True)

    endpoint: str
    api_key: Optional[str] = None
    default_model: str
    models: Dict[str, str] = Field(default_factory=dict)
    timeout: float = DEFAULT_TIMEOUT


def request_id_of(request: Request) -> str:
    return getattr(request.state, "request_id", None) or "-"


class Backend(ABC):
    """
    A chat-completion provider behind the OpenAI-compatible surface.

    ``handle_chat_completion`` owns every failure: it always returns the
    complete response for the caller (completion, event stream or error body),
    so routes never need a fallback error of their own.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Stable provider identifier, used for logging and ``owned_by``."""

    @abstractmethod
    async def handle_chat_completion(self, request: Request, body: ChatCompletionsRequest) -> Response:
        """Serve one chat completion, unary or streamed."""

    @abstractmethod
    async def list_models(self) -> List[ModelData]:
        """Model ids this backend can serve."""

    @property
    @abstractmethod
    def requires_api_key(self) -> bool:
        """False when the backend was explicitly configured for anonymous access."""

    @abstractmethod
    def validate_api_key(self, candidate: Optional[str]) -> bool:
        """Constant-time check of a caller's bearer token."""

    async def close(self) -> None:
        """Release network resources."""


class HTTPBackend(Backend):
    """
    Template for providers reached over HTTP with a JSON body.

    Subclasses build the provider request and translate its responses; this
    class does the upstream call, error forwarding, and routes the result to the
    unary handler or the stream relay.
    """

    def __init__(
        self,
        options: BackendOptions,
        key_validator,
        client: Optional[httpx.AsyncClient] = None,
        id_factory: Callable[[], str] = new_completion_id,
        clock: Callable[[], float] = time.time,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        disconnect_poll_interval: float = DISCONNECT_POLL_INTERVAL,
    ):
        self.options = options
        self.endpoint = options.endpoint.rstrip("/")
        self._key_validator = key_validator
        self.id_factory = id_factory
        self.clock = clock
        self.heartbeat_interval = heartbeat_interval
        self.disconnect_poll_interval = disconnect_poll_interval
        self.client = client or httpx.AsyncClient(
            headers={
                "Accept-Encoding": "gzip, deflate, br",
                "Content-Type": "application/json",
            },
        )

    # Provider-specific hooks

    @property
    @abstractmethod
    def chat_url(self) -> str:
        ...

    @abstractmethod
    def build_payload(self, body: ChatCompletionsRequest, upstream_model: str) -> BaseModel:
        """Build the provider request body."""

    @abstractmethod
    def translate_completion(self, raw: bytes, original_model: str) -> ChatCompletion:
        """Parse a decoded unary provider body into an OpenAI completion."""

    @abstractmethod
    def stream_translator(self, original_model: str, response_id: str, created: int) -> StreamTranslator:
        ...

    def stream_frames(self, lines):
        return iter_line_frames(lines)

    def extra_headers(self) -> Dict[str, str]:
        return {}

    # Backend contract

    @property
    def requires_api_key(self) -> bool:
        return self._key_validator.requires_key

    def validate_api_key(self, candidate: Optional[str]) -> bool:
        return self._key_validator.validate(candidate)

    def resolve_model(self, requested: str) -> str:
        return self.options.models.get(requested, self.options.default_model)

    async def list_models(self) -> List[ModelData]:
        created = int(self.clock())
        ids = list(self.options.models) or [self.options.default_model]
        return [ModelData(id=model_id, created=created, owned_by=self.name) for model_id in ids]

    async def close(self) -> None:
        await self.client.aclose()

    def upstream_headers(self, request: Request, stream: bool) -> Dict[str, str]:
        headers = {"Accept": "text/event-stream" if stream else "application/json"}
        if self.options.api_key:
            headers["Authorization"] = f"Bearer {self.options.api_key}"
        accept_language = request.headers.get("accept-language")
        if accept_language:
            headers["Accept-Language"] = accept_language
        headers.update(self.extra_headers())
        return headers

    def upstream_timeout(self, stream: bool) -> httpx.Timeout:
        if stream:
            # Streams last as long as the generation; only the client or server ends them
            return httpx.Timeout(self.options.timeout, read=None)
        return httpx.Timeout(self.options.timeout)

    async def handle_chat_completion(self, request: Request, body: ChatCompletionsRequest) -> Response:
        request_id = request_id_of(request)
        stream = bool(body.stream)

        original_model = body.model
        upstream_model = self.resolve_model(original_model)
        logger.debug("[%s] %s: model converted to %s (original: %s)", request_id, self.name, upstream_model, original_model)

        try:
            payload = self.build_payload(body, upstream_model).model_dump_json(exclude_none=True)
        except (TypeError, ValueError) as e:
            return internal_error(e, request_id, stage="build upstream request")

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("[%s] Upstream request to %s: %s", request_id, self.chat_url, payload)
        else:
            logger.info(f"[{request_id}] Forwarding to {self.name} (stream={stream})")

        exchange = asyncio.create_task(self._exchange(request, payload, stream, original_model, request_id))
        watcher = asyncio.create_task(self._wait_for_disconnect(request))
        try:
            done, _ = await asyncio.wait({exchange, watcher}, return_when=asyncio.FIRST_COMPLETED)
            if exchange not in done and watcher.exception() is not None:
                logger.debug(f"[{request_id}] Disconnect watch failed: {watcher.exception()}")
                await exchange
        finally:
            watcher.cancel()
            if not exchange.done():
                # Cancelling the exchange closes the upstream response
                exchange.cancel()
            await asyncio.gather(exchange, watcher, return_exceptions=True)

        if exchange.cancelled():
            logger.info(f"[{request_id}] Client disconnected, upstream request cancelled")
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        return exchange.result()

    async def _wait_for_disconnect(self, request: Request) -> None:
        while not await request.is_disconnected():
            await asyncio.sleep(self.disconnect_poll_interval)

    async def _exchange(
        self, request: Request, payload: str, stream: bool, original_model: str, request_id: str
    ) -> Response:
        upstream_request = self.client.build_request(
            "POST",
            self.chat_url,
            content=payload.encode("utf-8"),
            headers=self.upstream_headers(request, stream),
            timeout=self.upstream_timeout(stream),
        )
        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except httpx.RequestError as e:
            return bad_gateway(e, request_id)

        logger.debug("[%s] %s response status: %d", request_id, self.name, upstream.status_code)

        if upstream.status_code >= 400:
            return await self._forward_error(upstream, request_id)

        if stream:
            return self._stream_response(upstream, original_model, request_id)

        return await handle_unary_response(
            upstream,
            lambda raw: self.translate_completion(raw, original_model),
            request_id,
        )

    async def _forward_error(self, upstream: httpx.Response, request_id: str) -> Response:
        try:
            raw = b"".join([chunk async for chunk in upstream.aiter_raw()])
        except httpx.HTTPError as e:
            return bad_gateway(e, request_id, stage="read upstream error response")
        finally:
            await upstream.aclose()
        try:
            body = decompress_body(raw, upstream.headers.get("content-encoding"))
        except DecompressionError as e:
            return internal_error(e, request_id, stage="decompress upstream error response")
        return forward_upstream_error(upstream.status_code, upstream.headers, body, request_id)

    def _stream_response(self, upstream: httpx.Response, original_model: str, request_id: str) -> StreamingResponse:
        response_id = self.id_factory()
        created = int(self.clock())
        chunks = iter_decompressed(upstream.aiter_raw(), upstream.headers.get("content-encoding"))
        relay = StreamRelay(
            frames=self.stream_frames(iter_lines(chunks)),
            translator=self.stream_translator(original_model, response_id, created),
            on_close=upstream.aclose,
            heartbeat_interval=self.heartbeat_interval,
            request_id=request_id,
        )
        logger.debug("[%s] Starting stream relay %s for model %s", request_id, response_id, original_model)
        return StreamingResponse(
            relay.events(),
            status_code=upstream.status_code,
            media_type="text/event-stream",
            headers=STREAM_HEADERS,
        )

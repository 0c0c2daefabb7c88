"""Shared test fixtures for the gateway."""

from __future__ import annotations

import json
import types
from typing import Any, Callable, Dict, List

import httpx
import pytest

from llmproxy.backends.base import BackendOptions
from llmproxy.config import get_settings

FIXED_ID = "chatcmpl-test"
FIXED_TIME = 1700000000.0

_GATEWAY_ENV = (
    "BACKEND",
    "GATEWAY_API_KEY",
    "DEEPSEEK_API_KEY",
    "DEEPSEEK_ENDPOINT",
    "DEEPSEEK_MODELS",
    "OPENROUTER_API_KEY",
    "OPENROUTER_MODELS",
    "OLLAMA_ENDPOINT",
    "OLLAMA_API_ENDPOINT",
    "OLLAMA_API_KEY",
    "UPSTREAM_TIMEOUT",
    "TIMEOUT",
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep the host's provider credentials out of the tests."""
    for name in _GATEWAY_ENV:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class UpstreamRecorder:
    """MockTransport handler that records every upstream request."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]):
        self.respond = respond
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)

    @property
    def last_json(self) -> Dict[str, Any]:
        return json.loads(self.requests[-1].content)


@pytest.fixture()
def make_backend():
    """Build a backend whose upstream is an httpx.MockTransport, with fixed ids and clock."""

    def _make(backend_cls, respond, models=None, api_key="sk-upstream", endpoint="https://upstream.test", **kwargs):
        recorder = UpstreamRecorder(respond)
        options = BackendOptions(
            endpoint=endpoint,
            api_key=api_key,
            default_model=kwargs.pop("default_model", "deepseek-chat"),
            models=models or {},
        )
        backend = backend_cls(
            options,
            client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)),
            id_factory=lambda: FIXED_ID,
            clock=lambda: FIXED_TIME,
            **kwargs,
        )
        return backend, recorder

    return _make


def upstream_response(status_code: int = 200, json_body: Any = None, content: bytes = b"", headers: Dict[str, str] | None = None) -> httpx.Response:
    """An unread upstream response, so the gateway sees the raw (still encoded) bytes."""
    if json_body is not None:
        content = json.dumps(json_body).encode("utf-8")
        headers = {"content-type": "application/json", **(headers or {})}
    return httpx.Response(status_code, headers=headers, stream=httpx.ByteStream(content))


def fake_request(headers: Dict[str, str] | None = None, request_id: str = "test") -> Any:
    """Minimal stand-in for a FastAPI Request as seen by the backends; the client never disconnects."""

    async def is_disconnected() -> bool:
        return False

    return types.SimpleNamespace(
        headers={k.lower(): v for k, v in (headers or {}).items()},
        state=types.SimpleNamespace(request_id=request_id),
        is_disconnected=is_disconnected,
    )


async def collect_body(response) -> bytes:
    """Drain a StreamingResponse body."""
    chunks = []
    async for chunk in response.body_iterator:
        chunks.append(chunk if isinstance(chunk, bytes) else chunk.encode("utf-8"))
    return b"".join(chunks)


def sse_payloads(raw: bytes) -> List[Any]:
    """Decode the ``data:`` events of an SSE body; ``[DONE]`` is kept as the string."""
    events = []
    for block in raw.decode("utf-8").split("\n\n"):
        if not block.startswith("data: "):
            continue
        data = block[len("data: "):]
        events.append(data if data == "[DONE]" else json.loads(data))
    return events

"""Tests for the provider backends against a mocked upstream."""

from __future__ import annotations

import asyncio
import gzip
import json

import httpx
import pytest

from conftest import FIXED_ID, FIXED_TIME, collect_body, fake_request, sse_payloads, upstream_response
from llmproxy.backends.deepseek import DeepSeekBackend, translate_deepseek_completion
from llmproxy.backends.ollama import OllamaBackend, parse_created_at
from llmproxy.backends.openrouter import OpenRouterBackend
from llmproxy.openai_models import ChatCompletionsRequest
from llmproxy.responses import render_unary_response

DEEPSEEK_COMPLETION = {
    "id": "ds-123",
    "object": "chat.completion",
    "created": 1699999999,
    "model": "deepseek-chat",
    "choices": [
        {
            "index": 0,
            "message": {"role": "assistant", "content": "Hello!"},
            "finish_reason": "stop",
        }
    ],
    "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7},
}


def _body(**overrides) -> ChatCompletionsRequest:
    payload = {"model": "gpt-4o", "messages": [{"role": "user", "content": "hi"}]}
    payload.update(overrides)
    return ChatCompletionsRequest.model_validate(payload)


def _json(response) -> dict:
    return json.loads(response.body)


class TestDeepSeekUnary:
    def test_model_mapped_upstream_and_restored(self, make_backend):
        backend, upstream = make_backend(
            DeepSeekBackend,
            lambda req: upstream_response(200, json_body=DEEPSEEK_COMPLETION),
            models={"gpt-4o": "deepseek-chat"},
        )
        resp = asyncio.run(backend.handle_chat_completion(fake_request(), _body()))

        assert resp.status_code == 200
        assert upstream.last_json["model"] == "deepseek-chat"
        assert upstream.requests[0].url == "https://upstream.test/chat/completions"
        assert upstream.requests[0].headers["authorization"] == "Bearer sk-upstream"
        assert upstream.requests[0].headers["accept"] == "application/json"

        data = _json(resp)
        assert data["model"] == "gpt-4o"
        assert data["id"] == "ds-123"
        assert data["object"] == "chat.completion"
        assert data["choices"][0]["message"] == {"role": "assistant", "content": "Hello!"}
        assert data["usage"] == {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}

    def test_unknown_model_uses_default(self, make_backend):
        backend, upstream = make_backend(DeepSeekBackend, lambda req: upstream_response(200, json_body=DEEPSEEK_COMPLETION))
        asyncio.run(backend.handle_chat_completion(fake_request(), _body(model="something-else")))
        assert upstream.last_json["model"] == "deepseek-chat"

    def test_accept_language_forwarded(self, make_backend):
        backend, upstream = make_backend(DeepSeekBackend, lambda req: upstream_response(200, json_body=DEEPSEEK_COMPLETION))
        asyncio.run(backend.handle_chat_completion(fake_request({"Accept-Language": "de-DE"}), _body()))
        assert upstream.requests[0].headers["accept-language"] == "de-DE"

    def test_gzip_response_decoded(self, make_backend):
        backend, _ = make_backend(
            DeepSeekBackend,
            lambda req: upstream_response(
                200,
                content=gzip.compress(json.dumps(DEEPSEEK_COMPLETION).encode()),
                headers={"content-encoding": "gzip", "content-type": "application/json"},
            ),
        )
        resp = asyncio.run(backend.handle_chat_completion(fake_request(), _body()))
        assert resp.status_code == 200
        assert _json(resp)["choices"][0]["message"]["content"] == "Hello!"

    def test_missing_id_and_created_filled_in(self, make_backend):
        completion = dict(DEEPSEEK_COMPLETION, id="", created=0)
        backend, _ = make_backend(DeepSeekBackend, lambda req: upstream_response(200, json_body=completion))
        data = _json(asyncio.run(backend.handle_chat_completion(fake_request(), _body())))
        assert data["id"] == FIXED_ID
        assert data["created"] == int(FIXED_TIME)

    def test_tool_calls_with_empty_names_dropped(self, make_backend):
        completion = dict(DEEPSEEK_COMPLETION)
        completion["choices"] = [
            {
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {"id": "call_1", "type": "function", "function": {"name": "", "arguments": "{}"}},
                        {"id": "call_2", "type": "function", "function": {"name": "get_weather", "arguments": "{}"}},
                    ],
                },
                "finish_reason": "tool_calls",
            }
        ]
        backend, _ = make_backend(DeepSeekBackend, lambda req: upstream_response(200, json_body=completion))
        message = _json(asyncio.run(backend.handle_chat_completion(fake_request(), _body())))["choices"][0]["message"]
        assert message["content"] == ""
        assert [tc["id"] for tc in message["tool_calls"]] == ["call_2"]


class TestUpstreamFailures:
    def test_upstream_error_forwarded_verbatim(self, make_backend):
        error_body = {"error": {"message": "Rate limit exceeded", "type": "rate_limit"}}
        backend, _ = make_backend(
            DeepSeekBackend,
            lambda req: upstream_response(429, json_body=error_body, headers={"retry-after": "5"}),
        )
        resp = asyncio.run(backend.handle_chat_completion(fake_request(), _body()))
        assert resp.status_code == 429
        assert _json(resp) == error_body
        assert resp.headers["retry-after"] == "5"
        assert resp.headers["content-type"] == "application/json"

    def test_compressed_upstream_error_decoded(self, make_backend):
        error_body = json.dumps({"error": {"message": "bad key"}}).encode()
        backend, _ = make_backend(
            DeepSeekBackend,
            lambda req: upstream_response(401, content=gzip.compress(error_body), headers={"content-encoding": "gzip"}),
        )
        resp = asyncio.run(backend.handle_chat_completion(fake_request(), _body()))
        assert resp.status_code == 401
        assert resp.body == error_body
        assert "content-encoding" not in resp.headers

    def test_connect_error_is_bad_gateway(self, make_backend):
        def refuse(req):
            raise httpx.ConnectError("connection refused", request=req)

        backend, _ = make_backend(DeepSeekBackend, refuse)
        resp = asyncio.run(backend.handle_chat_completion(fake_request(), _body()))
        assert resp.status_code == 502
        assert _json(resp)["error"]["message"] == "Error forwarding request"

    def test_unparseable_body_is_internal_error(self, make_backend):
        backend, _ = make_backend(DeepSeekBackend, lambda req: upstream_response(200, content=b"<html>oops</html>"))
        resp = asyncio.run(backend.handle_chat_completion(fake_request(), _body()))
        assert resp.status_code == 500
        assert _json(resp) == {"error": {"message": "Internal server error", "type": "internal_error", "code": 500}}

    def test_corrupt_compressed_body_is_internal_error(self, make_backend):
        backend, _ = make_backend(
            DeepSeekBackend,
            lambda req: upstream_response(200, content=b"not gzip at all", headers={"content-encoding": "gzip"}),
        )
        resp = asyncio.run(backend.handle_chat_completion(fake_request(), _body()))
        assert resp.status_code == 500


class TestUnaryRendering:
    def test_same_input_same_output(self):
        raw = json.dumps(dict(DEEPSEEK_COMPLETION, id="")).encode()

        def translate(body: bytes):
            return translate_deepseek_completion(body, "gpt-4o", lambda: FIXED_ID, lambda: FIXED_TIME)

        first = render_unary_response(200, None, raw, translate)
        second = render_unary_response(200, None, raw, translate)
        assert first.body == second.body
        assert first.status_code == second.status_code == 200

    def test_status_mirrors_upstream(self):
        raw = json.dumps(DEEPSEEK_COMPLETION).encode()
        resp = render_unary_response(
            203,
            None,
            raw,
            lambda body: translate_deepseek_completion(body, "gpt-4o", lambda: FIXED_ID, lambda: FIXED_TIME),
        )
        assert resp.status_code == 203


class TestDeepSeekStreaming:
    def test_stream_translated_to_openai_chunks(self, make_backend):
        sse = (
            "data: " + json.dumps({"id": "x", "choices": [{"index": 0, "delta": {"role": "assistant", "content": "Hel"}, "finish_reason": None}]}) + "\n\n"
            ": keep-alive\n\n"
            "data: " + json.dumps({"id": "x", "choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}]}) + "\n\n"
            "data: [DONE]\n\n"
        )
        backend, upstream = make_backend(
            DeepSeekBackend,
            lambda req: upstream_response(200, content=sse.encode(), headers={"content-type": "text/event-stream"}),
            models={"gpt-4o": "deepseek-chat"},
        )

        async def run():
            resp = await backend.handle_chat_completion(fake_request(), _body(stream=True))
            return resp, await collect_body(resp)

        resp, raw = asyncio.run(run())
        assert resp.status_code == 200
        assert resp.media_type == "text/event-stream"
        assert resp.headers["cache-control"] == "no-cache"
        assert upstream.last_json["stream"] is True
        assert upstream.requests[0].headers["accept"] == "text/event-stream"

        events = sse_payloads(raw)
        assert events[-1] == "[DONE]"
        chunks = events[:-1]
        assert len(chunks) == 2
        assert all(c["id"] == FIXED_ID and c["model"] == "gpt-4o" for c in chunks)
        assert all(c["created"] == int(FIXED_TIME) for c in chunks)
        assert "".join(c["choices"][0]["delta"].get("content", "") for c in chunks) == "Hello"
        assert chunks[-1]["choices"][0]["finish_reason"] == "stop"

    def test_stream_error_status_forwarded_before_streaming(self, make_backend):
        backend, _ = make_backend(
            DeepSeekBackend,
            lambda req: upstream_response(503, json_body={"error": {"message": "overloaded"}}),
        )
        resp = asyncio.run(backend.handle_chat_completion(fake_request(), _body(stream=True)))
        assert resp.status_code == 503
        assert _json(resp) == {"error": {"message": "overloaded"}}

    def test_bare_json_lines_stream(self, make_backend):
        ndjson = (
            json.dumps({"choices": [{"index": 0, "delta": {"role": "assistant", "content": "Hel"}, "finish_reason": None}]}) + "\n"
            + json.dumps({"choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}]}) + "\n"
        )
        backend, _ = make_backend(
            DeepSeekBackend,
            lambda req: upstream_response(200, content=ndjson.encode(), headers={"content-type": "application/x-ndjson"}),
        )

        async def run():
            resp = await backend.handle_chat_completion(fake_request(), _body(stream=True))
            return await collect_body(resp)

        events = sse_payloads(asyncio.run(run()))
        assert events[-1] == "[DONE]"
        chunks = events[:-1]
        assert len(chunks) == 2
        assert all(c["id"] == FIXED_ID and c["object"] == "chat.completion.chunk" for c in chunks)
        assert [c["choices"][0]["delta"].get("content") for c in chunks] == ["Hel", "lo"]
        assert [c["choices"][0]["finish_reason"] for c in chunks] == [None, "stop"]


class TestClientDisconnect:
    def test_unary_upstream_call_cancelled(self, make_backend):
        state = {"cancelled": False}

        async def run():
            entered = asyncio.Event()

            async def hang(req):
                entered.set()
                try:
                    await asyncio.Event().wait()
                except asyncio.CancelledError:
                    state["cancelled"] = True
                    raise

            backend, upstream = make_backend(DeepSeekBackend, hang, disconnect_poll_interval=0.01)
            request = fake_request()

            async def is_disconnected():
                return entered.is_set()

            request.is_disconnected = is_disconnected
            resp = await asyncio.wait_for(backend.handle_chat_completion(request, _body()), timeout=2)
            return resp, upstream

        resp, upstream = asyncio.run(run())
        assert resp.status_code == 499
        assert len(upstream.requests) == 1
        assert state["cancelled"]

    def test_connected_client_gets_answer(self, make_backend):
        backend, _ = make_backend(
            DeepSeekBackend,
            lambda req: upstream_response(200, json_body=DEEPSEEK_COMPLETION),
            disconnect_poll_interval=0.01,
        )
        resp = asyncio.run(backend.handle_chat_completion(fake_request(), _body()))
        assert resp.status_code == 200
        assert _json(resp)["choices"][0]["message"]["content"] == "Hello!"


class TestOpenRouter:
    def test_defaults_and_attribution_headers(self, make_backend):
        backend, upstream = make_backend(
            OpenRouterBackend,
            lambda req: upstream_response(200, json_body=DEEPSEEK_COMPLETION),
            default_model="deepseek/deepseek-chat",
            referer="https://example.org",
            title="Gateway",
        )
        asyncio.run(backend.handle_chat_completion(fake_request(), _body()))

        sent = upstream.last_json
        assert sent["model"] == "deepseek/deepseek-chat"
        assert sent["temperature"] == 0.7
        assert sent["max_tokens"] == 4096
        headers = upstream.requests[0].headers
        assert headers["http-referer"] == "https://example.org"
        assert headers["x-title"] == "Gateway"

    def test_caller_values_win_over_defaults(self, make_backend):
        backend, upstream = make_backend(OpenRouterBackend, lambda req: upstream_response(200, json_body=DEEPSEEK_COMPLETION))
        asyncio.run(backend.handle_chat_completion(fake_request(), _body(temperature=0.1, max_tokens=50)))
        assert upstream.last_json["temperature"] == 0.1
        assert upstream.last_json["max_tokens"] == 50

    def test_tool_call_type_forced_to_function(self, make_backend):
        completion = dict(DEEPSEEK_COMPLETION)
        completion["choices"] = [
            {
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": "",
                    "tool_calls": [{"id": "c1", "type": "tool", "function": {"name": "f", "arguments": "{}"}}],
                },
                "finish_reason": "tool_calls",
            }
        ]
        backend, _ = make_backend(OpenRouterBackend, lambda req: upstream_response(200, json_body=completion))
        data = _json(asyncio.run(backend.handle_chat_completion(fake_request(), _body())))
        assert data["choices"][0]["message"]["tool_calls"][0]["type"] == "function"


class TestOllama:
    def test_unary_translation(self, make_backend):
        backend, upstream = make_backend(
            OllamaBackend,
            lambda req: upstream_response(
                200,
                json_body={
                    "model": "llama2",
                    "created_at": "2024-01-01T00:00:00.123456789Z",
                    "message": {"role": "assistant", "content": "hi there"},
                    "done": True,
                    "prompt_eval_count": 3,
                    "eval_count": 5,
                },
            ),
            api_key=None,
            default_model="llama2",
            endpoint="http://ollama.test/api",
        )
        resp = asyncio.run(
            backend.handle_chat_completion(
                fake_request(),
                _body(tools=[{"type": "function", "function": {"name": "f"}}], tool_choice="auto"),
            )
        )

        assert upstream.requests[0].url == "http://ollama.test/api/chat"
        assert "authorization" not in upstream.requests[0].headers
        assert upstream.last_json == {
            "model": "llama2",
            "messages": [{"role": "user", "content": "hi"}],
            "stream": False,
        }

        data = _json(resp)
        assert data["id"] == FIXED_ID
        assert data["model"] == "gpt-4o"
        assert data["created"] == 1704067200
        assert data["choices"] == [
            {"index": 0, "message": {"role": "assistant", "content": "hi there"}, "finish_reason": "stop"}
        ]
        assert data["usage"] == {"prompt_tokens": 3, "completion_tokens": 5, "total_tokens": 8}

    def test_anonymous_when_no_key_configured(self, make_backend):
        backend, _ = make_backend(OllamaBackend, lambda req: upstream_response(200, json_body={}), api_key=None)
        assert not backend.requires_api_key

    def test_key_enforced_when_configured(self, make_backend):
        backend, _ = make_backend(OllamaBackend, lambda req: upstream_response(200, json_body={}), api_key="local-key")
        assert backend.requires_api_key
        assert backend.validate_api_key("local-key")
        assert not backend.validate_api_key("nope")

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("2024-01-01T00:00:00Z", 1704067200),
            ("2024-01-01T00:00:00.123456789Z", 1704067200),
            ("2024-01-01T02:00:00+02:00", 1704067200),
            ("garbage", None),
            (None, None),
        ],
    )
    def test_parse_created_at(self, value, expected):
        assert parse_created_at(value) == expected


class TestListModels:
    def test_mapped_names(self, make_backend):
        backend, _ = make_backend(
            DeepSeekBackend,
            lambda req: upstream_response(200),
            models={"gpt-4o": "deepseek-chat", "gpt-4o-mini": "deepseek-chat"},
        )
        models = asyncio.run(backend.list_models())
        assert [m.id for m in models] == ["gpt-4o", "gpt-4o-mini"]
        assert all(m.owned_by == "deepseek" and m.created == int(FIXED_TIME) for m in models)

    def test_default_model_when_no_map(self, make_backend):
        backend, _ = make_backend(DeepSeekBackend, lambda req: upstream_response(200))
        assert [m.id for m in asyncio.run(backend.list_models())] == ["deepseek-chat"]

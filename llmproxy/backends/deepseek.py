"""DeepSeek chat completions backend."""

import logging
from typing import Any, Dict, Optional

from ..convert import convert_messages, convert_response_choices, narrow_tool_choice, select_tools
from ..openai_models import ChatCompletion, ChatCompletionsRequest, Usage
from ..provider_models import DeepSeekRequest, DeepSeekResponse, DeepSeekStreamChunk
from ..security import build_key_validator
from ..streaming import StreamEvent
from .base import BackendOptions, HTTPBackend

logger = logging.getLogger(__name__)


class DeepSeekStreamTranslator:
    """
    Translates DeepSeek-shaped stream frames: ``data: {...}`` lines or bare JSON
    lines, ``data: [DONE]`` and ``:``-prefixed keep-alive comments.
    """

    def __init__(self, original_model: str, response_id: str, created: int, force_function_type: bool = False):
        self.original_model = original_model
        self.response_id = response_id
        self.created = created
        self.force_function_type = force_function_type

    def _delta(self, delta: Dict[str, Any]) -> Dict[str, Any]:
        if self.force_function_type and delta.get("tool_calls"):
            delta = dict(delta)
            delta["tool_calls"] = [
                {**tc, "type": "function"} if isinstance(tc, dict) and tc.get("type") else tc
                for tc in delta["tool_calls"]
            ]
        return delta

    def translate(self, frame: str) -> Optional[StreamEvent]:
        if frame.startswith(":"):
            return None
        if frame.startswith("data:"):
            frame = frame[len("data:"):].strip()
        if frame == "[DONE]":
            return StreamEvent(final=True)

        chunk = DeepSeekStreamChunk.model_validate_json(frame)
        choices = [
            {
                "index": choice.index,
                "delta": self._delta(choice.delta),
                "finish_reason": choice.finish_reason,
            }
            for choice in chunk.choices
        ]
        payload: Dict[str, Any] = {
            "id": self.response_id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.original_model,
            "choices": choices,
        }
        if chunk.usage is not None:
            payload["usage"] = chunk.usage.model_dump()

        finished = any(choice.finish_reason for choice in chunk.choices)
        return StreamEvent(chunk=payload, final=finished)


def build_deepseek_request(
    body: ChatCompletionsRequest,
    upstream_model: str,
    default_temperature: Optional[float] = None,
    default_max_tokens: Optional[int] = None,
) -> DeepSeekRequest:
    request = DeepSeekRequest(
        model=upstream_model,
        messages=convert_messages(body.messages),
        stream=bool(body.stream),
        temperature=body.temperature if body.temperature is not None else default_temperature,
        max_tokens=body.max_tokens if body.max_tokens is not None else default_max_tokens,
    )

    if body.tools and body.functions:
        logger.debug("Both tools and legacy functions supplied, using tools")

    tools = select_tools(body)
    if tools:
        request.tools = tools
        # No preference stays out of the request instead of being sent as ""
        request.tool_choice = narrow_tool_choice(body.tool_choice)

    return request


def translate_deepseek_completion(
    raw: bytes,
    original_model: str,
    id_factory,
    clock,
    force_function_type: bool = False,
) -> ChatCompletion:
    upstream = DeepSeekResponse.model_validate_json(raw)
    return ChatCompletion(
        id=upstream.id or id_factory(),
        created=upstream.created or int(clock()),
        # Always the caller's model name, never the provider's internal one
        model=original_model,
        choices=convert_response_choices(upstream.choices, force_function_type),
        usage=Usage(**upstream.usage.model_dump()),
    )


class DeepSeekBackend(HTTPBackend):
    def __init__(self, options: BackendOptions, gateway_api_key: Optional[str] = None, **kwargs):
        super().__init__(options, build_key_validator(gateway_api_key or options.api_key), **kwargs)

    @property
    def name(self) -> str:
        return "deepseek"

    @property
    def chat_url(self) -> str:
        return f"{self.endpoint}/chat/completions"

    def build_payload(self, body: ChatCompletionsRequest, upstream_model: str) -> DeepSeekRequest:
        return build_deepseek_request(body, upstream_model)

    def translate_completion(self, raw: bytes, original_model: str) -> ChatCompletion:
        return translate_deepseek_completion(raw, original_model, self.id_factory, self.clock)

    def stream_translator(self, original_model: str, response_id: str, created: int) -> DeepSeekStreamTranslator:
        return DeepSeekStreamTranslator(original_model, response_id, created)

"""Ollama chat backend (``/api/chat``). No tool support; completion is signalled by ``done``."""

import logging
import re
from datetime import datetime
from typing import Optional

from ..convert import convert_messages_for_ollama
from ..openai_models import ChatChoice, ChatCompletion, ChatCompletionsRequest, ChatMessageResponse, Usage, chunk_payload
from ..provider_models import OllamaRequest, OllamaResponse
from ..security import build_key_validator
from ..streaming import StreamEvent
from .base import BackendOptions, HTTPBackend

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "http://localhost:11434/api"

_FRACTION = re.compile(r"\.(\d{6})\d+")


def parse_created_at(value: Optional[str]) -> Optional[int]:
    """Unix seconds from Ollama's RFC 3339 ``created_at`` (nanosecond precision, 'Z' suffix)."""
    if not value:
        return None
    normalized = _FRACTION.sub(r".\1", value.strip()).replace("Z", "+00:00")
    try:
        return int(datetime.fromisoformat(normalized).timestamp())
    except ValueError:
        logger.debug(f"Unparseable created_at from Ollama: {value!r}")
        return None


class OllamaStreamTranslator:
    """One NDJSON line in, one chunk out; ``done`` becomes ``finish_reason: "stop"``."""

    def __init__(self, original_model: str, response_id: str, created: int):
        self.original_model = original_model
        self.response_id = response_id
        self.created = created

    def translate(self, frame: str) -> Optional[StreamEvent]:
        line = OllamaResponse.model_validate_json(frame)
        payload = chunk_payload(
            chunk_id=self.response_id,
            model=self.original_model,
            created=self.created,
            delta={"role": "assistant", "content": line.message.content},
            finish_reason="stop" if line.done else None,
        )
        return StreamEvent(chunk=payload, final=line.done)


class OllamaBackend(HTTPBackend):
    def __init__(
        self,
        options: BackendOptions,
        gateway_api_key: Optional[str] = None,
        allow_anonymous: bool = True,
        **kwargs,
    ):
        # A local Ollama usually has no key; open access is chosen here, not inferred from ""
        validator = build_key_validator(gateway_api_key or options.api_key, allow_anonymous=allow_anonymous)
        super().__init__(options, validator, **kwargs)

    @property
    def name(self) -> str:
        return "ollama"

    @property
    def chat_url(self) -> str:
        return f"{self.endpoint}/chat"

    def build_payload(self, body: ChatCompletionsRequest, upstream_model: str) -> OllamaRequest:
        if body.tools or body.functions:
            logger.debug("Ollama backend does not support tools, dropping tools/functions/tool_choice")
        return OllamaRequest(
            model=upstream_model,
            messages=convert_messages_for_ollama(body.messages),
            stream=bool(body.stream),
            temperature=body.temperature,
            max_tokens=body.max_tokens,
        )

    def translate_completion(self, raw: bytes, original_model: str) -> ChatCompletion:
        upstream = OllamaResponse.model_validate_json(raw)
        created = parse_created_at(upstream.created_at)

        usage = Usage()
        if upstream.prompt_eval_count is not None or upstream.eval_count is not None:
            prompt_tokens = upstream.prompt_eval_count or 0
            completion_tokens = upstream.eval_count or 0
            usage = Usage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            )

        return ChatCompletion(
            id=self.id_factory(),
            created=created if created is not None else int(self.clock()),
            model=original_model,
            choices=[
                ChatChoice(
                    index=0,
                    message=ChatMessageResponse(role="assistant", content=upstream.message.content),
                    finish_reason="stop",
                )
            ],
            usage=usage,
        )

    def stream_translator(self, original_model: str, response_id: str, created: int) -> OllamaStreamTranslator:
        return OllamaStreamTranslator(original_model, response_id, created)

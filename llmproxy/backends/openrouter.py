"""OpenRouter backend. Same wire shape as DeepSeek, SSE-framed streams."""

from typing import Dict, Optional

from ..openai_models import ChatCompletion, ChatCompletionsRequest
from ..provider_models import DeepSeekRequest
from ..security import build_key_validator
from ..streaming import iter_sse_frames
from .base import BackendOptions, HTTPBackend
from .deepseek import DeepSeekStreamTranslator, build_deepseek_request, translate_deepseek_completion

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 4096


class OpenRouterBackend(HTTPBackend):
    def __init__(
        self,
        options: BackendOptions,
        gateway_api_key: Optional[str] = None,
        referer: Optional[str] = None,
        title: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(options, build_key_validator(gateway_api_key or options.api_key), **kwargs)
        self.referer = referer
        self.title = title

    @property
    def name(self) -> str:
        return "openrouter"

    @property
    def chat_url(self) -> str:
        return f"{self.endpoint}/chat/completions"

    def extra_headers(self) -> Dict[str, str]:
        # Optional app attribution for OpenRouter rankings
        headers = {}
        if self.referer:
            headers["HTTP-Referer"] = self.referer
        if self.title:
            headers["X-Title"] = self.title
        return headers

    def build_payload(self, body: ChatCompletionsRequest, upstream_model: str) -> DeepSeekRequest:
        return build_deepseek_request(
            body,
            upstream_model,
            default_temperature=DEFAULT_TEMPERATURE,
            default_max_tokens=DEFAULT_MAX_TOKENS,
        )

    def translate_completion(self, raw: bytes, original_model: str) -> ChatCompletion:
        return translate_deepseek_completion(
            raw, original_model, self.id_factory, self.clock, force_function_type=True
        )

    def stream_frames(self, lines):
        return iter_sse_frames(lines)

    def stream_translator(self, original_model: str, response_id: str, created: int) -> DeepSeekStreamTranslator:
        return DeepSeekStreamTranslator(original_model, response_id, created, force_function_type=True)

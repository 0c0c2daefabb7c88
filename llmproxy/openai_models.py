# OpenAI-compatible schema models for chat completions API

from typing import Annotated, List, Optional, Literal, Dict, Any, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator


class TextContentPart(BaseModel):
    type: Literal["text"]
    text: str = ""


class UnsupportedContentPart(BaseModel):
    # Any non-text part (image_url, input_audio, ...); kept so it can be reported and skipped
    type: str
    model_config = ConfigDict(extra="allow")


ContentPart = Annotated[Union[TextContentPart, UnsupportedContentPart], Field(union_mode="left_to_right")]

# Either a plain string or an ordered list of typed parts, never both
Content = Union[str, List[ContentPart]]


class FunctionCall(BaseModel):
    name: str = ""
    arguments: str = ""


class ToolCall(BaseModel):
    id: str = ""
    type: str = "function"
    function: FunctionCall = Field(default_factory=FunctionCall)


class FunctionDefinition(BaseModel):
    name: str
    description: str = ""
    parameters: Optional[Any] = None


class Tool(BaseModel):
    type: str = "function"
    function: FunctionDefinition


class ToolChoiceNone(BaseModel):
    kind: Literal["none"] = "none"


class ToolChoiceAuto(BaseModel):
    kind: Literal["auto"] = "auto"


class ToolChoiceUnset(BaseModel):
    kind: Literal["unset"] = "unset"


class ToolChoiceFunction(BaseModel):
    kind: Literal["function"] = "function"
    name: str = ""


ToolChoice = Union[ToolChoiceNone, ToolChoiceAuto, ToolChoiceUnset, ToolChoiceFunction]


def decode_tool_choice(raw: Any) -> ToolChoice:
    """
    Decode the untyped OpenAI ``tool_choice`` value.

    "auto" and "none" map to their variants, ``{"type": "function", ...}`` maps to
    a targeted function; anything else (including null) means no preference.
    """
    if isinstance(raw, (ToolChoiceNone, ToolChoiceAuto, ToolChoiceUnset, ToolChoiceFunction)):
        return raw
    if raw == "auto":
        return ToolChoiceAuto()
    if raw == "none":
        return ToolChoiceNone()
    if isinstance(raw, dict) and raw.get("type") == "function":
        fn = raw.get("function")
        name = fn.get("name") if isinstance(fn, dict) else None
        return ToolChoiceFunction(name=name if isinstance(name, str) else "")
    return ToolChoiceUnset()


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant", "tool", "function"]
    # Accept both string and array-of-parts per OpenAI SDKs
    content: Content = Field(default="", union_mode="left_to_right")
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    @field_validator("content", mode="before")
    @classmethod
    def _null_content(cls, v: Any) -> Any:
        # Assistant tool-call messages arrive with "content": null
        return "" if v is None else v


class ChatCompletionsRequest(BaseModel):
    model: str
    messages: List[ChatMessage]
    stream: Optional[bool] = False
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    functions: Optional[List[FunctionDefinition]] = None
    tools: Optional[List[Tool]] = None
    tool_choice: ToolChoice = Field(default_factory=ToolChoiceUnset)

    @field_validator("tool_choice", mode="before")
    @classmethod
    def _decode_tool_choice(cls, v: Any) -> ToolChoice:
        return decode_tool_choice(v)


class ChatMessageResponse(BaseModel):
    role: str = "assistant"
    content: str = ""
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None


class ChatChoice(BaseModel):
    index: int = 0
    message: ChatMessageResponse
    finish_reason: Optional[str] = None


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatCompletion(BaseModel):
    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    choices: List[ChatChoice]
    usage: Usage = Field(default_factory=Usage)


class ModelData(BaseModel):
    id: str
    object: Literal["model"] = "model"
    created: int
    owned_by: str


class ModelList(BaseModel):
    object: Literal["list"] = "list"
    data: List[ModelData]


def chunk_payload(
    chunk_id: str,
    model: str,
    created: int,
    delta: Dict[str, Any],
    finish_reason: Optional[str] = None,
    index: int = 0,
) -> Dict[str, Any]:
    """Build a single ``chat.completion.chunk`` object with one choice."""
    return {
        "id": chunk_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [
            {
                "index": index,
                "delta": delta,
                "finish_reason": finish_reason,
            }
        ],
    }

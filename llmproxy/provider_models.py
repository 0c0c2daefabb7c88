"""Pydantic models for the provider wire formats (DeepSeek-shaped and Ollama-shaped)."""

from typing import Optional, Any, Dict, List
from pydantic import BaseModel, Field


class DeepSeekFunction(BaseModel):
    """Function definition inside a tool."""
    name: str
    description: str = ""
    parameters: Optional[Any] = None


class DeepSeekTool(BaseModel):
    """Tool available to the model."""
    type: str = "function"
    function: DeepSeekFunction


class DeepSeekToolCallFunction(BaseModel):
    """Function name and JSON-encoded arguments of a tool call."""
    name: str = ""
    arguments: str = ""


class DeepSeekToolCall(BaseModel):
    """Tool call issued by the model (or echoed back by the caller)."""
    id: str = ""
    type: str = "function"
    function: DeepSeekToolCallFunction = Field(default_factory=DeepSeekToolCallFunction)


class DeepSeekMessage(BaseModel):
    """Chat message with scalar content."""
    role: str
    content: str = ""
    tool_calls: Optional[List[DeepSeekToolCall]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None


class DeepSeekRequest(BaseModel):
    """Request body for a DeepSeek-shaped chat completions endpoint (also OpenRouter)."""
    model: str
    messages: List[DeepSeekMessage]
    stream: bool = False
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    tools: Optional[List[DeepSeekTool]] = None
    tool_choice: Optional[str] = None


class DeepSeekResponseMessage(BaseModel):
    """Assistant message in a completed response; content may be null."""
    role: str = "assistant"
    content: Optional[str] = None
    tool_calls: Optional[List[DeepSeekToolCall]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None


class DeepSeekChoice(BaseModel):
    index: int = 0
    message: DeepSeekResponseMessage = Field(default_factory=DeepSeekResponseMessage)
    finish_reason: Optional[str] = None


class DeepSeekUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class DeepSeekResponse(BaseModel):
    """Non-streaming response body."""
    id: str = ""
    created: int = 0
    model: str = ""
    choices: List[DeepSeekChoice] = Field(default_factory=list)
    usage: DeepSeekUsage = Field(default_factory=DeepSeekUsage)


class DeepSeekStreamChoice(BaseModel):
    index: int = 0
    # Delta is relayed structurally; tool-call fragments are partial by nature
    delta: Dict[str, Any] = Field(default_factory=dict)
    finish_reason: Optional[str] = None


class DeepSeekStreamChunk(BaseModel):
    """One streamed chunk."""
    id: str = ""
    created: int = 0
    model: str = ""
    choices: List[DeepSeekStreamChoice] = Field(default_factory=list)
    usage: Optional[DeepSeekUsage] = None


class OllamaMessage(BaseModel):
    """Chat message in Ollama format (no tool support)."""
    role: str
    content: str = ""


class OllamaRequest(BaseModel):
    """Request body for the Ollama chat endpoint."""
    model: str
    messages: List[OllamaMessage]
    stream: bool = False
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class OllamaResponse(BaseModel):
    """Response body (unary) or one NDJSON line (streaming)."""
    model: str = ""
    created_at: Optional[str] = None
    message: OllamaMessage = Field(default_factory=lambda: OllamaMessage(role="assistant"))
    done: bool = False
    prompt_eval_count: Optional[int] = None
    eval_count: Optional[int] = None

"""Conversions between OpenAI-shaped messages/tools and the provider wire formats."""

import logging
from typing import List, Optional, Sequence, Union

from .openai_models import (
    ChatCompletionsRequest,
    ChatChoice,
    ChatMessage,
    ChatMessageResponse,
    Content,
    FunctionCall,
    FunctionDefinition,
    TextContentPart,
    Tool,
    ToolCall,
    ToolChoice,
    ToolChoiceAuto,
    ToolChoiceFunction,
    ToolChoiceNone,
)
from .provider_models import (
    DeepSeekChoice,
    DeepSeekFunction,
    DeepSeekMessage,
    DeepSeekResponseMessage,
    DeepSeekTool,
    DeepSeekToolCall,
    DeepSeekToolCallFunction,
    OllamaMessage,
)

logger = logging.getLogger(__name__)

CONTENT_PART_SEPARATOR = "; "


def flatten_content(content: Content) -> str:
    """
    Collapse OpenAI content into a single string.

    Text parts are joined in order with "; ". Other part types are skipped with a
    warning: providers here only accept scalar content, so images etc. are lost.
    """
    if isinstance(content, str):
        return content

    texts: List[str] = []
    for part in content:
        if isinstance(part, TextContentPart):
            texts.append(part.text)
        else:
            logger.warning(f"Skipping unsupported content part type: {part.type}")
    return CONTENT_PART_SEPARATOR.join(texts)


def _convert_request_tool_calls(tool_calls: Sequence[ToolCall]) -> Optional[List[DeepSeekToolCall]]:
    converted: List[DeepSeekToolCall] = []
    for i, tc in enumerate(tool_calls):
        if not tc.function.name:
            logger.warning(f"Dropping tool call {i} (id={tc.id!r}) with empty function name")
            continue
        converted.append(
            DeepSeekToolCall(
                id=tc.id,
                type="function",
                function=DeepSeekToolCallFunction(
                    name=tc.function.name,
                    arguments=tc.function.arguments,
                ),
            )
        )
        logger.debug("Tool call %d - ID: %s, Function: %s", i, tc.id, tc.function.name)
    return converted or None


def convert_message(msg: ChatMessage) -> DeepSeekMessage:
    role = msg.role
    if role == "function":
        # Legacy function results are tool results for every supported provider
        role = "tool"

    converted = DeepSeekMessage(
        role=role,
        content=flatten_content(msg.content),
        tool_call_id=msg.tool_call_id or None,
        name=msg.name or None,
    )

    if msg.tool_calls:
        if msg.role in ("assistant", "function"):
            converted.tool_calls = _convert_request_tool_calls(msg.tool_calls)
        else:
            logger.warning(f"Ignoring {len(msg.tool_calls)} tool calls on a '{msg.role}' message")

    return converted


def convert_messages(messages: Sequence[ChatMessage]) -> List[DeepSeekMessage]:
    converted = []
    for i, msg in enumerate(messages):
        logger.debug("Converting message %d - Role: %s", i, msg.role)
        converted.append(convert_message(msg))
    return converted


def convert_messages_for_ollama(messages: Sequence[ChatMessage]) -> List[OllamaMessage]:
    return [OllamaMessage(role=m.role, content=m.content) for m in convert_messages(messages)]


def convert_tools(tools: Sequence[Tool]) -> List[DeepSeekTool]:
    return [
        DeepSeekTool(
            type=tool.type,
            function=DeepSeekFunction(
                name=tool.function.name,
                description=tool.function.description,
                parameters=tool.function.parameters,
            ),
        )
        for tool in tools
    ]


def convert_functions(functions: Sequence[FunctionDefinition]) -> List[DeepSeekTool]:
    """Wrap legacy ``functions`` definitions as function tools."""
    return [
        DeepSeekTool(
            type="function",
            function=DeepSeekFunction(
                name=fn.name,
                description=fn.description,
                parameters=fn.parameters,
            ),
        )
        for fn in functions
    ]


def narrow_tool_choice(choice: ToolChoice) -> Optional[str]:
    """
    Map a tool choice onto what the providers understand.

    None of them can force a specific function, so a targeted choice becomes
    "auto". ``None`` means "no preference" and must be left out of the request.
    """
    if isinstance(choice, ToolChoiceNone):
        return "none"
    if isinstance(choice, ToolChoiceAuto):
        return "auto"
    if isinstance(choice, ToolChoiceFunction):
        logger.debug(f"Targeted tool choice '{choice.name}' is not supported upstream, using 'auto'")
        return "auto"
    return None


def select_tools(body: ChatCompletionsRequest) -> Optional[List[DeepSeekTool]]:
    """Tools win over legacy functions when both are present."""
    if body.tools:
        return convert_tools(body.tools)
    if body.functions:
        return convert_functions(body.functions)
    return None


def convert_response_tool_calls(
    tool_calls: Optional[Sequence[DeepSeekToolCall]],
    force_function_type: bool = False,
) -> Optional[List[ToolCall]]:
    if not tool_calls:
        return None

    converted: List[ToolCall] = []
    for i, tc in enumerate(tool_calls):
        if not tc.function.name:
            logger.warning(f"Dropping upstream tool call {i} (id={tc.id!r}) with empty function name")
            continue
        tc_type = "function" if force_function_type or not tc.type else tc.type
        converted.append(
            ToolCall(
                id=tc.id,
                type=tc_type,
                function=FunctionCall(name=tc.function.name, arguments=tc.function.arguments),
            )
        )
    return converted or None


def convert_response_message(
    message: Union[DeepSeekMessage, DeepSeekResponseMessage],
    force_function_type: bool = False,
) -> ChatMessageResponse:
    return ChatMessageResponse(
        role=message.role,
        content=message.content or "",
        tool_calls=convert_response_tool_calls(message.tool_calls, force_function_type),
        tool_call_id=message.tool_call_id or None,
        name=message.name or None,
    )


def convert_response_choices(
    choices: Sequence[DeepSeekChoice],
    force_function_type: bool = False,
) -> List[ChatChoice]:
    return [
        ChatChoice(
            index=choice.index,
            message=convert_response_message(choice.message, force_function_type),
            finish_reason=choice.finish_reason,
        )
        for choice in choices
    ]

"""LLM layer -- content model, request/response types, streaming, provider.

Public API:
    AnthropicProvider - Messages API client over httpx
    Message, ContentBlock and block types
    LLMRequest, LLMResponse, AgentResponse, TokenUsage
    accumulate, parse_sse_event - stream handling
"""

from carapace.llm.anthropic import AnthropicProvider
from carapace.llm.content import (
    Base64ImageSource,
    ContentBlock,
    ImageBlock,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UrlImageSource,
    build_user_message,
)
from carapace.llm.models import AgentResponse, LLMRequest, LLMResponse, TokenUsage
from carapace.llm.stream import StreamAccumulator, accumulate, parse_sse_event

__all__ = [
    "AgentResponse",
    "AnthropicProvider",
    "Base64ImageSource",
    "ContentBlock",
    "ImageBlock",
    "LLMRequest",
    "LLMResponse",
    "Message",
    "StreamAccumulator",
    "TextBlock",
    "TokenUsage",
    "ToolResultBlock",
    "ToolUseBlock",
    "UrlImageSource",
    "accumulate",
    "build_user_message",
    "parse_sse_event",
]

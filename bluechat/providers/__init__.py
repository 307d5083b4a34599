"""LLM provider abstraction module."""

from bluechat.providers.base import LLMProvider, LLMResponse
from bluechat.providers.litellm_provider import LiteLLMProvider
from bluechat.providers.smart_reply import SmartReplyService

__all__ = ["LLMProvider", "LLMResponse", "LiteLLMProvider", "SmartReplyService"]

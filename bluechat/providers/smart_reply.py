"""Smart reply: short reply suggestions for the last received message.

A stateless request/response utility with no tie to the chat session
core. One generation call per request; the model's answer is split into
lines and the first few non-empty lines are returned. Provider failures
propagate to the caller unchanged, nothing is retried.
"""

from __future__ import annotations

from loguru import logger

from bluechat.config.schema import SmartReplyConfig
from bluechat.providers.base import LLMProvider
from bluechat.providers.litellm_provider import LiteLLMProvider

SMART_REPLY_PROMPT = """\
Generate 3 short, natural reply suggestions (max 10 words each) for this message: "{message}"

Return only the suggestions, one per line, without numbers or formatting."""


def parse_suggestions(text: str | None, limit: int = 3) -> list[str]:
    """Split model output into at most *limit* non-empty, stripped lines."""
    lines = [line.strip() for line in (text or "").splitlines()]
    return [line for line in lines if line][:limit]


class SmartReplyService:
    """Generates reply suggestions through an ``LLMProvider``."""

    def __init__(
        self,
        provider: LLMProvider,
        model: str | None = None,
        *,
        max_suggestions: int = 3,
        max_tokens: int = 256,
        temperature: float = 0.7,
    ):
        self.provider = provider
        self.model = model or provider.get_default_model()
        self.max_suggestions = max_suggestions
        self.max_tokens = max_tokens
        self.temperature = temperature

    @classmethod
    def from_config(cls, config: SmartReplyConfig) -> SmartReplyService:
        provider = LiteLLMProvider(
            api_key=config.api_key or None,
            api_base=config.api_base,
            default_model=config.model,
        )
        return cls(
            provider,
            config.model,
            max_suggestions=config.max_suggestions,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        )

    async def suggest(self, last_message: str) -> list[str]:
        """Return up to ``max_suggestions`` replies to *last_message*."""
        if not last_message or not last_message.strip():
            raise ValueError("last_message is required")

        prompt = SMART_REPLY_PROMPT.format(message=last_message.strip())
        resp = await self.provider.chat(
            messages=[{"role": "user", "content": prompt}],
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        suggestions = parse_suggestions(resp.content, self.max_suggestions)
        logger.debug(f"[SmartReply] {len(suggestions)} suggestions via {self.model}")
        return suggestions

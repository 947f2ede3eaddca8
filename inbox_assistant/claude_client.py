"""
Claude API client wrapper using Anthropic SDK
"""
import logging
import os
from typing import Any, Dict, List, Optional

from anthropic import APIConnectionError, APIError, AsyncAnthropic, RateLimitError

from .models import LLMResult

logger = logging.getLogger(__name__)


class ClaudeClient:
    """LanguageModel implementation backed by the Anthropic Messages API"""

    DEFAULT_MODEL = "claude-3-5-sonnet-20241022"
    MAX_TOKENS = 1024
    TEMPERATURE = 0.7
    STRUCTURED_TEMPERATURE = 0.0  # Classification should be deterministic

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, max_tokens: Optional[int] = None):
        """
        Initialize Claude API client

        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
            model: Model name
            max_tokens: Output token limit per call
        """
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise ValueError("ANTHROPIC_API_KEY must be provided or set in environment")

        self.model = model or self.DEFAULT_MODEL
        self.max_tokens = max_tokens or self.MAX_TOKENS
        self.client = AsyncAnthropic(api_key=self.api_key)

    @staticmethod
    def _split_system(messages: List[Dict[str, str]]) -> tuple:
        """The Messages API takes system text separately from the turns"""
        system_parts = [m["content"] for m in messages if m.get("role") == "system"]
        turns = [
            {"role": m["role"], "content": m["content"]}
            for m in messages
            if m.get("role") in ("user", "assistant")
        ]
        return "\n\n".join(system_parts), turns

    async def generate(
        self,
        messages: List[Dict[str, str]],
        schema: Optional[Dict[str, Any]] = None,
        schema_name: str = "structured_output",
    ) -> LLMResult:
        """
        Generate a completion.

        When a JSON schema is given the model is forced to answer through a
        single tool whose input schema is that schema, and the tool input is
        returned as the structured result.

        Args:
            messages: Chat messages; 'system' entries become the system prompt
            schema: Optional JSON schema for structured output
            schema_name: Tool name used for structured output

        Returns:
            LLMResult with text and, for structured calls, the parsed object

        Raises:
            APIError: If Claude API returns an error
            APIConnectionError: If connection to Claude API fails
            RateLimitError: If rate limit is exceeded
        """
        system, turns = self._split_system(messages)
        request: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": turns,
        }
        if system:
            request["system"] = system

        if schema is not None:
            request["temperature"] = self.STRUCTURED_TEMPERATURE
            request["tools"] = [{
                "name": schema_name,
                "description": "Record the answer in the required structure.",
                "input_schema": schema,
            }]
            request["tool_choice"] = {"type": "tool", "name": schema_name}
        else:
            request["temperature"] = self.TEMPERATURE

        try:
            response = await self.client.messages.create(**request)
        except RateLimitError as e:
            logger.error(f"Rate limit exceeded: {e}")
            raise
        except APIConnectionError as e:
            logger.error(f"Connection error to Claude API: {e}")
            raise
        except APIError as e:
            logger.error(f"Claude API error: {e}")
            raise

        text_parts = []
        structured = None
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use" and block.name == schema_name:
                structured = dict(block.input)

        tokens_used = response.usage.input_tokens + response.usage.output_tokens
        logger.debug(f"Claude call used {tokens_used} tokens (structured={schema is not None})")

        return LLMResult(text="".join(text_parts).strip(), structured=structured)

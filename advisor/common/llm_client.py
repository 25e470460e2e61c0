"""
Provider-agnostic LLM client for advisor agents.

Supports OpenAI and Anthropic with a shared text-generation interface and a
chat interface that can return structured tool invocations.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import UpstreamError

logger = logging.getLogger("advisor.common.llm_client")


@dataclass
class ToolCall:
    """A single tool invocation requested by the model.

    ``arguments`` is always the raw JSON string the model produced.
    """
    id: str
    name: str
    arguments: str = "{}"


@dataclass
class LLMResponse:
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


def _to_anthropic_tools(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Convert OpenAI-style function schemas to Anthropic tool schemas."""
    converted = []
    for tool in tools:
        fn = tool.get("function", tool)
        converted.append({
            "name": fn["name"],
            "description": fn.get("description", ""),
            "input_schema": fn.get("parameters", {"type": "object", "properties": {}}),
        })
    return converted


class LLMClient:
    """Unified text generation client across LLM providers."""

    def __init__(
        self,
        provider: str = "openai",
        model: str = "",
        openai_api_key: Optional[str] = None,
        anthropic_api_key: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
        timeout: float = 30.0,
    ) -> None:
        self.provider = (provider or "openai").lower()
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self._client = None

        if self.provider == "openai":
            if not openai_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                from openai import OpenAI

                self._client = OpenAI(api_key=openai_api_key)
            except ImportError:
                logger.warning("openai package not installed")
            except Exception as e:
                logger.warning("Failed to initialize OpenAI client: %s", e)
            return

        if self.provider == "anthropic":
            if not anthropic_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import anthropic

                self._client = anthropic.Anthropic(api_key=anthropic_api_key)
            except ImportError:
                logger.warning("anthropic package not installed")
            except Exception as e:
                logger.warning("Failed to initialize Anthropic client: %s", e)
            return

        logger.warning("Unsupported LLM provider: %s", self.provider)

    @property
    def is_available(self) -> bool:
        return self._client is not None

    def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Single-turn text generation."""
        response = self.chat(
            [{"role": "user", "content": prompt}],
            system=system,
            max_tokens=max_tokens,
            timeout=timeout,
        )
        return response.content

    def chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        *,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> LLMResponse:
        """
        Multi-turn chat with optional tool schemas.

        Args:
            messages: Chat history as ``{"role", "content"}`` dicts
            tools: OpenAI-style function schemas the model may invoke
            system: System prompt
            max_tokens: Override the configured completion budget
            timeout: Override the configured request timeout

        Returns:
            LLMResponse with text content and any tool invocations

        Raises:
            UpstreamError: when the client is unavailable or the provider fails
        """
        if not self.is_available:
            raise UpstreamError("LLM client is not available")

        max_tokens = max_tokens or self.max_tokens
        timeout = timeout or self.timeout

        try:
            if self.provider == "openai":
                return self._chat_openai(messages, tools, system, max_tokens, timeout)
            if self.provider == "anthropic":
                return self._chat_anthropic(messages, tools, system, max_tokens, timeout)
        except UpstreamError:
            raise
        except Exception as e:
            logger.warning("%s chat request failed: %s", self.provider, e)
            raise UpstreamError(f"{self.provider} request failed: {e}") from e

        raise UpstreamError(f"Unsupported LLM provider: {self.provider}")

    def _chat_openai(self, messages, tools, system, max_tokens, timeout) -> LLMResponse:
        payload = []
        if system:
            payload.append({"role": "system", "content": system})
        payload.extend(messages)

        kwargs = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": self.temperature,
            "messages": payload,
            "timeout": timeout,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        response = self._client.chat.completions.create(**kwargs)
        message = response.choices[0].message
        calls = [
            ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments or "{}")
            for tc in (message.tool_calls or [])
        ]
        return LLMResponse(content=(message.content or "").strip(), tool_calls=calls)

    def _chat_anthropic(self, messages, tools, system, max_tokens, timeout) -> LLMResponse:
        # Anthropic takes the system prompt out of band
        system_parts = [system] if system else []
        chat_messages = []
        for m in messages:
            if m.get("role") == "system":
                system_parts.append(m.get("content", ""))
            else:
                chat_messages.append({"role": m["role"], "content": m.get("content", "")})

        kwargs = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": self.temperature,
            "messages": chat_messages,
            "timeout": timeout,
        }
        if system_parts:
            kwargs["system"] = "\n\n".join(system_parts)
        if tools:
            kwargs["tools"] = _to_anthropic_tools(tools)

        response = self._client.messages.create(**kwargs)
        texts = []
        calls = []
        for block in response.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                calls.append(ToolCall(id=block.id, name=block.name, arguments=json.dumps(block.input)))
        return LLMResponse(content="".join(texts).strip(), tool_calls=calls)

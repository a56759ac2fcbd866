"""Anthropic Claude provider using anthropic SDK with native async."""

import asyncio
import logging
import os
import time

import anthropic as anthropic_sdk

from config.config_loader import ModelConfig
from src.models import GenerationRequest, GenerationResponse
from src.providers.base import AIProvider, ProviderError, ProviderOutageError, classify_provider_error

logger = logging.getLogger(__name__)


class AnthropicProvider(AIProvider):
    """Anthropic Claude provider via anthropic SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def provider(self) -> str:
        return self._config.provider

    def model_string(self) -> str:
        return self._config.model

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        kwargs: dict = {
            "model": self._config.model,
            "max_tokens": request.max_tokens or self._config.max_tokens,
            "temperature": min(request.temperature, 1.0),
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.system:
            kwargs["system"] = request.system

        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.messages.create(**kwargs),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderOutageError(
                self._config.name, f"Request timed out after {self._config.timeout_sec}s"
            ) from exc
        except Exception as exc:
            raise classify_provider_error(self._config.name, exc) from exc

        latency = time.monotonic() - start

        text_blocks = [b.text for b in response.content if b.type == "text"] if response.content else []
        if not text_blocks:
            raise ProviderError(self._config.name, "No text blocks in response")

        input_tokens = output_tokens = 0
        if response.usage:
            input_tokens = response.usage.input_tokens
            output_tokens = response.usage.output_tokens

        logger.info(
            "Anthropic %s for %s: %.2fs, %d tokens",
            self._config.model,
            request.role,
            latency,
            input_tokens + output_tokens,
        )

        return GenerationResponse(
            text="\n".join(text_blocks),
            model_used=self._config.name,
            provider=self._config.provider,
            latency_ms=latency * 1000,
            cost=self._config.cost_for(input_tokens, output_tokens),
            token_count=input_tokens + output_tokens,
        )

"""OpenAI provider using openai SDK with native async."""

import asyncio
import logging
import os
import time

from openai import AsyncOpenAI

from config.config_loader import ModelConfig
from src.models import GenerationRequest, GenerationResponse
from src.providers.base import AIProvider, ProviderError, ProviderOutageError, classify_provider_error

logger = logging.getLogger(__name__)


class OpenAIProvider(AIProvider):
    """OpenAI provider via openai SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = self._build_client(api_key)

    def _build_client(self, api_key: str) -> AsyncOpenAI:
        return AsyncOpenAI(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def provider(self) -> str:
        return self._config.provider

    def model_string(self) -> str:
        return self._config.model

    def _messages(self, request: GenerationRequest) -> list[dict[str, str]]:
        messages = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.append({"role": "user", "content": request.prompt})
        return messages

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        kwargs: dict = {
            "model": self._config.model,
            "messages": self._messages(request),
            "max_tokens": request.max_tokens or self._config.max_tokens,
            "temperature": request.temperature,
        }
        if request.json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(**kwargs),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderOutageError(
                self._config.name, f"Request timed out after {self._config.timeout_sec}s"
            ) from exc
        except Exception as exc:
            raise classify_provider_error(self._config.name, exc) from exc

        latency = time.monotonic() - start

        choice = response.choices[0] if response.choices else None
        if not choice or not choice.message.content:
            raise ProviderError(self._config.name, "Empty response content")

        input_tokens = output_tokens = 0
        if response.usage:
            input_tokens = response.usage.prompt_tokens
            output_tokens = response.usage.completion_tokens

        logger.info(
            "%s %s for %s: %.2fs, %d tokens",
            self._config.provider,
            self._config.model,
            request.role,
            latency,
            input_tokens + output_tokens,
        )

        return GenerationResponse(
            text=choice.message.content,
            model_used=self._config.name,
            provider=self._config.provider,
            latency_ms=latency * 1000,
            cost=self._config.cost_for(input_tokens, output_tokens),
            token_count=input_tokens + output_tokens,
        )

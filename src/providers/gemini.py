"""Gemini provider using google-genai SDK with native async."""

import asyncio
import logging
import os
import time

from google import genai
from google.genai import types as genai_types

from config.config_loader import ModelConfig
from src.models import GenerationRequest, GenerationResponse
from src.providers.base import AIProvider, ProviderError, ProviderOutageError, classify_provider_error

logger = logging.getLogger(__name__)


class GeminiProvider(AIProvider):
    """Google Gemini provider via google-genai SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = genai.Client(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def provider(self) -> str:
        return self._config.provider

    def model_string(self) -> str:
        return self._config.model

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        gen_config = genai_types.GenerateContentConfig(
            max_output_tokens=request.max_tokens or self._config.max_tokens,
            temperature=request.temperature,
            system_instruction=request.system,
            response_mime_type="application/json" if request.json_mode else None,
        )

        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.aio.models.generate_content(
                    model=self._config.model,
                    contents=request.prompt,
                    config=gen_config,
                ),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderOutageError(
                self._config.name, f"Request timed out after {self._config.timeout_sec}s"
            ) from exc
        except Exception as exc:
            raise classify_provider_error(self._config.name, exc) from exc

        latency = time.monotonic() - start

        if not response.text:
            raise ProviderError(self._config.name, "Empty response text")

        input_tokens = output_tokens = 0
        if response.usage_metadata:
            input_tokens = response.usage_metadata.prompt_token_count or 0
            output_tokens = response.usage_metadata.candidates_token_count or 0

        logger.info(
            "Gemini %s for %s: %.2fs, %d tokens",
            self._config.model,
            request.role,
            latency,
            input_tokens + output_tokens,
        )

        return GenerationResponse(
            text=response.text,
            model_used=self._config.name,
            provider=self._config.provider,
            latency_ms=latency * 1000,
            cost=self._config.cost_for(input_tokens, output_tokens),
            token_count=input_tokens + output_tokens,
        )

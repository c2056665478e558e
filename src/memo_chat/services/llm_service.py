"""Completion service for streaming answers through LiteLLM.

LiteLLM gives one interface over OpenAI, Anthropic and Azure OpenAI, so the
model is picked purely by configuration (e.g. ``openai/gpt-4o-mini``).
"""

import os
from typing import Any, AsyncIterator, Dict, List, Optional

from litellm import acompletion
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from memo_chat.config import LLMSettings, get_settings
from memo_chat.utils.errors import LLMError
from memo_chat.utils.logging import get_logger

logger = get_logger("llm_service")


def _extract_delta(chunk: Any) -> str:
    """Pull the text increment out of a LiteLLM streaming chunk (object or dict)."""
    choices = chunk.get("choices") if isinstance(chunk, dict) else getattr(chunk, "choices", None)
    if not choices:
        return ""
    choice = choices[0]
    delta = choice.get("delta") if isinstance(choice, dict) else getattr(choice, "delta", None)
    if delta is None:
        return ""
    content = delta.get("content") if isinstance(delta, dict) else getattr(delta, "content", None)
    return content or ""


class LLMService:
    """Service for model routing and streamed answer generation.

    It handles:
    - Model selection (configured default)
    - Provider key validation per model prefix
    - Retry with exponential backoff when opening the stream
    - Automatic fallback to a secondary model if the primary cannot be opened
    """

    def __init__(self, llm_settings: Optional[LLMSettings] = None):
        """Initialize LLM service with configuration."""
        self.settings = llm_settings or get_settings().llm
        self.default_model = self.settings.default_model_name
        self.fallback_model = self.settings.fallback_model_name
        self.enable_fallbacks = self.settings.enable_fallbacks
        self.temperature = self.settings.temperature

        self._configure_litellm_environment()

    def _configure_litellm_environment(self) -> None:
        """LiteLLM reads provider keys from environment variables."""
        if self.settings.openai_api_key:
            os.environ["OPENAI_API_KEY"] = self.settings.openai_api_key
        if self.settings.anthropic_api_key:
            os.environ["ANTHROPIC_API_KEY"] = self.settings.anthropic_api_key
        if self.settings.azure_api_key:
            os.environ["AZURE_API_KEY"] = self.settings.azure_api_key
        if self.settings.azure_api_base:
            os.environ["AZURE_API_BASE"] = self.settings.azure_api_base

        logger.debug("LiteLLM environment variables configured")

    def _select_model(self) -> str:
        logger.debug(f"Using default model: {self.default_model}")
        return self.default_model

    def _validate_model_configuration(self, model: str) -> None:
        """Validate that the required API keys are configured for the model.

        Raises:
            LLMError: If required API keys are not configured.
        """
        if model.startswith("azure/"):
            if not self.settings.has_azure_openai:
                raise LLMError(
                    message=f"Azure OpenAI API key or base URL not configured for model {model}",
                    model=model,
                    details={"required": ["AZURE_API_KEY", "AZURE_API_BASE"]},
                )
        elif model.startswith("anthropic/"):
            if not self.settings.has_anthropic:
                raise LLMError(
                    message=f"Anthropic API key not configured for model {model}",
                    model=model,
                    details={"required": ["ANTHROPIC_API_KEY"]},
                )
        elif model.startswith("openai/"):
            if not self.settings.has_openai:
                raise LLMError(
                    message=f"OpenAI API key not configured for model {model}",
                    model=model,
                    details={"required": ["OPENAI_API_KEY"]},
                )

    async def _open(self, model: str, messages: List[Dict[str, str]]) -> Any:
        # Credential errors bypass the retry loop
        self._validate_model_configuration(model)
        return await self._open_stream(model, messages)

    @retry(
        retry=retry_if_exception_type(LLMError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def _open_stream(self, model: str, messages: List[Dict[str, str]]) -> Any:
        """Open a streaming completion via LiteLLM with retry logic.

        Raises:
            LLMError: If the stream cannot be opened after retries.
        """
        try:
            logger.debug(f"Opening completion stream: model={model}")
            return await acompletion(
                model=model,
                messages=messages,
                stream=True,
                temperature=self.temperature,
            )
        except Exception as e:
            logger.error(
                f"LLM call failed for model {model}: {e}",
                extra={"model": model, "error_type": type(e).__name__},
            )
            raise LLMError(
                message=f"LLM call failed: {str(e)}",
                model=model,
                details={"error_type": type(e).__name__},
            ) from e

    async def _open_with_fallback(self, messages: List[Dict[str, str]]) -> Any:
        primary_model = self._select_model()
        try:
            return await self._open(primary_model, messages)
        except LLMError as e:
            if not (
                self.enable_fallbacks
                and self.fallback_model
                and primary_model != self.fallback_model
            ):
                logger.error(f"LLM call failed and no fallback available: {e}")
                raise

            logger.warning(
                f"Primary model {primary_model} failed, attempting fallback: {self.fallback_model}",
                extra={"primary_model": primary_model, "fallback_model": self.fallback_model},
            )
            try:
                return await self._open(self.fallback_model, messages)
            except LLMError as fallback_error:
                raise LLMError(
                    message=f"All models failed. Primary: {e.message}, Fallback: {fallback_error.message}",
                    model=primary_model,
                    details={
                        "primary_model": primary_model,
                        "fallback_model": self.fallback_model,
                    },
                ) from fallback_error

    async def stream_complete(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        """Stream the answer as text increments.

        Empty increments are skipped. Closing this generator early closes the
        provider stream too.

        Raises:
            LLMError: If no model could be opened or the stream breaks midway.
        """
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        response = await self._open_with_fallback(messages)

        try:
            async for chunk in response:
                content = _extract_delta(chunk)
                if content:
                    yield content
        except LLMError:
            raise
        except Exception as e:
            raise LLMError(message=f"Completion stream failed: {e}") from e
        finally:
            aclose = getattr(response, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as close_error:
                    logger.debug(f"Ignoring error while closing completion stream: {close_error}")

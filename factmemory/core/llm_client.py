import asyncio
from enum import Enum
from typing import Any, Dict, Optional, Union

import httpx
from httpx import HTTPStatusError, TimeoutException
from google import genai
from google.genai import types

from factmemory.core.config import LLMSettings
from factmemory.core.exceptions import APIClientError, APITimeoutError, ConfigurationError
from factmemory.utils.logging import get_logger

LOGGER = get_logger(__name__)


class BaseLLMClient:
    """HTTP client for JSON APIs with retries and exponential backoff."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: int = 60,
        max_retries: int = 3,
        retry_delay: float = 1,
    ):
        """Initialize the client.

        Args:
            api_key: Bearer token for authentication
            base_url: Endpoint URL
            timeout: Request timeout in seconds
            max_retries: Maximum attempts
            retry_delay: Base delay for exponential backoff
        """
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.logger = LOGGER

    async def call_api(
        self,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """POST ``payload`` with retry logic.

        Raises:
            APIClientError: If the call fails after retries or on a non-retryable 4xx
            APITimeoutError: If every attempt timed out
        """
        request_headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if headers:
            request_headers.update(headers)

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for attempt in range(self.max_retries):
                try:
                    response = await client.post(self.base_url, headers=request_headers, json=payload)
                    response.raise_for_status()
                    return response.json()

                except HTTPStatusError as e:
                    await self._handle_http_error(e, attempt)

                except TimeoutException as e:
                    await self._handle_timeout_error(e, attempt)

                except httpx.HTTPError as e:
                    await self._handle_transport_error(e, attempt)

        raise APIClientError(f"Failed to call API {self.base_url} after {self.max_retries} attempts")

    async def _handle_http_error(self, error: HTTPStatusError, attempt: int):
        status_code = error.response.status_code
        error_body = error.response.text

        self.logger.warning(
            f"API HTTP error (Attempt {attempt + 1}/{self.max_retries})",
            extra={"url": self.base_url, "status_code": status_code, "error_body": error_body[:500]},
        )

        # 4xx other than rate limiting will not succeed on retry
        if 400 <= status_code < 500 and status_code != 429:
            raise APIClientError(f"API Client Error {status_code}: {error_body}") from error

        if attempt < self.max_retries - 1:
            await self._wait_before_retry(attempt)
        else:
            raise APIClientError(f"API HTTP Error {status_code} after retries") from error

    async def _handle_timeout_error(self, error: TimeoutException, attempt: int):
        self.logger.warning(
            f"API Timeout (Attempt {attempt + 1}/{self.max_retries})",
            extra={"url": self.base_url},
        )

        if attempt < self.max_retries - 1:
            await self._wait_before_retry(attempt)
        else:
            raise APITimeoutError(f"API Timeout after {self.max_retries} attempts") from error

    async def _handle_transport_error(self, error: httpx.HTTPError, attempt: int):
        self.logger.warning(
            f"API transport error (Attempt {attempt + 1}/{self.max_retries})",
            extra={"url": self.base_url, "error": str(error)},
        )

        if attempt < self.max_retries - 1:
            await self._wait_before_retry(attempt)
        else:
            raise APIClientError(f"API Error: {error}") from error

    async def _wait_before_retry(self, attempt: int):
        """Exponential backoff wait."""
        await asyncio.sleep(self.retry_delay * (2 ** attempt))


class GeminiClient:
    """Wrapper for the Google Gemini API client."""

    def __init__(self, api_key: str, model: str = "gemini-2.0-flash", max_retries: int = 2):
        self.model = model
        self.max_retries = max_retries
        self.client = genai.Client(api_key=api_key)
        LOGGER.info(f"Initialized Gemini client with model {self.model}")

    async def generate_content(
        self,
        contents: str,
        system_instruction: Optional[str] = None,
        json_mode: bool = False,
    ) -> str:
        """Generate a completion for ``contents``.

        Raises:
            APIClientError: If generation fails after retries
        """
        config = types.GenerateContentConfig(temperature=0.0)
        if json_mode:
            config.response_mime_type = "application/json"
        if system_instruction:
            config.system_instruction = system_instruction

        for attempt in range(self.max_retries):
            try:
                response = await self.client.aio.models.generate_content(
                    model=self.model,
                    contents=contents,
                    config=config,
                )
                if not response.text:
                    LOGGER.warning("Empty response from Gemini")
                    return ""
                return response.text

            except Exception as e:
                LOGGER.warning(f"Gemini API error (Attempt {attempt + 1}/{self.max_retries}): {e}")
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(2 ** attempt)
                else:
                    raise APIClientError(f"Gemini generation failed: {e}", original_error=e) from e

        raise APIClientError("Gemini generation failed")


class OpenRouterClient:
    """OpenRouter chat-completions client with the GeminiClient interface."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://openrouter.ai/api/v1/chat/completions",
        timeout: int = 60,
        max_retries: int = 3,
    ):
        self.model = model
        self.client = BaseLLMClient(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=max_retries,
        )
        LOGGER.info(f"Initialized OpenRouter client with model {self.model}")

    async def generate_content(
        self,
        contents: str,
        system_instruction: Optional[str] = None,
        json_mode: bool = False,
    ) -> str:
        """Generate a completion for ``contents``.

        Raises:
            APIClientError: If the response has no choices or the call fails
        """
        messages = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        messages.append({"role": "user", "content": contents})

        payload: Dict[str, Any] = {"model": self.model, "messages": messages, "temperature": 0.0}
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        response = await self.client.call_api(payload=payload)

        choices = response.get("choices") or []
        if not choices:
            LOGGER.error(f"Unexpected OpenRouter response format: {response}")
            raise APIClientError("Invalid response format from OpenRouter")

        content = choices[0].get("message", {}).get("content") or ""
        if not content:
            LOGGER.warning("Empty response from OpenRouter")
        return content


class LLMProvider(str, Enum):
    """Supported LLM providers."""

    GEMINI = "gemini"
    OPENROUTER = "openrouter"


def create_llm_client(llm_settings: LLMSettings) -> Union[GeminiClient, OpenRouterClient]:
    """Build the configured provider client.

    Raises:
        ConfigurationError: If the provider is unknown or has no API key
    """
    try:
        provider = LLMProvider(llm_settings.provider)
    except ValueError as e:
        raise ConfigurationError(f"Unsupported LLM provider: {llm_settings.provider}") from e

    if not llm_settings.is_configured:
        raise ConfigurationError(f"No API key configured for LLM provider {provider.value}")

    if provider == LLMProvider.GEMINI:
        return GeminiClient(
            api_key=llm_settings.gemini_api_key,
            model=llm_settings.gemini_model,
            max_retries=llm_settings.max_retries,
        )

    return OpenRouterClient(
        api_key=llm_settings.openrouter_api_key,
        model=llm_settings.openrouter_model,
        base_url=llm_settings.openrouter_api_url,
        timeout=llm_settings.timeout,
        max_retries=llm_settings.max_retries,
    )

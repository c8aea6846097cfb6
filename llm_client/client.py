"""
OpenAI-compatible client for local LLMs, used as the transport of the
inference collaborator.
"""

import logging
import time
from typing import Dict, List, Optional

import openai
from openai import APIConnectionError, APIError, APITimeoutError

logger = logging.getLogger(__name__)


class LocalLLMClient:
    """Client for interacting with local LLM via OpenAI-compatible API."""

    def __init__(self, api_base: str, api_key: str, model: str,
                 temperature: float, max_tokens: int,
                 timeout: int, max_retries: int, retry_backoff_base: int, test_message: str):
        """
        Initialize local LLM client.

        Args:
            api_base: Base URL for LLM API (e.g., http://localhost:11434/v1 for Ollama)
            api_key: API key (can be dummy for local LLMs)
            model: Model name as recognized by the server
            temperature: Sampling temperature
            max_tokens: Maximum tokens in response
            timeout: Request timeout in seconds
            max_retries: Maximum attempts per query
            retry_backoff_base: Base for exponential backoff (wait_time = retry_backoff_base ** attempt)
            test_message: Message used for connection test
        """
        self.api_base = api_base
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_backoff_base = retry_backoff_base
        self.test_message = test_message

        # Retries are handled here, not inside the SDK
        self.client = openai.OpenAI(
            api_key=api_key,
            base_url=api_base,
            timeout=timeout,
            max_retries=0,
        )

    @staticmethod
    def _messages(prompt: str, system_message: Optional[str]) -> List[Dict[str, str]]:
        messages = []
        if system_message:
            messages.append({"role": "system", "content": system_message})
        messages.append({"role": "user", "content": prompt})
        return messages

    def query(self, prompt: str, system_message: Optional[str]) -> str:
        """
        Query the LLM with a prompt.

        Args:
            prompt: User prompt
            system_message: System message (None for no system message)

        Returns:
            LLM response text

        Raises:
            ConnectionError: Server unreachable after all attempts
            TimeoutError: Every attempt timed out
            ValueError: The API rejected the request (not retried)
            RuntimeError: Any other failure after all attempts
        """
        for attempt in range(self.max_retries):
            try:
                response = self.client.chat.completions.create(
                    model=self.model,
                    messages=self._messages(prompt, system_message),
                    temperature=self.temperature,
                    max_tokens=self.max_tokens
                )
                return (response.choices[0].message.content or '').strip()

            # APITimeoutError subclasses APIConnectionError, so it is caught first
            except APITimeoutError as e:
                if attempt < self.max_retries - 1:
                    self._backoff(attempt, "LLM request timeout", e)
                else:
                    raise TimeoutError(f"LLM request timed out after {self.max_retries} attempts (timeout={self.timeout}s).") from e
            except APIConnectionError as e:
                if attempt < self.max_retries - 1:
                    self._backoff(attempt, "LLM connection error", e)
                else:
                    raise ConnectionError(f"LLM connection failed after {self.max_retries} attempts. Check api_base ({self.api_base}) and ensure the server is running.") from e
            except APIError as e:
                # API errors (e.g., invalid model, rate limit) - don't retry
                raise ValueError(f"LLM API error: {e}. Check model name ({self.model}) and API configuration.") from e
            except Exception as e:
                if attempt < self.max_retries - 1:
                    self._backoff(attempt, "LLM request failed", e)
                else:
                    raise RuntimeError(f"LLM request failed after {self.max_retries} attempts: {e}") from e

    def _backoff(self, attempt: int, what: str, error: Exception):
        wait_time = self.retry_backoff_base ** attempt
        logger.warning("%s, retrying in %ss: %s", what, wait_time, error)
        time.sleep(wait_time)

    def test_connection(self) -> bool:
        """Test if LLM server is accessible."""
        try:
            response = self.query(self.test_message, None)
            return len(response) > 0
        except Exception as e:
            logger.error("LLM connection test failed: %s", e)
            return False

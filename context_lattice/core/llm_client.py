"""
LLM provider boundary.

Anything with an async `complete(messages, temperature, max_tokens) -> str`
can drive the compression strategies. OpenAIChatClient talks to an
OpenAI-compatible /chat/completions endpoint with `requests`; the blocking
HTTP call runs in the default executor.
"""

import asyncio
import copy
import logging
import os
from functools import partial
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import requests
from dotenv import load_dotenv

from ..errors import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o-mini"


@runtime_checkable
class LLMProvider(Protocol):
    async def complete(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.3,
        max_tokens: int = 500,
    ) -> str:
        ...


class OpenAIChatClient:
    """
    Minimal chat-completions client.

    Args:
        model: Model name (default gpt-4o-mini)
        api_key: API key; read from OPENAI_API_KEY when omitted
        base_url: OpenAI-compatible API root; OPENAI_BASE_URL when omitted
        timeout: HTTP timeout in seconds
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ):
        load_dotenv()
        self.model = model
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not self.api_key:
            raise ValueError("OPENAI_API_KEY not found in environment variables")
        self.base_url = (base_url or os.getenv("OPENAI_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _post(self, payload: Dict[str, Any]) -> requests.Response:
        return self.session.post(
            f"{self.base_url}/chat/completions",
            headers=self._headers(),
            json=payload,
            timeout=self.timeout,
        )

    @staticmethod
    def _rejects_max_tokens(response: requests.Response) -> bool:
        try:
            body = response.json()
        except ValueError:
            body = response.text
        message = body.get("error", {}).get("message") if isinstance(body, dict) else body
        return bool(message) and "Unsupported parameter" in str(message) and "max_tokens" in str(message)

    def complete_sync(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.3,
        max_tokens: int = 500,
    ) -> str:
        """Blocking chat completion. Raises ProviderError on any failure."""
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }

        try:
            response = self._post(payload)
            if response.status_code == 400 and self._rejects_max_tokens(response):
                # Newer models only accept max_completion_tokens
                adjusted = copy.deepcopy(payload)
                adjusted["max_completion_tokens"] = adjusted.pop("max_tokens")
                logger.info("🔁 Retrying chat/completions with 'max_completion_tokens' instead of 'max_tokens'")
                response = self._post(adjusted)
            response.raise_for_status()
            result = response.json()
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"Chat completion request failed: {e}") from e
        except ValueError as e:
            raise ProviderError(f"Chat completion returned invalid JSON: {e}") from e

        try:
            content = result["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Unexpected chat completion payload: {result!r}") from e

        usage = result.get("usage") or {}
        if usage:
            logger.debug(f"LLM usage: {usage.get('total_tokens', 0)} tokens ({self.model})")
        return content or ""

    async def complete(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.3,
        max_tokens: int = 500,
    ) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            partial(self.complete_sync, messages, temperature=temperature, max_tokens=max_tokens),
        )

    def close(self) -> None:
        self.session.close()

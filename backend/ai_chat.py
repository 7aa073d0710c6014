"""
AI chat collaborator used by the rule builder.

The chat model is advisory only: its replies steer the conversation but
never become committed data on their own.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import httpx

from config import get_settings
from exceptions import ProviderError

logger = logging.getLogger(__name__)


class ChatClient(ABC):
    """Anything that can answer a list of {role, content} messages."""

    @abstractmethod
    async def chat(self, messages: List[Dict[str, str]]) -> str:
        """Return the assistant's reply text."""
        pass


class OllamaChatClient(ChatClient):
    """Chat client for an Ollama server's /api/chat endpoint."""

    provider_name = "ollama"

    def __init__(
        self,
        base_url: str,
        model: str,
        temperature: float = 0.3,
        timeout: float = 120.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.timeout = timeout

    async def chat(self, messages: List[Dict[str, str]]) -> str:
        payload = {
            "model": self.model,
            "messages": messages,
            "stream": False,
            "options": {"temperature": self.temperature},
        }
        logger.debug(f"[AI-CHAT] Sending {len(messages)} messages to {self.model}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.base_url}/api/chat", json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            raise ProviderError(
                f"AI chat timed out after {self.timeout}s", provider=self.provider_name
            ) from e
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"AI chat returned HTTP {e.response.status_code}",
                provider=self.provider_name,
                details={"status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"AI chat request failed: {e}", provider=self.provider_name) from e
        except ValueError as e:
            raise ProviderError("AI chat returned invalid JSON", provider=self.provider_name) from e

        message = data.get("message") if isinstance(data, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise ProviderError("AI chat response has no message content", provider=self.provider_name)
        return content


_chat_client: Optional[ChatClient] = None


def get_chat_client() -> ChatClient:
    """Get the chat client configured in settings."""
    global _chat_client
    if _chat_client is None:
        settings = get_settings()
        _chat_client = OllamaChatClient(
            base_url=settings.ai_chat_url,
            model=settings.ai_chat_model,
            temperature=settings.ai_chat_temperature,
            timeout=settings.ai_chat_timeout_seconds,
        )
    return _chat_client


def reset_chat_client() -> None:
    """Drop the cached client so new settings take effect."""
    global _chat_client
    _chat_client = None

"""
LLM client adapter for the Ticket Auto-Reply Pipeline.

Talks to any OpenAI-compatible ``/chat/completions`` endpoint over plain
HTTP. Provider-side problems (non-success status, malformed body) mean
"no reply" and are logged for diagnosis; transport problems (timeouts,
connection errors) are raised so the job can be retried.
"""

import logging
from typing import Any, Optional, Sequence

import httpx

from .config import AutoReplyConfig
from .models import HistoryEntry


logger = logging.getLogger(__name__)


class LLMTransportError(Exception):
    """The LLM provider could not be reached or timed out."""
    pass


def build_chat_messages(
    system_prompt: str,
    history: Sequence[HistoryEntry],
    user_message: str,
    account_context: Optional[str] = None,
) -> list[dict[str, str]]:
    """
    Build the ordered chat transcript.

    Args:
        system_prompt: Base persona prompt.
        history: Prior conversation, oldest first.
        user_message: The message being answered, always last.
        account_context: Optional context block appended to the system prompt.

    Returns:
        List of ``{"role", "content"}`` dicts.
    """
    if account_context:
        system_prompt = f"{system_prompt}\n\n{account_context}"

    messages = [{"role": "system", "content": system_prompt}]
    messages.extend({"role": entry.role, "content": entry.message} for entry in history)
    messages.append({"role": "user", "content": user_message})
    return messages


def extract_reply(data: Any) -> Optional[str]:
    """Return the first completion's content, or None if the body is malformed."""
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    if not isinstance(content, str):
        return None
    return content


class ChatCompletionClient:
    """
    Client for an OpenAI-compatible chat-completion endpoint.

    One instance is built per decision from the work item's config snapshot,
    so model, credentials and timeout always match the snapshot.
    """

    def __init__(self, config: AutoReplyConfig):
        """
        Initialize the client.

        Args:
            config: Resolved options carrying endpoint, model and credentials.
        """
        self._config = config

    @property
    def endpoint(self) -> str:
        return f"{self._config.ai_api_base.rstrip('/')}/chat/completions"

    def build_payload(self, messages: list[dict[str, str]]) -> dict[str, Any]:
        return {
            "model": self._config.ai_model,
            "messages": messages,
            "temperature": self._config.ai_temperature,
            "max_tokens": self._config.ai_max_tokens,
        }

    def complete(
        self,
        system_prompt: str,
        history: Sequence[HistoryEntry],
        user_message: str,
        account_context: Optional[str] = None,
    ) -> Optional[str]:
        """
        Request a reply for the conversation.

        Args:
            system_prompt: Base persona prompt.
            history: Curated conversation history.
            user_message: The customer message to answer.
            account_context: Optional account context block.

        Returns:
            The reply text verbatim, or None if the provider gave no usable reply.

        Raises:
            LLMTransportError: On timeout or connection failure.
        """
        messages = build_chat_messages(system_prompt, history, user_message, account_context)
        payload = self.build_payload(messages)
        headers = {
            "Authorization": f"Bearer {self._config.ai_api_key}",
            "Content-Type": "application/json",
        }

        logger.debug(
            f"Calling {self.endpoint} with model {self._config.ai_model} "
            f"({len(messages)} messages)"
        )

        try:
            with httpx.Client(timeout=self._config.ai_timeout) as client:
                response = client.post(self.endpoint, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            logger.error(f"LLM request timed out after {self._config.ai_timeout}s: {e}")
            raise LLMTransportError(f"Request timed out: {e}") from e
        except httpx.RequestError as e:
            logger.error(f"LLM request failed: {e}")
            raise LLMTransportError(f"Request failed: {e}") from e

        if not response.is_success:
            logger.error(
                f"LLM API call failed with status {response.status_code}: {response.text}"
            )
            return None

        try:
            data = response.json()
        except ValueError:
            logger.error(f"LLM API returned invalid JSON: {response.text}")
            return None

        reply = extract_reply(data)
        if reply is None:
            logger.error(f"LLM API returned unexpected body: {response.text}")
            return None

        logger.info(f"LLM reply received ({len(reply)} chars)")
        return reply

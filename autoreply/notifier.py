"""
Operator notification adapter.

Sends escalation alerts to the administrators through the Telegram Bot API.
Alerts are best-effort: failures are logged and never propagate into the
auto-reply job.
"""

import logging
from typing import Optional

import httpx
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from .config import TelegramConfig
from .models import Account, Ticket


logger = logging.getLogger(__name__)


class NotifierError(Exception):
    """Error while delivering an operator alert."""
    pass


def escape_md(value: str) -> str:
    """Escape characters with meaning in Telegram legacy Markdown."""
    for ch in "_*`[":
        value = value.replace(ch, f"\\{ch}")
    return value


def format_escalation_alert(ticket: Ticket, account: Account) -> str:
    """
    Format the alert sent when a customer asks for a human agent.

    Args:
        ticket: The escalated ticket.
        account: The ticket owner.

    Returns:
        Markdown-formatted alert text.
    """
    divider = "━━━━━━━━━━━━━━━━━━━━"
    lines = [
        "🔔 *Customer requested a human agent*",
        divider,
        f"📮 Ticket ID: #{ticket.id}",
        f"👤 User: {escape_md(account.email)}",
        f"📝 Subject: {escape_md(ticket.subject)}",
        divider,
        "⚠️ Please handle this ticket promptly",
    ]
    return "\n".join(lines)


class TelegramNotifier:
    """
    Admin notifier backed by the Telegram Bot API.

    Each configured admin chat receives the alert; transport errors are
    retried a few times with exponential backoff before giving up on that chat.
    """

    MAX_ATTEMPTS = 3

    def __init__(
        self,
        config: TelegramConfig,
        retry_wait: Optional[wait_base] = None,
    ):
        """
        Initialize the notifier.

        Args:
            config: Bot token, admin chats and API settings.
            retry_wait: Wait strategy between retries (exponential by default).
        """
        self._config = config
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=5)

    def _endpoint(self) -> str:
        return f"{self._config.api_base.rstrip('/')}/bot{self._config.bot_token}/sendMessage"

    def _post(self, client: httpx.Client, chat_id: str, text: str, urgent: bool) -> None:
        payload = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "Markdown",
            "disable_notification": not urgent,
            "disable_web_page_preview": True,
        }
        response = client.post(self._endpoint(), json=payload)
        if not response.is_success:
            raise NotifierError(f"Bot API error {response.status_code}: {response.text}")

    def send_to_chat(self, client: httpx.Client, chat_id: str, text: str, urgent: bool) -> None:
        """
        Send one alert to one chat, retrying transport errors.

        Raises:
            NotifierError: If the Bot API rejected the message.
            httpx.TransportError: If the API stayed unreachable.
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.MAX_ATTEMPTS),
            wait=self._retry_wait,
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
            before_sleep=lambda retry_state: logger.warning(
                f"Retrying Telegram alert to {chat_id} after error: "
                f"{retry_state.outcome.exception()}"
            ),
        )
        for attempt in retrying:
            with attempt:
                self._post(client, chat_id, text, urgent)

    def notify_admins(self, formatted_message: str, urgent: bool = True) -> int:
        """
        Deliver an alert to every admin chat.

        Args:
            formatted_message: Markdown alert text.
            urgent: Send with sound; non-urgent alerts are delivered silently.

        Returns:
            Number of chats the alert was delivered to.
        """
        if not self._config.is_enabled:
            logger.info("Telegram alerts not configured, skipping admin notification")
            return 0

        delivered = 0
        with httpx.Client(timeout=self._config.request_timeout) as client:
            for chat_id in self._config.admin_chat_ids:
                try:
                    self.send_to_chat(client, chat_id, formatted_message, urgent)
                    delivered += 1
                except (NotifierError, httpx.HTTPError) as e:
                    logger.error(f"Failed to send Telegram alert to {chat_id}: {e}")

        logger.info(
            f"Admin alert delivered to {delivered}/{len(self._config.admin_chat_ids)} chats"
        )
        return delivered

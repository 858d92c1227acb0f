"""
Decision engine for the Ticket Auto-Reply Pipeline.

Runs the reply strategies strictly in this order and stops at the first
one that produces a reply:

1. Escalation to a human (checked unconditionally)
2. Keyword rule match (``enable_keyword_reply``)
3. LLM-generated reply (``enable_ai_reply``)

When nothing applies the outcome source is ``none``, which is a normal
terminal state rather than an error.
"""

import json
import logging
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from .config import AutoReplyConfig
from .context import build_context
from .history import build_history
from .llm_client import ChatCompletionClient, LLMTransportError
from .models import ReplyOutcome, ReplySource, StrategyResult, Ticket
from .ports import TicketStore


logger = logging.getLogger(__name__)


ESCALATION_REPLY = (
    "✅ You have been transferred to a human agent. Our support staff will reply "
    "as soon as possible.\n\n"
    "While you wait, you can:\n"
    "• Browse our knowledge base for answers to common questions\n"
    "• Add more details about your issue to this ticket"
)


class DecisionError(Exception):
    """A strategy failed in a way that should be retried."""
    pass


def parse_transfer_keywords(raw: str) -> list[str]:
    """Split a comma-separated keyword list, dropping blank entries."""
    return [keyword.strip() for keyword in raw.split(",") if keyword.strip()]


def should_escalate(message: str, keywords: list[str]) -> bool:
    """Check if the message contains any escalation keyword (case-insensitive)."""
    lowered = message.lower()
    return any(keyword.lower() in lowered for keyword in keywords)


def decode_keyword_rules(raw: Any) -> dict[str, str]:
    """
    Decode the keyword rule set from its configured form.

    Accepts a JSON object string or an already-decoded mapping. Anything
    else is logged and treated as an empty rule set.

    Args:
        raw: Configured ``keyword_rules`` value.

    Returns:
        Mapping of keyword to reply text, in original order.
    """
    if isinstance(raw, Mapping):
        rules = raw
    else:
        try:
            rules = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Keyword rules could not be decoded, ignoring them: {e}")
            return {}

    if not isinstance(rules, Mapping):
        logger.warning(
            f"Keyword rules must be a JSON object, got {type(rules).__name__}; ignoring them"
        )
        return {}

    return {
        str(keyword): str(reply)
        for keyword, reply in rules.items()
        if str(keyword) and reply is not None
    }


def match_keyword_reply(message: str, rules: Mapping[str, str]) -> Optional[str]:
    """
    Return the reply of the first matching keyword, longest keyword first.

    Sorting is stable, so keywords of equal length keep their original order.
    """
    lowered = message.lower()
    for keyword, reply in sorted(rules.items(), key=lambda item: len(item[0]), reverse=True):
        if keyword.lower() in lowered:
            logger.info(f"Keyword matched: '{keyword}' (message: {message[:50]!r})")
            return reply
    return None


class DecisionEngine:
    """
    Decides how a single customer message is answered.

    The engine reads only; delivering the outcome is left to the job runner.
    """

    def __init__(
        self,
        store: TicketStore,
        client_factory: Callable[[AutoReplyConfig], ChatCompletionClient] = ChatCompletionClient,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize the engine.

        Args:
            store: Ticket store used for history and account lookups.
            client_factory: Builds an LLM client from a config snapshot.
            clock: Wall-clock source for the account context block.
        """
        self._store = store
        self._client_factory = client_factory
        self._clock = clock

    def decide(self, ticket: Ticket, message: str, config: AutoReplyConfig) -> ReplyOutcome:
        """
        Run the strategy chain for one message.

        Args:
            ticket: Ticket the message was posted on.
            message: Raw customer message.
            config: Config snapshot of the work item.

        Returns:
            ReplyOutcome naming the strategy that produced the reply.

        Raises:
            DecisionError: If a strategy errored and the job should be retried.
        """
        chain: list[tuple[ReplySource, Callable[[], StrategyResult]]] = [
            (ReplySource.ESCALATION, lambda: self.check_escalation(ticket, message, config)),
            (ReplySource.KEYWORD, lambda: self.match_keyword(ticket, message, config)),
            (ReplySource.AI, lambda: self.generate_ai_reply(ticket, message, config)),
        ]

        for source, strategy in chain:
            result = strategy()
            if result.is_errored:
                raise DecisionError(
                    f"{source.value} strategy failed for ticket {ticket.id}: {result.error}"
                ) from result.error
            if result.is_handled:
                logger.info(f"Ticket {ticket.id}: {source.value} strategy produced a reply")
                return ReplyOutcome(text=result.text, source=source)

        logger.info(f"Ticket {ticket.id}: no strategy produced a reply")
        return ReplyOutcome.none()

    def check_escalation(
        self, ticket: Ticket, message: str, config: AutoReplyConfig
    ) -> StrategyResult:
        keywords = parse_transfer_keywords(config.transfer_keywords)
        if should_escalate(message, keywords):
            logger.info(f"Ticket {ticket.id}: escalation keyword detected")
            return StrategyResult.handled(ESCALATION_REPLY)
        return StrategyResult.passed()

    def match_keyword(
        self, ticket: Ticket, message: str, config: AutoReplyConfig
    ) -> StrategyResult:
        if not config.enable_keyword_reply:
            return StrategyResult.passed()

        rules = decode_keyword_rules(config.keyword_rules)
        reply = match_keyword_reply(message, rules)
        if not reply:
            logger.info(f"Ticket {ticket.id}: no keyword matched ({len(rules)} rules)")
            return StrategyResult.passed()
        return StrategyResult.handled(reply)

    def generate_ai_reply(
        self, ticket: Ticket, message: str, config: AutoReplyConfig
    ) -> StrategyResult:
        """
        Ask the LLM for a context-aware reply.

        A missing credential or an empty reply passes; only transport
        failures are reported as errors.
        """
        if not config.enable_ai_reply:
            logger.debug(f"Ticket {ticket.id}: AI reply disabled")
            return StrategyResult.passed()

        if not config.ai_api_key:
            logger.warning(f"Ticket {ticket.id}: AI reply enabled but no API key configured")
            return StrategyResult.passed()

        history = build_history(
            self._store,
            ticket,
            config.max_conversation_history,
            config.synthetic_markers,
            current_message=message,
        )

        account_context = None
        if config.enable_user_context:
            account_context = build_context(self._store, ticket, config, self._clock())

        client = self._client_factory(config)
        try:
            reply = client.complete(
                config.ai_system_prompt,
                history,
                message,
                account_context=account_context,
            )
        except LLMTransportError as e:
            return StrategyResult.errored(e)

        if not reply:
            logger.info(f"Ticket {ticket.id}: AI produced no reply")
            return StrategyResult.passed()
        return StrategyResult.handled(reply)

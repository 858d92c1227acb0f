"""
Conversation history builder.

Turns the persisted messages of a ticket into the ordered history that is
sent to the LLM, leaving out replies this pipeline produced itself.
"""

import logging
from typing import Iterable, Optional

from .models import HistoryEntry, Ticket, TicketMessage
from .ports import TicketStore


logger = logging.getLogger(__name__)


def is_synthetic(message: TicketMessage, markers: Iterable[str]) -> bool:
    """Check if a message was authored by the auto-reply pipeline."""
    return any(marker and marker in message.message for marker in markers)


def build_history(
    store: TicketStore,
    ticket: Ticket,
    max_history: int,
    markers: Iterable[str],
    current_message: Optional[str] = None,
) -> list[HistoryEntry]:
    """
    Build the conversation history of a ticket, oldest first.

    Synthetic replies are removed before the cap is applied, so the cap
    always counts real conversation turns. When ``current_message`` is
    given and is the newest customer entry it is left out as well, since
    the caller sends it separately.

    Args:
        store: Ticket store to read messages from.
        ticket: Ticket whose conversation is rebuilt.
        max_history: Keep only the last N entries; <= 0 means unbounded.
        markers: Substrings identifying synthetic replies.
        current_message: Text of the message being answered, if persisted.

    Returns:
        Ordered list of HistoryEntry objects.
    """
    markers = tuple(markers)
    messages = sorted(store.list_messages(ticket.id), key=lambda m: m.id)

    entries = [
        HistoryEntry(
            is_from_user=msg.user_id is not None and msg.user_id == ticket.user_id,
            message=msg.message,
        )
        for msg in messages
        if not is_synthetic(msg, markers)
    ]
    skipped = len(messages) - len(entries)

    if (
        current_message is not None
        and entries
        and entries[-1].is_from_user
        and entries[-1].message == current_message
    ):
        entries.pop()

    if max_history > 0 and len(entries) > max_history:
        logger.info(
            f"History for ticket {ticket.id} limited from {len(entries)} "
            f"to {max_history} entries"
        )
        entries = entries[-max_history:]

    logger.debug(
        f"Built history for ticket {ticket.id}: {len(entries)} entries "
        f"({skipped} synthetic skipped, max_history={max_history})"
    )
    return entries

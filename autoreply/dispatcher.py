"""
Trigger dispatcher.

Receives "ticket created" and "user replied" events from the helpdesk and
queues one auto-reply work item per event. Dispatch is best-effort: it must
never break the request that fired the event.
"""

import logging
from typing import Any, Callable, Mapping, Optional, Union

from .config import AutoReplyConfig
from .jobs import AutoReplyLane
from .models import Ticket, TicketMessage, WorkItem
from .ports import TicketStore


logger = logging.getLogger(__name__)


ConfigSource = Union[Mapping[str, Any], Callable[[], Mapping[str, Any]]]


class Dispatcher:
    """Turns ticket events into queued work items."""

    def __init__(self, store: TicketStore, lane: AutoReplyLane, config_source: ConfigSource):
        """
        Initialize the dispatcher.

        Args:
            store: Ticket store used to fetch the latest message.
            lane: Job lane work items are sent to.
            config_source: Option mapping, or a callable returning the current one.
        """
        self._store = store
        self._lane = lane
        self._config_source = config_source

    def _resolve_config(self) -> AutoReplyConfig:
        source = self._config_source
        values = source() if callable(source) else source
        return AutoReplyConfig.from_mapping(values)

    def handle_ticket_created(self, ticket: Ticket) -> Optional[WorkItem]:
        return self.on_ticket_event(ticket, self._store.latest_message(ticket.id))

    def handle_user_replied(self, ticket: Ticket) -> Optional[WorkItem]:
        return self.on_ticket_event(ticket, self._store.latest_message(ticket.id))

    def on_ticket_event(
        self, ticket: Ticket, latest_message: Optional[TicketMessage]
    ) -> Optional[WorkItem]:
        """
        Queue an auto-reply for the latest message of a ticket.

        Only messages written by the ticket owner are answered, so staff
        replies and the pipeline's own replies never trigger a decision.

        Args:
            ticket: Ticket the event fired for.
            latest_message: Most recent message, None if there is none.

        Returns:
            The queued WorkItem, or None if nothing was queued.
        """
        if latest_message is None:
            return None

        if latest_message.user_id != ticket.user_id:
            logger.debug(
                f"Latest message {latest_message.id} on ticket {ticket.id} is not "
                f"from the ticket owner, skipping auto-reply"
            )
            return None

        try:
            item = WorkItem(
                ticket_id=ticket.id,
                raw_message=latest_message.message,
                config=self._resolve_config(),
                attempt=1,
            )
            self._lane.enqueue(item)
        except Exception as e:
            logger.error(f"Failed to dispatch auto-reply job for ticket {ticket.id}: {e}")
            return None

        logger.info(
            f"Auto-reply job dispatched for ticket {ticket.id} "
            f"({len(latest_message.message)} chars)"
        )
        return item

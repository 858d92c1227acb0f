"""
In-memory ticket store.

Implements the ticket store and reply delivery ports over plain dicts, for
local runs of the pipeline against a YAML fixture.
"""

import logging
import threading
from typing import Any, Mapping, Optional

from .models import Account, Ticket, TicketMessage


logger = logging.getLogger(__name__)


SYSTEM_USER_ID = 0


class InMemoryTicketStore:
    """Ticket store and reply delivery backed by in-process dicts."""

    def __init__(self):
        self._tickets: dict[int, Ticket] = {}
        self._messages: dict[int, list[TicketMessage]] = {}
        self._accounts: dict[int, Account] = {}
        self._next_message_id = 1
        self._lock = threading.Lock()

    @classmethod
    def from_fixture(cls, data: Mapping[str, Any]) -> "InMemoryTicketStore":
        """
        Build a store from a fixture mapping.

        Expected keys (all optional): ``tickets``, ``messages`` and
        ``accounts``, each a list of records matching the model fields.
        Messages without an ``id`` are numbered in order.
        """
        store = cls()
        for record in data.get("accounts") or []:
            store.add_account(Account(**record))
        for record in data.get("tickets") or []:
            store.add_ticket(Ticket(**record))
        for record in data.get("messages") or []:
            store.add_message(
                ticket_id=int(record["ticket_id"]),
                user_id=record.get("user_id"),
                message=str(record.get("message", "")),
            )
        return store

    def add_ticket(self, ticket: Ticket) -> None:
        with self._lock:
            self._tickets[ticket.id] = ticket
            self._messages.setdefault(ticket.id, [])

    def add_account(self, account: Account) -> None:
        with self._lock:
            self._accounts[account.id] = account

    def add_message(self, ticket_id: int, user_id: Optional[int], message: str) -> TicketMessage:
        with self._lock:
            if ticket_id not in self._tickets:
                raise KeyError(f"Unknown ticket {ticket_id}")
            record = TicketMessage(
                id=self._next_message_id,
                ticket_id=ticket_id,
                user_id=user_id,
                message=message,
            )
            self._next_message_id += 1
            self._messages[ticket_id].append(record)
            return record

    def get_ticket(self, ticket_id: int) -> Optional[Ticket]:
        with self._lock:
            return self._tickets.get(ticket_id)

    def latest_message(self, ticket_id: int) -> Optional[TicketMessage]:
        with self._lock:
            messages = self._messages.get(ticket_id) or []
            return messages[-1] if messages else None

    def list_messages(self, ticket_id: int) -> list[TicketMessage]:
        with self._lock:
            return list(self._messages.get(ticket_id, []))

    def get_account(self, user_id: int) -> Optional[Account]:
        with self._lock:
            return self._accounts.get(user_id)

    def reply_as_system(self, ticket_id: int, text: str) -> None:
        record = self.add_message(ticket_id, SYSTEM_USER_ID, text)
        logger.info(f"System reply {record.id} posted on ticket {ticket_id}")

    def system_replies(self, ticket_id: int) -> list[str]:
        """Bodies of all replies posted by the system on a ticket."""
        return [m.message for m in self.list_messages(ticket_id) if m.user_id == SYSTEM_USER_ID]

"""
Ports (interfaces) used by the auto-reply pipeline.

Ticket persistence, reply delivery and operator alerts belong to the host
helpdesk; the pipeline only depends on these minimal contracts.
"""

from typing import Optional, Protocol, Sequence

from .models import Account, Ticket, TicketMessage


class TicketStore(Protocol):
    """Read access to tickets, their messages and owner accounts."""

    def get_ticket(self, ticket_id: int) -> Optional[Ticket]:
        ...

    def latest_message(self, ticket_id: int) -> Optional[TicketMessage]:
        ...

    def list_messages(self, ticket_id: int) -> Sequence[TicketMessage]:
        ...

    def get_account(self, user_id: int) -> Optional[Account]:
        ...


class ReplyDelivery(Protocol):
    """Posts a reply attributed to the system rather than a human agent."""

    def reply_as_system(self, ticket_id: int, text: str) -> None:
        ...


class AdminNotifier(Protocol):
    """Pushes a formatted alert to the operators."""

    def notify_admins(self, formatted_message: str, urgent: bool = True) -> int:
        """Return the number of operators the alert reached."""
        ...

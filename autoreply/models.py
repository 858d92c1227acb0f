"""
Data models for the Ticket Auto-Reply Pipeline.

Uses Pydantic for robust data validation and serialization.
All models are immutable, so a snapshot read at the start of a job
cannot change underneath it.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .config import AutoReplyConfig


class Ticket(BaseModel):
    """A support ticket as exposed by the ticket store."""

    id: int = Field(..., description="Ticket identifier")
    user_id: Optional[int] = Field(default=None, description="Owning customer")
    subject: str = Field(default="", description="Ticket subject line")

    model_config = {"frozen": True}


class TicketMessage(BaseModel):
    """A single message posted on a ticket."""

    id: int = Field(..., description="Message identifier (creation sequence)")
    ticket_id: int = Field(..., description="Ticket the message belongs to")
    user_id: Optional[int] = Field(default=None, description="Author, 0 for system replies")
    message: str = Field(default="", description="Message body")

    model_config = {"frozen": True}


class Account(BaseModel):
    """
    Read-only snapshot of a customer's account.

    Attributes:
        email: Login email
        plan_name: Subscribed plan, None when not subscribed
        expired_at: Subscription expiry as a unix timestamp
        speed_limit: Speed limit in Mbps, None/0 means unlimited
        transfer_enable: Traffic quota in bytes, None/0 means unassigned
        u: Uploaded bytes
        d: Downloaded bytes
        balance: Account balance in minor currency units
        commission_balance: Referral commission in minor currency units
        device_limit: Maximum concurrent devices
        banned: Whether the account is banned
    """

    id: int
    email: str = ""
    plan_name: Optional[str] = None
    expired_at: Optional[int] = None
    speed_limit: Optional[int] = None
    transfer_enable: Optional[int] = None
    u: int = 0
    d: int = 0
    balance: Optional[int] = None
    commission_balance: Optional[int] = None
    device_limit: Optional[int] = None
    banned: bool = False

    model_config = {"frozen": True}

    @property
    def used_traffic(self) -> int:
        """Total traffic consumed (upload + download)."""
        return (self.u or 0) + (self.d or 0)


class HistoryEntry(BaseModel):
    """One prior message of a conversation, as sent to the LLM."""

    is_from_user: bool
    message: str

    model_config = {"frozen": True}

    @property
    def role(self) -> str:
        """Chat-completion role for this entry."""
        return "user" if self.is_from_user else "assistant"


class WorkItem(BaseModel):
    """
    One unit of queued decision work for a single incoming message.

    The config snapshot is captured at dispatch time. ``attempt`` is derived
    from the broker's retry count when the item is processed.
    """

    ticket_id: int
    raw_message: str
    config: AutoReplyConfig = Field(default_factory=AutoReplyConfig)
    attempt: int = Field(default=1, ge=1)

    model_config = {"frozen": True}


class ReplySource(str, Enum):
    """Which strategy produced a reply."""

    ESCALATION = "escalation"
    KEYWORD = "keyword"
    AI = "ai"
    NONE = "none"


class ReplyOutcome(BaseModel):
    """Terminal output of the decision engine for one work item."""

    text: str = ""
    source: ReplySource = ReplySource.NONE

    model_config = {"frozen": True}

    @classmethod
    def none(cls) -> "ReplyOutcome":
        return cls(text="", source=ReplySource.NONE)

    def has_reply(self) -> bool:
        """Check if there is anything to deliver."""
        return self.source is not ReplySource.NONE and bool(self.text)


class StrategyStatus(str, Enum):
    HANDLED = "handled"
    PASSED = "passed"
    ERRORED = "errored"


class StrategyResult(BaseModel):
    """Tri-state result of a single decision strategy."""

    status: StrategyStatus
    text: str = ""
    error: Optional[Exception] = None

    model_config = {"frozen": True, "arbitrary_types_allowed": True}

    @classmethod
    def handled(cls, text: str) -> "StrategyResult":
        return cls(status=StrategyStatus.HANDLED, text=text)

    @classmethod
    def passed(cls) -> "StrategyResult":
        return cls(status=StrategyStatus.PASSED)

    @classmethod
    def errored(cls, error: Exception) -> "StrategyResult":
        return cls(status=StrategyStatus.ERRORED, error=error)

    @property
    def is_handled(self) -> bool:
        return self.status is StrategyStatus.HANDLED

    @property
    def is_errored(self) -> bool:
        return self.status is StrategyStatus.ERRORED

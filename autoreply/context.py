"""
Account context builder.

Renders the ticket owner's account state into a text block that is appended
to the LLM system prompt, so replies can refer to the customer's plan,
quota, balance and speed limit. Context is an enhancement: any failure
results in no context rather than a failed job.
"""

import logging
from datetime import datetime
from typing import Optional

from .config import AutoReplyConfig
from .models import Account, Ticket
from .ports import TicketStore


logger = logging.getLogger(__name__)


BYTE_UNITS = ("B", "KB", "MB", "GB", "TB")
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
DATE_FORMAT = "%Y-%m-%d"
CURRENCY_SYMBOL = "¥"


def format_bytes(num_bytes: int) -> str:
    """
    Format a byte count with a binary unit scale.

    Values are shown with at most two decimals and no trailing zeros,
    e.g. ``0 B``, ``1 KB``, ``1.5 KB``. Negative values clamp to zero.
    """
    value = float(max(num_bytes, 0))
    unit_index = 0
    while value >= 1024 and unit_index < len(BYTE_UNITS) - 1:
        value /= 1024
        unit_index += 1

    return f"{_trim_number(value)} {BYTE_UNITS[unit_index]}"


def _trim_number(value: float) -> str:
    return f"{value:.2f}".rstrip("0").rstrip(".")


def _format_amount(minor_units: int) -> str:
    return f"{CURRENCY_SYMBOL}{_trim_number(minor_units / 100)}"


def _expiry_lines(account: Account, now: datetime) -> list[str]:
    if not account.expired_at:
        return []

    current_ts = int(now.timestamp())
    expire_date = datetime.fromtimestamp(account.expired_at).strftime(DATETIME_FORMAT)
    is_expired = account.expired_at < current_ts

    lines = [f"- Expires at: {expire_date}{' (expired)' if is_expired else ''}"]
    if not is_expired:
        remaining = account.expired_at - current_ts
        days = remaining // 86400
        hours = (remaining % 86400) // 3600
        lines.append(f"- Time remaining: {days} days {hours} hours")
    return lines


def _traffic_lines(account: Account) -> list[str]:
    total = account.transfer_enable
    if not total:
        return ["- Traffic: unassigned"]

    used = account.used_traffic
    remaining = total - used
    percent = round(used / total * 100, 2)
    return [
        f"- Total traffic: {format_bytes(total)}",
        f"- Used: {format_bytes(used)} ({_trim_number(percent)}%)",
        f"- Remaining traffic: {format_bytes(remaining)}",
    ]


def _speed_advisory(account: Account, threshold: int) -> list[str]:
    if threshold <= 0 or not account.speed_limit or account.speed_limit > threshold:
        return []
    return [
        "",
        "## Important",
        f"⚠️ The user's speed limit is {account.speed_limit} Mbps, which is likely "
        "the cause of any slowness or lag they report.",
        "Proactively tell the user about the current speed limit on their account "
        "and suggest contacting support for an upgrade to a faster plan.",
    ]


def render_account_context(account: Account, speed_limit_warning: int, now: datetime) -> str:
    """
    Render the account context block.

    Section order is fixed: identity, plan, expiry, speed, traffic,
    balances, devices, status, speed advisory, current time.

    Args:
        account: Account snapshot of the ticket owner.
        speed_limit_warning: Threshold in Mbps at or below which the advisory is added.
        now: Wall-clock time used for expiry math and the time block.

    Returns:
        Multi-line context text.
    """
    lines = ["## Current User Information", f"- Email: {account.email}"]

    lines.append(f"- Current plan: {account.plan_name or 'unsubscribed'}")
    lines.extend(_expiry_lines(account, now))

    if account.speed_limit:
        lines.append(f"- Speed limit: {account.speed_limit} Mbps")
    else:
        lines.append("- Speed limit: unlimited")

    lines.extend(_traffic_lines(account))

    if account.balance is not None:
        lines.append(f"- Account balance: {_format_amount(account.balance)}")
    if account.commission_balance is not None and account.commission_balance > 0:
        lines.append(f"- Commission balance: {_format_amount(account.commission_balance)}")

    if account.device_limit:
        lines.append(f"- Device limit: {account.device_limit} devices")

    lines.append(f"- Account status: {'banned' if account.banned else 'normal'}")

    lines.extend(_speed_advisory(account, speed_limit_warning))

    lines.extend(
        [
            "",
            "## Current Time",
            f"- Current time: {now.strftime(DATETIME_FORMAT)}",
            f"- Current date: {now.strftime(DATE_FORMAT)}",
            "",
            "Please tailor your answer to the user information and current time above.",
        ]
    )
    return "\n".join(lines)


def build_context(
    store: TicketStore,
    ticket: Ticket,
    config: AutoReplyConfig,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """
    Build the account context block for a ticket's owner.

    Args:
        store: Ticket store used to resolve the owner account.
        ticket: Ticket being answered.
        config: Resolved options (speed limit threshold).
        now: Render time, defaults to the current local time.

    Returns:
        Context text, or None if the owner cannot be resolved or rendering fails.
    """
    try:
        if ticket.user_id is None:
            return None
        account = store.get_account(ticket.user_id)
        if account is None:
            logger.debug(f"No account found for ticket {ticket.id} owner {ticket.user_id}")
            return None

        context = render_account_context(
            account,
            config.speed_limit_warning,
            now or datetime.now(),
        )
        logger.info(
            f"Built user context for ticket {ticket.id} "
            f"(user {account.id}, {len(context)} chars)"
        )
        return context

    except Exception as e:
        logger.error(f"Failed to build user context for ticket {ticket.id}: {e}")
        return None

"""Tests for the conversation history builder."""

import pytest

from autoreply.config import AutoReplyConfig
from autoreply.history import build_history, is_synthetic
from autoreply.memory_store import InMemoryTicketStore
from autoreply.models import Ticket, TicketMessage


MARKERS = AutoReplyConfig().synthetic_markers


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def ticket() -> Ticket:
    return Ticket(id=1, user_id=42, subject="Slow connection")


@pytest.fixture
def store(ticket: Ticket) -> InMemoryTicketStore:
    """Store with a conversation mixing customer, staff and synthetic replies."""
    store = InMemoryTicketStore()
    store.add_ticket(ticket)
    store.add_message(1, 42, "My connection is slow")
    store.add_message(1, 0, "[Auto-Reply] Try restarting your router")
    store.add_message(1, 42, "Still slow after restart")
    store.add_message(1, 7, "Which server are you using?")
    store.add_message(1, 0, "[AI Assistant] You may be on a congested node")
    store.add_message(1, 42, "Tokyo 2")
    return store


# =============================================================================
# is_synthetic Tests
# =============================================================================

class TestIsSynthetic:
    """Tests for synthetic reply detection."""

    def test_detects_markers(self):
        msg = TicketMessage(id=1, ticket_id=1, user_id=0, message="[Auto-Reply] hello")
        assert is_synthetic(msg, MARKERS)

    def test_plain_message(self):
        msg = TicketMessage(id=1, ticket_id=1, user_id=42, message="hello")
        assert not is_synthetic(msg, MARKERS)

    def test_empty_markers_ignored(self):
        msg = TicketMessage(id=1, ticket_id=1, user_id=42, message="hello")
        assert not is_synthetic(msg, ("",))


# =============================================================================
# build_history Tests
# =============================================================================

class TestBuildHistory:
    """Tests for build_history."""

    def test_excludes_synthetic_replies(self, store, ticket):
        """Test auto and AI replies never appear in history."""
        history = build_history(store, ticket, 0, MARKERS)
        messages = [entry.message for entry in history]
        assert messages == [
            "My connection is slow",
            "Still slow after restart",
            "Which server are you using?",
            "Tokyo 2",
        ]

    def test_marks_owner_messages(self, store, ticket):
        """Test is_from_user reflects the ticket owner."""
        history = build_history(store, ticket, 0, MARKERS)
        assert [entry.is_from_user for entry in history] == [True, True, False, True]

    def test_cap_keeps_last_entries(self, store, ticket):
        """Test cap keeps the last N filtered entries in order."""
        history = build_history(store, ticket, 2, MARKERS)
        assert [entry.message for entry in history] == [
            "Which server are you using?",
            "Tokyo 2",
        ]

    def test_cap_applied_after_filtering(self, store, ticket):
        """Test synthetic replies do not count toward the cap."""
        history = build_history(store, ticket, 3, MARKERS)
        assert len(history) == 3
        assert all("[" not in entry.message for entry in history)

    @pytest.mark.parametrize("max_history", [0, -1])
    def test_non_positive_cap_is_unbounded(self, store, ticket, max_history):
        """Test max_history <= 0 returns the full filtered history."""
        assert len(build_history(store, ticket, max_history, MARKERS)) == 4

    def test_cap_larger_than_history(self, store, ticket):
        """Test a cap above the history size keeps everything."""
        assert len(build_history(store, ticket, 50, MARKERS)) == 4

    def test_orders_by_message_id(self, ticket):
        """Test messages are ordered by creation sequence."""
        store = InMemoryTicketStore()
        store.list_messages = lambda ticket_id: [
            TicketMessage(id=3, ticket_id=1, user_id=42, message="third"),
            TicketMessage(id=1, ticket_id=1, user_id=42, message="first"),
            TicketMessage(id=2, ticket_id=1, user_id=9, message="second"),
        ]
        history = build_history(store, ticket, 0, MARKERS)
        assert [entry.message for entry in history] == ["first", "second", "third"]

    def test_empty_ticket(self, ticket):
        """Test ticket without messages gives empty history."""
        store = InMemoryTicketStore()
        store.add_ticket(ticket)
        assert build_history(store, ticket, 5, MARKERS) == []

    def test_ticket_without_owner(self):
        """Test no message counts as from the user when the owner is unknown."""
        ticket = Ticket(id=2, user_id=None)
        store = InMemoryTicketStore()
        store.add_ticket(ticket)
        store.add_message(2, None, "anonymous")
        history = build_history(store, ticket, 0, MARKERS)
        assert history[0].is_from_user is False

    def test_current_message_left_out(self, store, ticket):
        """Test the persisted message being answered is not repeated."""
        history = build_history(store, ticket, 0, MARKERS, current_message="Tokyo 2")
        assert [entry.message for entry in history][-1] == "Which server are you using?"

    def test_current_message_left_out_before_cap(self, store, ticket):
        """Test the cap still counts N prior turns."""
        history = build_history(store, ticket, 2, MARKERS, current_message="Tokyo 2")
        assert [entry.message for entry in history] == [
            "Still slow after restart",
            "Which server are you using?",
        ]

    def test_current_message_kept_when_not_latest(self, store, ticket):
        history = build_history(store, ticket, 0, MARKERS, current_message="My connection is slow")
        assert len(history) == 4

    def test_current_message_from_staff_kept(self, ticket):
        store = InMemoryTicketStore()
        store.add_ticket(ticket)
        store.add_message(1, 7, "same text")
        history = build_history(store, ticket, 0, MARKERS, current_message="same text")
        assert [entry.message for entry in history] == ["same text"]

"""
Unit tests for the decision engine.

Tests cover:
- Escalation keyword detection and precedence
- Keyword rule decoding and longest-first matching
- AI strategy gating, history/context wiring and failure semantics
"""

import json
import pytest
from datetime import datetime
from unittest.mock import Mock

from autoreply.config import AutoReplyConfig
from autoreply.engine import (
    ESCALATION_REPLY,
    DecisionEngine,
    DecisionError,
    decode_keyword_rules,
    match_keyword_reply,
    parse_transfer_keywords,
    should_escalate,
)
from autoreply.llm_client import LLMTransportError
from autoreply.memory_store import InMemoryTicketStore
from autoreply.models import Account, ReplySource, Ticket


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def ticket() -> Ticket:
    return Ticket(id=1, user_id=42, subject="Connection")


@pytest.fixture
def store(ticket: Ticket) -> InMemoryTicketStore:
    store = InMemoryTicketStore()
    store.add_ticket(ticket)
    store.add_account(Account(id=42, email="jane@example.com", speed_limit=20))
    store.add_message(1, 42, "Hello")
    store.add_message(1, 0, "[Auto-Reply] Hi there")
    store.add_message(1, 42, "My speed is bad")
    return store


@pytest.fixture
def llm_client() -> Mock:
    client = Mock()
    client.complete.return_value = "AI answer"
    return client


@pytest.fixture
def client_factory(llm_client: Mock) -> Mock:
    return Mock(return_value=llm_client)


@pytest.fixture
def engine(store, client_factory) -> DecisionEngine:
    return DecisionEngine(store, client_factory=client_factory, clock=lambda: datetime(2026, 10, 18, 9, 0))


def ai_config(**overrides) -> AutoReplyConfig:
    values = {"enable_ai_reply": True, "ai_api_key": "sk-test", "auto_reply_delay": 0}
    values.update(overrides)
    return AutoReplyConfig(**values)


# =============================================================================
# Escalation helpers
# =============================================================================

class TestEscalationHelpers:
    """Tests for escalation keyword parsing and matching."""

    def test_parse_trims_and_drops_blanks(self):
        assert parse_transfer_keywords(" human , agent,, ") == ["human", "agent"]

    def test_parse_empty(self):
        assert parse_transfer_keywords("") == []

    def test_should_escalate_case_insensitive(self):
        assert should_escalate("Can I speak to a HUMAN?", ["human"])

    def test_should_escalate_no_match(self):
        assert not should_escalate("my speed is bad", ["human", "agent"])

    def test_default_chinese_keywords(self):
        keywords = parse_transfer_keywords(AutoReplyConfig().transfer_keywords)
        assert should_escalate("请帮我转人工", keywords)

    def test_no_keywords_never_escalates(self):
        assert not should_escalate("anything", [])


# =============================================================================
# Keyword rule helpers
# =============================================================================

class TestDecodeKeywordRules:
    """Tests for keyword rule decoding."""

    def test_json_object(self):
        assert decode_keyword_rules('{"refund": "See policy"}') == {"refund": "See policy"}

    def test_mapping_passthrough(self):
        assert decode_keyword_rules({"refund": "See policy"}) == {"refund": "See policy"}

    def test_invalid_json_is_empty(self, caplog):
        """Test undecodable rules degrade to no rules."""
        assert decode_keyword_rules("{not json") == {}
        assert "could not be decoded" in caplog.text

    def test_json_array_is_empty(self):
        assert decode_keyword_rules('["a", "b"]') == {}

    def test_drops_empty_keys_and_null_replies(self):
        assert decode_keyword_rules('{"": "x", "a": null, "b": "ok"}') == {"b": "ok"}


class TestMatchKeywordReply:
    """Tests for longest-first keyword matching."""

    def test_longer_keyword_wins_regardless_of_order(self):
        """Test the more specific phrase wins over its substring."""
        rules = {"reset": "Try logging out and in", "password reset": "See FAQ #3"}
        assert match_keyword_reply("I need a password reset please", rules) == "See FAQ #3"

        reversed_rules = dict(reversed(list(rules.items())))
        assert match_keyword_reply("I need a password reset please", reversed_rules) == "See FAQ #3"

    def test_shorter_keyword_when_longer_absent(self):
        rules = {"password reset": "See FAQ #3", "reset": "Try logging out and in"}
        assert match_keyword_reply("please reset my device", rules) == "Try logging out and in"

    def test_ties_keep_original_order(self):
        rules = {"abc": "first", "xyz": "second"}
        assert match_keyword_reply("xyz abc", rules) == "first"

    def test_case_insensitive(self):
        assert match_keyword_reply("REFUND please", {"refund": "See policy"}) == "See policy"

    def test_no_match(self):
        assert match_keyword_reply("hello", {"refund": "See policy"}) is None


# =============================================================================
# DecisionEngine Tests
# =============================================================================

class TestDecisionEngineEscalation:
    """Tests for escalation precedence."""

    def test_escalation_bypasses_other_strategies(self, engine, ticket, client_factory):
        """Test escalation wins even when keyword and AI would match."""
        config = ai_config(
            transfer_keywords="human,agent",
            keyword_rules=json.dumps({"human": "keyword reply"}),
        )

        outcome = engine.decide(ticket, "can I speak to a human", config)

        assert outcome.source is ReplySource.ESCALATION
        assert outcome.text == ESCALATION_REPLY
        client_factory.assert_not_called()

    def test_escalation_independent_of_notify_flag(self, engine, ticket):
        config = AutoReplyConfig(transfer_keywords="human", enable_telegram_notify=False)
        assert engine.decide(ticket, "human please", config).source is ReplySource.ESCALATION


class TestDecisionEngineKeyword:
    """Tests for the keyword strategy."""

    def test_keyword_scenario(self, engine, ticket):
        """Test longer key wins in the documented scenario."""
        config = AutoReplyConfig(
            enable_keyword_reply=True,
            keyword_rules='{"password reset":"See FAQ #3","reset":"Try logging out and in"}',
        )
        outcome = engine.decide(ticket, "I need a password reset please", config)
        assert outcome.source is ReplySource.KEYWORD
        assert outcome.text == "See FAQ #3"

    def test_keyword_disabled(self, engine, ticket):
        config = AutoReplyConfig(enable_keyword_reply=False, keyword_rules='{"reset": "x"}')
        assert engine.decide(ticket, "reset", config).source is ReplySource.NONE

    def test_keyword_before_ai(self, engine, ticket, client_factory):
        config = ai_config(keyword_rules='{"reset": "keyword"}')
        outcome = engine.decide(ticket, "reset", config)
        assert outcome.source is ReplySource.KEYWORD
        client_factory.assert_not_called()

    def test_malformed_rules_fall_through(self, engine, ticket):
        """Test broken rule JSON does not fail the decision."""
        config = AutoReplyConfig(keyword_rules="{broken")
        assert engine.decide(ticket, "anything", config).source is ReplySource.NONE

    @pytest.mark.parametrize("rules", [["not", "a", "map"], 42])
    def test_non_mapping_rules_still_escalate(self, engine, ticket, rules):
        config = AutoReplyConfig(keyword_rules=rules)
        assert engine.decide(ticket, "转人工 please", config).source is ReplySource.ESCALATION

    def test_non_mapping_rules_fall_through_to_ai(self, engine, ticket, client_factory):
        """Test an unusable rule set is treated as no rules."""
        config = ai_config(keyword_rules=["not", "a", "map"])
        outcome = engine.decide(ticket, "where is my order", config)
        assert outcome.source is ReplySource.AI
        client_factory.assert_called_once()

    def test_integer_rule_keys_match_as_text(self, engine, ticket):
        config = AutoReplyConfig(keyword_rules={123: "See order page"})
        outcome = engine.decide(ticket, "about order 123", config)
        assert outcome.source is ReplySource.KEYWORD
        assert outcome.text == "See order page"


class TestDecisionEngineAI:
    """Tests for the AI strategy."""

    def test_ai_disabled_by_default(self, engine, ticket, client_factory):
        outcome = engine.decide(ticket, "My speed is bad", AutoReplyConfig())
        assert outcome.source is ReplySource.NONE
        client_factory.assert_not_called()

    def test_missing_key_passes_without_network(self, engine, ticket, client_factory):
        """Test empty credential yields pass and no client is built."""
        outcome = engine.decide(ticket, "My speed is bad", ai_config(ai_api_key=""))
        assert outcome.source is ReplySource.NONE
        client_factory.assert_not_called()

    def test_ai_reply(self, engine, ticket, client_factory, llm_client):
        outcome = engine.decide(ticket, "My speed is bad", ai_config())

        assert outcome.source is ReplySource.AI
        assert outcome.text == "AI answer"
        client_factory.assert_called_once()

    def test_ai_receives_filtered_history_and_context(self, engine, ticket, llm_client):
        """Test synthetic replies are removed and the current message is sent once."""
        engine.decide(ticket, "My speed is bad", ai_config())

        args = llm_client.complete.call_args
        system_prompt, history, message = args.args
        assert system_prompt == AutoReplyConfig().ai_system_prompt
        assert [entry.message for entry in history] == ["Hello"]
        assert message == "My speed is bad"
        context = args.kwargs["account_context"]
        assert "jane@example.com" in context
        assert "## Important" in context

    def test_user_context_disabled(self, engine, ticket, llm_client):
        engine.decide(ticket, "My speed is bad", ai_config(enable_user_context=False))
        assert llm_client.complete.call_args.kwargs["account_context"] is None

    def test_history_cap(self, engine, ticket, store, llm_client):
        store.add_message(1, 7, "Staff note")
        store.add_message(1, 42, "Follow up")
        engine.decide(ticket, "new question", ai_config(max_conversation_history=2))
        history = llm_client.complete.call_args.args[1]
        assert [entry.message for entry in history] == ["Staff note", "Follow up"]

    def test_history_cap_counts_prior_turns(self, engine, ticket, llm_client):
        """Test the persisted current message does not use up the cap."""
        engine.decide(ticket, "My speed is bad", ai_config(max_conversation_history=1))
        history = llm_client.complete.call_args.args[1]
        assert [entry.message for entry in history] == ["Hello"]

    @pytest.mark.parametrize("reply", [None, ""])
    def test_empty_reply_passes(self, engine, ticket, llm_client, reply):
        llm_client.complete.return_value = reply
        assert engine.decide(ticket, "My speed is bad", ai_config()).source is ReplySource.NONE

    def test_transport_error_raises_decision_error(self, engine, ticket, llm_client):
        """Test provider transport failures surface for retry."""
        llm_client.complete.side_effect = LLMTransportError("timed out")
        with pytest.raises(DecisionError, match="ai strategy failed"):
            engine.decide(ticket, "My speed is bad", ai_config())

    def test_unexpected_error_propagates(self, engine, ticket, llm_client):
        llm_client.complete.side_effect = RuntimeError("bug")
        with pytest.raises(RuntimeError):
            engine.decide(ticket, "My speed is bad", ai_config())


class TestDecisionEngineNone:
    """Tests for the terminal none outcome."""

    def test_nothing_matches(self, engine, ticket):
        outcome = engine.decide(ticket, "hello there", AutoReplyConfig())
        assert outcome.source is ReplySource.NONE
        assert outcome.text == ""

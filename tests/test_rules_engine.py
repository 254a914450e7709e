"""Tests for rules engine module."""

import pytest

from emailsnap.models import (
    EXTERNAL_SENTINEL,
    INTERNAL_SENTINEL,
    CategoryRule,
    RawMessage,
)
from emailsnap.rules_engine import (
    RulesEngine,
    classify_message,
    create_default_rules,
    extract_domain,
)


def create_test_message(**kwargs) -> RawMessage:
    """Helper to create test messages."""
    defaults = {
        "id": "1",
        "sender_name": "Sender",
        "sender_email": "sender@example.com",
        "subject": "Test Subject",
        "received_at": "2024-01-01T12:00:00+00:00",
    }
    defaults.update(kwargs)
    return RawMessage(**defaults)


def create_rule(
    name: str,
    match_type: str,
    match_value: str,
    priority: int = 10,
) -> CategoryRule:
    """Helper to create test rules."""
    return CategoryRule(
        name=name,
        priority=priority,
        match_type=match_type,
        match_value=match_value,
    )


class TestExtractDomain:
    def test_lowercases_domain(self):
        assert extract_domain("Kim@Company.COM") == "company.com"

    def test_no_at_sign(self):
        assert extract_domain("not-an-address") == ""

    def test_domain_after_last_at(self):
        assert extract_domain("a@b@Vendor.io") == "vendor.io"


class TestDefaultRules:
    """Tests for the seeded rule set."""

    @pytest.fixture
    def engine(self):
        return RulesEngine(create_default_rules(), trust_domain="company.com")

    def test_urgent_beats_system_sender(self, engine):
        message = create_test_message(
            subject="[긴급] 서버 장애", sender_email="noreply@company.com"
        )
        assert engine.classify(message) == "urgent"

    def test_approval_subject(self, engine):
        message = create_test_message(subject="[결재] 휴가 신청", sender_email="kim@company.com")
        assert engine.classify(message) == "approval"

    def test_subject_match_is_case_insensitive(self, engine):
        message = create_test_message(subject="[urgent] db down", sender_email="a@company.com")
        assert engine.classify(message) == "urgent"

    def test_external_sender(self, engine):
        message = create_test_message(sender_email="partner@vendor.io")
        assert engine.classify(message) == "external"

    def test_internal_sender(self, engine):
        message = create_test_message(sender_email="kim@company.com")
        assert engine.classify(message) == "internal"

    def test_default_priorities_are_ordered(self):
        rules = create_default_rules()
        assert [r.priority for r in rules] == [1, 2, 3, 4, 5]
        assert all(r.is_default for r in rules)


class TestRulesEngine:
    """Tests for RulesEngine."""

    def test_empty_trust_domain_disables_sentinels(self):
        rules = [
            create_rule("external", "sender_domain", EXTERNAL_SENTINEL, priority=1),
            create_rule("internal", "sender_domain", INTERNAL_SENTINEL, priority=2),
        ]
        engine = RulesEngine(rules, trust_domain="")

        assert engine.classify(create_test_message(sender_email="a@vendor.io")) == "uncategorized"
        assert engine.classify(create_test_message(sender_email="a@company.com")) == "uncategorized"

    def test_system_sender_when_no_trust_domain(self):
        engine = RulesEngine(create_default_rules(), trust_domain="")
        message = create_test_message(sender_email="no-reply@service.com")
        assert engine.classify(message) == "system"

    def test_empty_terms_never_match(self):
        rules = [create_rule("odd", "subject_contains", " , ,")]
        engine = RulesEngine(rules)
        assert engine.evaluate(create_test_message(subject="anything")) is None

    def test_sender_domain_exact_match(self):
        rules = [create_rule("partners", "sender_domain", "vendor.io, partner.co.kr")]
        engine = RulesEngine(rules)

        assert engine.classify(create_test_message(sender_email="a@partner.co.kr")) == "partners"
        assert engine.classify(create_test_message(sender_email="a@sub.vendor.io")) == "uncategorized"

    def test_sender_contains(self):
        rules = [create_rule("bots", "sender_contains", "bot")]
        engine = RulesEngine(rules)
        assert engine.classify(create_test_message(sender_email="Build-Bot@ci.dev")) == "bots"

    def test_unknown_match_type_never_matches(self):
        rules = [create_rule("weird", "body_regex", ".*")]
        engine = RulesEngine(rules)
        assert engine.evaluate(create_test_message()) is None

    def test_lower_priority_number_wins(self):
        rules = [
            create_rule("second", "subject_contains", "report", priority=5),
            create_rule("first", "subject_contains", "report", priority=1),
        ]
        engine = RulesEngine(rules)

        result = engine.evaluate(create_test_message(subject="Weekly report"))
        assert result is not None
        assert result.rule_name == "first"

    def test_equal_priority_keeps_input_order(self):
        rules = [
            create_rule("a", "subject_contains", "report", priority=1),
            create_rule("b", "subject_contains", "report", priority=1),
        ]
        assert RulesEngine(rules).classify(create_test_message(subject="report")) == "a"

    def test_evaluate_all_lists_every_match(self):
        engine = RulesEngine(create_default_rules(), trust_domain="company.com")
        message = create_test_message(subject="[긴급] 서버 장애", sender_email="noreply@company.com")

        names = [m.rule_name for m in engine.evaluate_all(message)]
        assert names == ["urgent", "internal", "system"]

    def test_no_rules_is_uncategorized(self):
        assert classify_message(create_test_message(), [], "company.com") == "uncategorized"

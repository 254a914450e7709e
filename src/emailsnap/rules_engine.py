"""Rules engine for deterministic mail classification."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from emailsnap.models import (
    EXTERNAL_SENTINEL,
    INTERNAL_SENTINEL,
    CategoryRule,
    MailCategory,
    MatchType,
)

logger = logging.getLogger(__name__)


class Classifiable(Protocol):
    """Anything carrying a subject and a sender address."""

    subject: str
    sender_email: str


@dataclass
class RuleMatch:
    """Result of a rule match."""

    rule_name: str
    category: str
    priority: int
    match_type: str

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "rule_name": self.rule_name,
            "category": self.category,
            "priority": self.priority,
            "match_type": self.match_type,
        }


def extract_domain(address: str) -> str:
    """Lowercased part after the last '@', or '' when the address has none."""
    if "@" not in address:
        return ""
    return address.rsplit("@", 1)[1].lower()


class RulesEngine:
    """Ordered first-match-wins classifier over category rules."""

    def __init__(self, rules: list[CategoryRule], trust_domain: str = ""):
        """Initialize with a list of rules and the company domain."""
        # sorted() is stable: equal priorities keep their store order
        self.rules = sorted(rules, key=lambda r: r.priority)
        self.trust_domain = trust_domain.strip().lower()

    def evaluate(self, message: Classifiable) -> RuleMatch | None:
        """
        Evaluate rules against a message.
        Returns the first matching rule or None.
        """
        for rule in self.rules:
            if self._matches(rule, message):
                logger.debug(f"Rule '{rule.name}' matched: {message.subject[:60]}")
                return RuleMatch(
                    rule_name=rule.name,
                    category=rule.name,
                    priority=rule.priority,
                    match_type=rule.match_type,
                )
        return None

    def evaluate_all(self, message: Classifiable) -> list[RuleMatch]:
        """
        Evaluate all rules and return all matches.
        Useful for debugging and understanding why a category was chosen.
        """
        return [
            RuleMatch(
                rule_name=rule.name,
                category=rule.name,
                priority=rule.priority,
                match_type=rule.match_type,
            )
            for rule in self.rules
            if self._matches(rule, message)
        ]

    def classify(self, message: Classifiable) -> str:
        """Category of the first matching rule, or 'uncategorized'."""
        match = self.evaluate(message)
        return match.category if match else MailCategory.UNCATEGORIZED.value

    def _matches(self, rule: CategoryRule, message: Classifiable) -> bool:
        """Evaluate a single rule against a message."""
        values = [v for v in rule.values if v]

        if rule.match_type == MatchType.SUBJECT_CONTAINS.value:
            subject = (message.subject or "").lower()
            return any(v in subject for v in values)

        if rule.match_type == MatchType.SENDER_DOMAIN.value:
            sender_domain = extract_domain(message.sender_email or "")
            sentinel = rule.match_value.strip()
            if sentinel == EXTERNAL_SENTINEL:
                return self.trust_domain != "" and sender_domain != self.trust_domain
            if sentinel == INTERNAL_SENTINEL:
                return self.trust_domain != "" and sender_domain == self.trust_domain
            return any(sender_domain == v for v in values)

        if rule.match_type == MatchType.SENDER_CONTAINS.value:
            sender = (message.sender_email or "").lower()
            return any(v in sender for v in values)

        return False


def classify_message(
    message: Classifiable, rules: list[CategoryRule], trust_domain: str
) -> str:
    """Classify one message against a rule set."""
    return RulesEngine(rules, trust_domain).classify(message)


def create_default_rules() -> list[CategoryRule]:
    """Create the rules seeded into an empty rule table."""
    return [
        CategoryRule(
            name=MailCategory.URGENT.value,
            priority=1,
            match_type=MatchType.SUBJECT_CONTAINS.value,
            match_value="[긴급],[장애],[URGENT]",
            color="#EF4444",
            is_default=True,
        ),
        CategoryRule(
            name=MailCategory.APPROVAL.value,
            priority=2,
            match_type=MatchType.SUBJECT_CONTAINS.value,
            match_value="[결재],[승인],[Approval]",
            color="#F59E0B",
            is_default=True,
        ),
        CategoryRule(
            name=MailCategory.EXTERNAL.value,
            priority=3,
            match_type=MatchType.SENDER_DOMAIN.value,
            match_value=EXTERNAL_SENTINEL,
            color="#3B82F6",
            is_default=True,
        ),
        CategoryRule(
            name=MailCategory.INTERNAL.value,
            priority=4,
            match_type=MatchType.SENDER_DOMAIN.value,
            match_value=INTERNAL_SENTINEL,
            color="#22C55E",
            is_default=True,
        ),
        CategoryRule(
            name=MailCategory.SYSTEM.value,
            priority=5,
            match_type=MatchType.SENDER_CONTAINS.value,
            match_value="noreply,system,notification,no-reply",
            color="#6B7280",
            is_default=True,
        ),
    ]

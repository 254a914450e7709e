"""Decision engine combining rule classification with optional LLM arbitration."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from emailsnap.models import MailCategory
from emailsnap.structured_logger import StructuredLogger

if TYPE_CHECKING:
    from emailsnap.llm_client import ClassificationResult, LLMClient
    from emailsnap.models import RawMessage
    from emailsnap.rules_engine import RulesEngine

logger = logging.getLogger(__name__)

AI_CONFIDENCE_THRESHOLD = 0.7
DEFAULT_AI_BATCH_SIZE = 10


class DecisionSource(str, Enum):
    """Source of the classification decision."""

    RULE = "rule"
    LLM = "llm"


@dataclass
class Decision:
    """Final category for one message."""

    message_id: str
    category: str
    source: DecisionSource
    confidence: float = 1.0
    reason: str = ""
    rule_name: str | None = None
    llm_used: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for logging."""
        return {
            "message_id": self.message_id,
            "category": self.category,
            "source": self.source.value,
            "confidence": self.confidence,
            "reason": self.reason,
            "rule_name": self.rule_name,
            "llm_used": self.llm_used,
        }


class DecisionEngine:
    """
    Decides the category of fetched messages:
    1. Deterministic rules always produce a verdict
    2. If an LLM client is configured, its verdict replaces the rule verdict
       only when it names a known category with enough confidence

    AI failures never escape: they are logged to the diagnostics channel
    and the rule verdict stands.
    """

    def __init__(
        self,
        rules_engine: RulesEngine,
        llm_client: LLMClient | None = None,
        diagnostics: StructuredLogger | None = None,
        confidence_threshold: float = AI_CONFIDENCE_THRESHOLD,
    ):
        """Initialize the decision engine."""
        self.rules_engine = rules_engine
        self.llm_client = llm_client
        self.diagnostics = diagnostics or StructuredLogger()
        self.confidence_threshold = confidence_threshold

    def decide(self, raw: RawMessage) -> Decision:
        """Make a classification decision for one message."""
        decision = self._rule_decision(raw)
        if self.llm_client is None:
            return decision

        try:
            response = self.llm_client.classify_message(raw.subject, raw.sender_email)
        except Exception as e:
            self._record_ai_failure("classify", str(e), raw.id)
            return decision

        if not response.success:
            self._record_ai_failure("classify", response.error or "unknown error", raw.id)
            return decision

        return self._arbitrate(decision, response.result)

    def decide_batch(
        self, raws: list[RawMessage], batch_size: int = DEFAULT_AI_BATCH_SIZE
    ) -> list[Decision]:
        """Decide categories for many messages, one LLM call per batch."""
        decisions = [self._rule_decision(raw) for raw in raws]
        if self.llm_client is None:
            return decisions

        for start in range(0, len(raws), batch_size):
            chunk = raws[start : start + batch_size]
            try:
                response = self.llm_client.classify_batch(chunk)
            except Exception as e:
                self._record_ai_failure("classify_batch", str(e))
                continue

            if not response.success:
                self._record_ai_failure("classify_batch", response.error or "unknown error")
                continue

            results = response.result or []
            if len(results) != len(chunk):
                logger.warning(
                    f"AI batch returned {len(results)} results for {len(chunk)} messages"
                )

            for offset, result in enumerate(results[: len(chunk)]):
                index = start + offset
                if result is None:
                    self._record_ai_failure(
                        "classify_batch", "invalid result item", raws[index].id
                    )
                    continue
                decisions[index] = self._arbitrate(decisions[index], result)

        return decisions

    def _rule_decision(self, raw: RawMessage) -> Decision:
        match = self.rules_engine.evaluate(raw)
        if match:
            return Decision(
                message_id=raw.id,
                category=match.category,
                source=DecisionSource.RULE,
                reason=f"Matched rule '{match.rule_name}'",
                rule_name=match.rule_name,
            )
        return Decision(
            message_id=raw.id,
            category=MailCategory.UNCATEGORIZED.value,
            source=DecisionSource.RULE,
            reason="No rule matched",
        )

    def _arbitrate(self, rule_decision: Decision, result: ClassificationResult) -> Decision:
        """Prefer the AI verdict only when it is trustworthy."""
        rule_decision.llm_used = True

        if not MailCategory.is_known(result.category):
            logger.debug(f"AI suggested unknown category '{result.category}', keeping rule verdict")
            return rule_decision

        if result.confidence < self.confidence_threshold:
            logger.debug(
                f"AI confidence {result.confidence:.2f} below threshold for {rule_decision.message_id}"
            )
            return rule_decision

        return Decision(
            message_id=rule_decision.message_id,
            category=result.category,
            source=DecisionSource.LLM,
            confidence=result.confidence,
            reason=result.reason,
            rule_name=rule_decision.rule_name,
            llm_used=True,
        )

    def _record_ai_failure(self, stage: str, error: str, message_id: str | None = None) -> None:
        logger.warning(f"AI {stage} failed, using rule-based category: {error}")
        self.diagnostics.log_ai_failure(stage, error, message_id)

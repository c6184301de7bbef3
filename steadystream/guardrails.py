"""Guardrail contract.

Rule bodies live with the caller. This module defines what a guardrail
engine looks like to a session, and a small engine that runs a list of
``GuardrailRule`` callables and folds their violations into a result.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, runtime_checkable

from .logging import logger

Severity = Literal["warning", "error", "fatal"]


@dataclass
class GuardrailViolation:
    """Guardrail violation details."""

    rule: str  # Name of the rule that was violated
    message: str  # Human-readable message
    severity: Severity  # Severity of the violation
    recoverable: bool = True  # Whether this violation is recoverable via retry
    position: int | None = None  # Position in content where violation occurred
    timestamp: float | None = None  # Timestamp when violation was detected
    suggestion: str | None = None  # Suggested fix or action

    @property
    def halts(self) -> bool:
        """Fatal, or an error nobody can retry past."""
        return self.severity == "fatal" or (
            self.severity == "error" and not self.recoverable
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "rule": self.rule,
            "message": self.message,
            "severity": self.severity,
            "recoverable": self.recoverable,
        }


@dataclass(frozen=True)
class GuardrailContext:
    """What a guardrail check gets to look at."""

    content: str
    delta: str = ""
    completed: bool = False
    token_count: int = 0
    checkpoint: str = ""


@dataclass
class GuardrailResult:
    violations: list[GuardrailViolation] = field(default_factory=list)
    should_halt: bool = False
    should_retry: bool = False

    @property
    def passed(self) -> bool:
        return not self.violations

    @classmethod
    def from_violations(
        cls, violations: list[GuardrailViolation]
    ) -> GuardrailResult:
        should_halt = any(v.halts for v in violations)
        should_retry = not should_halt and any(
            v.severity == "error" and v.recoverable for v in violations
        )
        return cls(
            violations=violations,
            should_halt=should_halt,
            should_retry=should_retry,
        )


@runtime_checkable
class GuardrailEngine(Protocol):
    """Anything with ``check(context) -> GuardrailResult``."""

    def check(self, context: GuardrailContext) -> GuardrailResult: ...


@dataclass
class GuardrailRule:
    """Guardrail rule definition."""

    name: str  # Unique name of the rule
    check: Callable[[GuardrailContext], list[GuardrailViolation]]
    description: str | None = None
    streaming: bool = True  # Run during streaming, not only at completion
    severity: Severity = "error"
    recoverable: bool = True


class RuleEngine:
    """Runs ``GuardrailRule``s and aggregates their violations.

    Usage:
        def no_refusals(ctx):
            if "I cannot" in ctx.content:
                return [GuardrailViolation("refusal", "Model refused", "error")]
            return []

        engine = RuleEngine([GuardrailRule("refusal", no_refusals)])
        result = steadystream.run(stream=factory, guardrails=engine)
    """

    def __init__(self, rules: Iterable[GuardrailRule]) -> None:
        self.rules = list(rules)

    def check(self, context: GuardrailContext) -> GuardrailResult:
        violations: list[GuardrailViolation] = []
        for rule in self.rules:
            if not context.completed and not rule.streaming:
                continue
            found = rule.check(context)
            if found:
                logger.debug(f"Guardrail '{rule.name}': {len(found)} violations")
                now = time.time()
                for v in found:
                    if v.timestamp is None:
                        v.timestamp = now
                violations.extend(found)
        return GuardrailResult.from_violations(violations)


def as_engine(
    guardrails: GuardrailEngine | Iterable[GuardrailRule] | None,
) -> GuardrailEngine | None:
    """Accept an engine or a plain list of rules."""
    if guardrails is None:
        return None
    if isinstance(guardrails, GuardrailEngine):
        return guardrails
    rules = list(guardrails)
    return RuleEngine(rules) if rules else None


def is_zero_output(content: str) -> bool:
    """Check if content is empty or whitespace-only."""
    return not content or not content.strip()

"""Drift detection contract.

The heuristics that decide whether output has drifted belong to the
detector; a session only needs ``check(content, delta)``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable


@dataclass
class DriftResult:
    """Result of drift detection."""

    detected: bool
    types: list[str] = field(default_factory=list)
    confidence: float | None = None
    details: str | None = None


@runtime_checkable
class DriftDetector(Protocol):
    def check(self, content: str, delta: str | None = None) -> DriftResult: ...

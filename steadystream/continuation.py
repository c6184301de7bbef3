"""Checkpoints and continuation from the last known-good content.

When a stream fails mid-way, the session can resume from the last
checkpoint instead of starting over. Sources often repeat the tail of what
they were given, so the head of the resumed stream is deduplicated against
the checkpoint before it is appended.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field

# ─────────────────────────────────────────────────────────────────────────────
# Config
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class DeduplicationOptions:
    """Options for overlap detection at the splice point."""

    min_overlap: int = 2
    max_overlap: int = 500
    case_sensitive: bool = True
    normalize_whitespace: bool = False


@dataclass
class ContinuationConfig:
    """Resume-from-checkpoint configuration.

    Usage:
        result = steadystream.run(
            stream=factory,
            continue_from_last_good_token=ContinuationConfig(
                checkpoint_interval=5,
                deduplicate=True,
            ),
        )
    """

    enabled: bool = True
    checkpoint_interval: int | None = None  # Overrides CheckIntervals.checkpoint
    deduplicate: bool = True
    deduplication_options: DeduplicationOptions = field(
        default_factory=DeduplicationOptions
    )
    validate_checkpoint: bool = True

    @classmethod
    def default(cls) -> ContinuationConfig:
        return cls()

    @classmethod
    def coerce(
        cls, value: ContinuationConfig | bool | None
    ) -> ContinuationConfig | None:
        """Normalize the ``continue_from_last_good_token`` argument."""
        if value is True:
            return cls.default()
        if isinstance(value, ContinuationConfig) and value.enabled:
            return value
        return None


# ─────────────────────────────────────────────────────────────────────────────
# Checkpoints
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Checkpoint:
    """Immutable snapshot of known-good content."""

    content: str
    token_count: int
    attempt: int = 0


class CheckpointStore:
    """Holds the single most recent checkpoint of a session.

    Capturing replaces the previous snapshot; there is no history.
    """

    def __init__(self) -> None:
        self._latest: Checkpoint | None = None

    @property
    def latest(self) -> Checkpoint | None:
        return self._latest

    def capture(self, content: str, token_count: int, attempt: int = 0) -> Checkpoint:
        self._latest = Checkpoint(
            content=content, token_count=token_count, attempt=attempt
        )
        return self._latest

    def clear(self) -> None:
        self._latest = None

    def build_continuation(
        self, builder: Callable[[str], str] | None = None
    ) -> str | None:
        """Continuation prompt for the latest checkpoint, or None."""
        if self._latest is None:
            return None
        return build_continuation(self._latest, builder)

    def __bool__(self) -> bool:
        return self._latest is not None and bool(self._latest.content)


def default_continuation_prompt(checkpoint: str) -> str:
    """Default continuation input: the checkpoint content, verbatim."""
    return checkpoint


def build_continuation(
    checkpoint: Checkpoint,
    builder: Callable[[str], str] | None = None,
) -> str:
    return (builder or default_continuation_prompt)(checkpoint.content)


# ─────────────────────────────────────────────────────────────────────────────
# Overlap detection
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class OverlapResult:
    has_overlap: bool
    overlap_length: int
    overlap_text: str
    deduplicated: str


_WS = re.compile(r"\s+")


def _original_length(original: str, normalized_len: int) -> int:
    """Length in ``original`` covered by ``normalized_len`` normalized chars."""
    pos = 0
    consumed = 0
    while consumed < normalized_len and pos < len(original):
        if original[pos].isspace():
            while pos < len(original) and original[pos].isspace():
                pos += 1
        else:
            pos += 1
        consumed += 1
    return pos


def detect_overlap(
    checkpoint: str,
    continuation: str,
    options: DeduplicationOptions | None = None,
) -> OverlapResult:
    """Find the longest checkpoint suffix that is also a continuation prefix.

    Args:
        checkpoint: Content already delivered.
        continuation: Head of the resumed stream.
        options: Matching options (min/max overlap, case, whitespace).

    Returns:
        OverlapResult with the continuation stripped of the overlap.

    Example:
        >>> detect_overlap("Hello world", "world, again").deduplicated
        ', again'
    """
    opts = options or DeduplicationOptions()
    none = OverlapResult(
        has_overlap=False,
        overlap_length=0,
        overlap_text="",
        deduplicated=continuation or "",
    )
    if not checkpoint or not continuation:
        return none

    tail = checkpoint
    head = continuation
    if not opts.case_sensitive:
        tail = tail.lower()
        head = head.lower()
    if opts.normalize_whitespace:
        tail = _WS.sub(" ", tail)
        head = _WS.sub(" ", head)

    longest = min(len(tail), len(head), opts.max_overlap)
    for length in range(longest, opts.min_overlap - 1, -1):
        if tail.endswith(head[:length]):
            actual = (
                _original_length(continuation, length)
                if opts.normalize_whitespace
                else length
            )
            return OverlapResult(
                has_overlap=True,
                overlap_length=actual,
                overlap_text=continuation[:actual],
                deduplicated=continuation[actual:],
            )
    return none


class OverlapBuffer:
    """Holds back the head of a resumed stream until the overlap is known.

    ``push`` returns text that is safe to append, or None while still
    buffering. Buffering stops once an overlap with a non-empty remainder
    is found or the buffer grows past ``max_overlap``.
    """

    def __init__(self, checkpoint: str, options: DeduplicationOptions | None = None):
        self.checkpoint = checkpoint
        self.options = options or DeduplicationOptions()
        self._buffer = ""
        self.resolved = not checkpoint
        self.result: OverlapResult | None = None

    @property
    def pending(self) -> bool:
        return not self.resolved and bool(self._buffer)

    def push(self, text: str) -> str | None:
        if self.resolved:
            return text
        self._buffer += text
        result = detect_overlap(self.checkpoint, self._buffer, self.options)
        if result.has_overlap and result.deduplicated:
            return self._resolve(result)
        if len(self._buffer) > self.options.max_overlap:
            return self._resolve(result)
        return None

    def flush(self) -> str:
        """Release whatever is buffered at end of stream."""
        if self.resolved:
            return ""
        result = detect_overlap(self.checkpoint, self._buffer, self.options)
        return self._resolve(result)

    def _resolve(self, result: OverlapResult) -> str:
        self.resolved = True
        self.result = result
        self._buffer = ""
        return result.deduplicated

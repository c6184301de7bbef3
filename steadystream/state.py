"""Attempt state management."""

from __future__ import annotations

import time

from .continuation import Checkpoint
from .types import State


def create_state() -> State:
    """Create fresh state."""
    return State()


def reset_state(state: State) -> None:
    """Clear per-attempt fields for a fresh start."""
    state.content = ""
    state.checkpoint = ""
    state.token_count = 0
    state.first_token_at = None
    state.last_token_at = None
    state.duration = None
    state.resumed = False
    state.continuation_prompt = None
    _clear_results(state)


def seed_state(state: State, checkpoint: Checkpoint) -> None:
    """Start an attempt from a checkpoint instead of from nothing."""
    state.content = checkpoint.content
    state.checkpoint = checkpoint.content
    state.token_count = checkpoint.token_count
    state.duration = None
    state.resumed = True
    _clear_results(state)


def _clear_results(state: State) -> None:
    state.completed = False
    state.violations = []
    state.drift_detected = False
    state.drift_types = []


def update_checkpoint(state: State) -> None:
    """Save current content as checkpoint."""
    state.checkpoint = state.content


def append_token(state: State, token: str) -> None:
    """Append token to content and update timing."""
    now = time.time()
    if state.first_token_at is None:
        state.first_token_at = now
    state.last_token_at = now
    state.append_content(token)
    state.token_count += 1


def mark_completed(state: State) -> None:
    """Mark stream as completed and calculate duration."""
    state.completed = True
    if state.first_token_at is not None:
        state.duration = (state.last_token_at or time.time()) - state.first_token_at

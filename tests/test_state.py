"""Tests for steadystream.state module."""

import time

import pytest

from steadystream.continuation import Checkpoint
from steadystream.guardrails import GuardrailViolation
from steadystream.state import (
    append_token,
    create_state,
    mark_completed,
    reset_state,
    seed_state,
    update_checkpoint,
)
from steadystream.types import State


class TestCreateState:
    def test_creates_fresh_state(self):
        state = create_state()
        assert state.content == ""
        assert state.token_count == 0
        assert state.completed is False
        assert state.network_errors.maxlen == 10


class TestUpdateCheckpoint:
    def test_saves_checkpoint(self):
        state = State(content="Hello world")
        update_checkpoint(state)
        assert state.checkpoint == "Hello world"


class TestAppendToken:
    def test_appends_token(self):
        state = State()
        append_token(state, "Hello")
        assert state.content == "Hello"
        assert state.token_count == 1

    def test_multiple_tokens(self):
        state = State()
        append_token(state, "Hello")
        append_token(state, " ")
        append_token(state, "World")
        assert state.content == "Hello World"
        assert state.token_count == 3

    def test_sets_timing(self):
        state = State()
        append_token(state, "a")
        first = state.first_token_at
        assert first is not None
        append_token(state, "b")
        assert state.first_token_at == first
        assert state.last_token_at >= first


class TestMarkCompleted:
    def test_marks_completed(self):
        state = State()
        mark_completed(state)
        assert state.completed
        assert state.duration is None

    def test_calculates_duration(self):
        state = State()
        state.first_token_at = time.time() - 1.0
        state.last_token_at = state.first_token_at + 0.5
        mark_completed(state)
        assert state.duration == pytest.approx(0.5)


class TestResetState:
    def test_clears_attempt_fields_keeps_counters(self):
        state = State(
            content="partial",
            checkpoint="part",
            token_count=4,
            model_retry_count=2,
            network_retry_count=1,
            fallback_index=1,
            resumed=True,
            continuation_prompt="part",
            drift_detected=True,
        )
        state.violations.append(GuardrailViolation("r", "m", "warning"))
        reset_state(state)
        assert state.content == ""
        assert state.checkpoint == ""
        assert state.token_count == 0
        assert state.violations == []
        assert not state.drift_detected
        assert not state.resumed
        assert state.continuation_prompt is None
        assert state.model_retry_count == 2
        assert state.network_retry_count == 1
        assert state.fallback_index == 1


class TestSeedState:
    def test_starts_from_checkpoint(self):
        state = State(content="partial answer that broke", token_count=9)
        seed_state(state, Checkpoint("partial answer", 5))
        assert state.content == "partial answer"
        assert state.checkpoint == "partial answer"
        assert state.token_count == 5
        assert state.resumed
        assert not state.completed

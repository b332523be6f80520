"""Tests for GenerationSession: control loop, stop conditions, failures, rotation."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np
import pytest

from tokenloom.backends.base import ModelHandle
from tokenloom.backends.mock import MockDetokenizer, MockModelHandle
from tokenloom.config import RuntimeConfig
from tokenloom.exceptions import (
    BackendFailureError,
    ContextOverflowError,
    GenerationCancelledError,
    GenerationError,
    InvalidParamsError,
)
from tokenloom.logging.logger import GenerationLogger
from tokenloom.params import SampleParams
from tokenloom.session import GenerationSession, SessionState, StopReason

if TYPE_CHECKING:
    from collections.abc import Sequence

GREEDY = SampleParams(temperature=0.0)


def next_id(history: list[int]) -> int:
    return history[-1] + 1


def _session(model: ModelHandle | None = None, **kwargs: object) -> GenerationSession:
    """Greedy session over a scripted mock unless told otherwise."""
    if model is None:
        model = MockModelHandle(vocab_size=64, seed=0, next_token=next_id)
    kwargs.setdefault("generation_logger", GenerationLogger(log_level="none"))
    return GenerationSession(
        model,
        MockDetokenizer(),
        kwargs.pop("params", GREEDY),  # type: ignore[arg-type]
        **kwargs,  # type: ignore[arg-type]
    )


class _Recorder:
    """Callback that records (text, elapsed) pairs and halts at a given step."""

    def __init__(self, halt_at: int | None = None) -> None:
        self.calls: list[tuple[str, float]] = []
        self.halt_at = halt_at

    def __call__(self, text: str, elapsed_s: float) -> bool:
        self.calls.append((text, elapsed_s))
        return self.halt_at is None or len(self.calls) < self.halt_at


class TestConstruction:
    def test_initial_state(self) -> None:
        session = _session()
        assert session.state is SessionState.IDLE
        assert not session.is_busy

    def test_invalid_params_rejected_eagerly(self) -> None:
        with pytest.raises(InvalidParamsError):
            _session(params={"top_p": 4.0})

    def test_invalid_window_rejected(self) -> None:
        with pytest.raises(InvalidParamsError):
            _session(context_size=4, keep_prefix=5)

    @pytest.mark.parametrize("field", ["batch_size", "max_new_tokens"])
    def test_nonpositive_limits_rejected(self, field: str) -> None:
        with pytest.raises(InvalidParamsError):
            _session(**{field: 0})

    def test_from_config(self, silent_config: RuntimeConfig) -> None:
        model = MockModelHandle(vocab_size=64, seed=0, next_token=next_id)
        config = silent_config.model_copy(update={"context_size": 32, "stop_tokens": [9]})
        session = GenerationSession.from_config(
            config, model, MockDetokenizer(), overrides={"temperature": 0.0, "max_new_tokens": 10}
        )
        result = session.generate([5])
        assert result.tokens == (6, 7, 8, 9)
        assert result.stop_reason is StopReason.STOP_TOKEN
        assert session.window.max_size == 32

    def test_from_config_rejects_infrastructure_override(
        self, silent_config: RuntimeConfig
    ) -> None:
        with pytest.raises(InvalidParamsError):
            GenerationSession.from_config(
                silent_config, MockModelHandle(), MockDetokenizer(), overrides={"context_size": 4}
            )


class TestStopConditions:
    def test_max_tokens(self) -> None:
        session = _session(max_new_tokens=5)
        result = session.generate([1])
        assert result.tokens == (2, 3, 4, 5, 6)
        assert result.text == "<2><3><4><5><6>"
        assert result.stop_reason is StopReason.MAX_TOKENS
        assert result.state is SessionState.COMPLETED
        assert session.state is SessionState.COMPLETED

    def test_stop_token_is_emitted(self) -> None:
        recorder = _Recorder()
        session = _session(stop_tokens=[4])
        result = session.generate([1, 2, 3], recorder)
        assert result.tokens == (4,)
        assert result.stop_reason is StopReason.STOP_TOKEN
        assert [text for text, _ in recorder.calls] == ["<4>"]

    @pytest.mark.parametrize("k", [1, 3, 6])
    def test_callback_halt_at_k(self, k: int) -> None:
        """False at step k: exactly k callbacks and no (k+1)-th forward pass."""
        model = MockModelHandle(vocab_size=64, seed=0, next_token=next_id)
        recorder = _Recorder(halt_at=k)
        result = _session(model, max_new_tokens=100).generate([1], recorder)
        assert len(recorder.calls) == k
        assert model.forward_calls == k
        assert result.forward_passes == k
        assert result.num_tokens == k
        assert result.stop_reason is StopReason.CALLBACK

    def test_callback_returning_none_continues(self) -> None:
        calls: list[str] = []

        def callback(text: str, elapsed_s: float) -> None:
            calls.append(text)

        result = _session(max_new_tokens=3).generate([1], callback)  # type: ignore[arg-type]
        assert len(calls) == 3
        assert result.stop_reason is StopReason.MAX_TOKENS

    def test_elapsed_non_decreasing(self) -> None:
        recorder = _Recorder()
        result = _session(max_new_tokens=20).generate([1], recorder)
        elapsed = [e for _, e in recorder.calls]
        assert elapsed == sorted(elapsed)
        assert all(e >= 0.0 for e in elapsed)
        assert result.elapsed_s == elapsed[-1]


class TestPriming:
    def test_prompt_submitted_except_last(self) -> None:
        model = MockModelHandle(vocab_size=64, seed=0, next_token=next_id)
        _session(model, max_new_tokens=1).generate([1, 2, 3, 4])
        assert model.calls == [[1, 2, 3], [4]]

    def test_prompt_chunked_by_batch_size(self) -> None:
        model = MockModelHandle(vocab_size=64, seed=0, next_token=next_id)
        result = _session(model, batch_size=2, max_new_tokens=1).generate([1, 2, 3, 4, 5, 6])
        assert model.calls == [[1, 2], [3, 4], [5], [6]]
        assert result.forward_passes == 4

    def test_prompt_enters_penalty_window(self) -> None:
        session = _session(max_new_tokens=1)
        session.generate([10, 11, 12])
        assert list(session.sampler_state.recent) == [10, 11, 12, 13]

    def test_empty_prompt_on_fresh_session_rejected(self) -> None:
        session = _session()
        with pytest.raises(InvalidParamsError):
            session.generate([])
        assert session.state is SessionState.IDLE
        assert not session.is_busy

    def test_prompt_longer_than_window(self) -> None:
        """A long prompt is appended in window-sized chunks and rotates."""
        model = MockModelHandle(vocab_size=64, seed=0, next_token=next_id)
        session = _session(model, context_size=8, keep_prefix=2, max_new_tokens=2)
        result = session.generate(list(range(20)))
        assert result.tokens == (20, 21)
        assert session.window.tokens[:2] == [0, 1]
        assert len(session.window) <= 8
        assert result.rotations > 0


class TestRotation:
    def test_single_rotation_end_to_end(self) -> None:
        """Prompt [1,2,3], context 5, keep 1, generating [4,5,6,7]: one rotation."""
        model = MockModelHandle(vocab_size=64, seed=0, next_token=next_id)
        session = _session(model, context_size=5, keep_prefix=1, max_new_tokens=4)
        result = session.generate([1, 2, 3])
        assert result.tokens == (4, 5, 6, 7)
        assert result.rotations == 1
        assert session.window.rotation_count == 1
        assert session.window.tokens[0] == 1
        assert session.window.tokens == [1, 4, 5, 6, 7]

    def test_backend_notified_of_consumed_discards(self) -> None:
        model = MockModelHandle(vocab_size=64, seed=0, next_token=next_id)
        session = _session(model, context_size=5, keep_prefix=1, max_new_tokens=4)
        session.generate([1, 2, 3])
        assert model.discards == [(1, 2)]
        # Backend mirror matches the consumed part of the window.
        assert model.evaluated == session.window.tokens[: session.window.position]

    def test_rotation_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        session = _session(context_size=5, keep_prefix=1, max_new_tokens=4)
        with caplog.at_level(logging.INFO, logger="tokenloom"):
            session.generate([1, 2, 3])
        assert any("context rotated" in r.message for r in caplog.records)

    def test_long_generation_bounded(self) -> None:
        model = MockModelHandle(vocab_size=64, seed=0, next_token=next_id)
        session = _session(model, context_size=16, keep_prefix=4, max_new_tokens=200)
        session.generate([0, 1, 2, 3, 4])
        assert len(session.window) <= 16
        assert session.window.tokens[:4] == [0, 1, 2, 3]
        assert model.evaluated == session.window.tokens[: session.window.position]

    def test_keep_prefix_equal_to_context_overflows(self) -> None:
        session = _session(context_size=3, keep_prefix=3)
        with pytest.raises(ContextOverflowError) as excinfo:
            session.generate([1, 2, 3, 4])
        assert excinfo.value.stage == "priming"
        assert session.state is SessionState.FAILED


class TestCancellation:
    @pytest.mark.parametrize("k", [1, 4])
    def test_cancel_between_steps(self, k: int) -> None:
        """cancel() during step k: CANCELLED with exactly k tokens."""
        model = MockModelHandle(vocab_size=64, seed=0, next_token=next_id)
        session = _session(model, max_new_tokens=50)
        calls = []

        def callback(text: str, elapsed_s: float) -> bool:
            calls.append(text)
            if len(calls) == k:
                session.cancel()
            return True

        with pytest.raises(GenerationCancelledError) as excinfo:
            session.generate([1], callback)

        result = excinfo.value.result
        assert result.state is SessionState.CANCELLED
        assert result.num_tokens == k
        assert result.stop_reason is None
        assert model.forward_calls == k
        assert session.state is SessionState.CANCELLED
        assert not session.is_busy

    def test_cancel_when_idle_is_noop(self) -> None:
        session = _session(max_new_tokens=2)
        session.cancel()
        assert session.generate([1]).num_tokens == 2

    def test_cancel_during_priming(self) -> None:
        model = MockModelHandle(vocab_size=64, seed=0, next_token=next_id)
        session = _session(model, batch_size=1)

        original = model.forward_pass

        def forward_then_cancel(tokens: Sequence[int]) -> np.ndarray:
            session.cancel()
            return original(tokens)

        model.forward_pass = forward_then_cancel  # type: ignore[method-assign]
        with pytest.raises(GenerationCancelledError) as excinfo:
            session.generate([1, 2, 3, 4])
        assert excinfo.value.stage == "priming"
        assert excinfo.value.result.num_tokens == 0
        assert model.forward_calls == 1


class TestFailures:
    def test_backend_failure_during_generation(self) -> None:
        model = MockModelHandle(vocab_size=64, seed=0, next_token=next_id, fail_at=3)
        recorder = _Recorder()
        session = _session(model, max_new_tokens=10)
        with pytest.raises(BackendFailureError) as excinfo:
            session.generate([1], recorder)
        assert excinfo.value.stage == "forward_pass"
        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert len(recorder.calls) == 2
        assert session.state is SessionState.FAILED

    def test_backend_failure_during_priming(self) -> None:
        model = MockModelHandle(vocab_size=64, seed=0, next_token=next_id, fail_at=1)
        with pytest.raises(BackendFailureError) as excinfo:
            _session(model).generate([1, 2, 3])
        assert excinfo.value.stage == "priming"

    def test_wrong_logits_length(self) -> None:
        class ShortHandle(MockModelHandle):
            def forward_pass(self, tokens: Sequence[int]) -> np.ndarray:
                return super().forward_pass(tokens)[:-1]

        with pytest.raises(BackendFailureError, match="shape"):
            _session(ShortHandle(vocab_size=16)).generate([1])

    def test_decode_failure_skips_callback(self) -> None:
        recorder = _Recorder()
        session = GenerationSession(
            MockModelHandle(vocab_size=64, seed=0, next_token=next_id),
            MockDetokenizer(fail_on=[4]),
            GREEDY,
            generation_logger=GenerationLogger(log_level="none"),
        )
        with pytest.raises(BackendFailureError) as excinfo:
            session.generate([2], recorder)
        assert excinfo.value.stage == "decode"
        assert [text for text, _ in recorder.calls] == ["<3>"]

    def test_decode_failure_leaves_no_trace(self) -> None:
        """The undecodable token enters neither the context nor the penalty window."""
        model = MockModelHandle(vocab_size=64, seed=0, next_token=next_id)
        session = GenerationSession(
            model,
            MockDetokenizer(fail_on=[4]),
            GREEDY,
            generation_logger=GenerationLogger(log_level="none"),
        )
        with pytest.raises(BackendFailureError):
            session.generate([2])
        assert session.window.tokens == [2, 3]
        assert list(session.sampler_state.recent) == [2, 3]
        assert session.window.effective_input() == []

        # The next turn continues from the last emitted token.
        result = session.generate([10], lambda text, elapsed_s: False)
        assert result.tokens == (11,)
        assert 4 not in model.evaluated

    def test_decode_failure_restores_mirostat_mu(self) -> None:
        params = SampleParams(mirostat=2, mirostat_tau=3.0, seed=7)
        session = GenerationSession(
            MockModelHandle(vocab_size=64, seed=0),
            MockDetokenizer(fail_on=range(64)),
            params,
            generation_logger=GenerationLogger(log_level="none"),
        )
        with pytest.raises(BackendFailureError):
            session.generate([1])
        assert session.sampler_state.mu == pytest.approx(6.0)
        assert session.sampler_state.last_surprise is None
        assert list(session.sampler_state.recent) == [1]

    def test_callback_exception(self) -> None:
        def callback(text: str, elapsed_s: float) -> bool:
            raise ValueError("boom")

        session = _session()
        with pytest.raises(GenerationError) as excinfo:
            session.generate([1], callback)
        assert excinfo.value.stage == "callback"
        assert "boom" in str(excinfo.value)
        assert session.state is SessionState.FAILED

    def test_failure_logged_as_warning(self, caplog: pytest.LogCaptureFixture) -> None:
        model = MockModelHandle(vocab_size=64, seed=0, fail_at=1)
        with caplog.at_level(logging.WARNING, logger="tokenloom"):
            with pytest.raises(BackendFailureError):
                _session(model).generate([1])
        assert any("generation failed" in r.message for r in caplog.records)

    def test_session_usable_after_failure(self) -> None:
        model = MockModelHandle(vocab_size=64, seed=0, next_token=next_id, fail_at=2)
        session = _session(model, max_new_tokens=3)
        with pytest.raises(BackendFailureError):
            session.generate([1])
        result = session.generate([10])
        assert result.state is SessionState.COMPLETED

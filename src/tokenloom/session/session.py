"""Generation session: the control loop tying window, backend and sampler together.

One session binds a :class:`~tokenloom.backends.base.ModelHandle`, a
:class:`~tokenloom.backends.base.Detokenizer`, a
:class:`~tokenloom.context.ContextWindow` and a
:class:`~tokenloom.sampling.TokenSampler`. Per generation step::

    poll cancel -> forward pass(unconsumed suffix) -> sample -> decode
                -> append -> callback(text, elapsed_s) -> stop checks

The context and Mirostat state persist across ``generate`` calls, so a
session carries a whole conversation until :meth:`GenerationSession.reset`.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

import numpy as np

from tokenloom.config import resolve_config
from tokenloom.context.window import ContextWindow
from tokenloom.exceptions import (
    BackendFailureError,
    GenerationCancelledError,
    GenerationError,
    InvalidParamsError,
    SessionBusyError,
)
from tokenloom.logging.logger import GenerationLogger
from tokenloom.logging.types import TokenGenerationRecord
from tokenloom.params import coerce_params
from tokenloom.sampling.sampler import TokenSampler
from tokenloom.session.types import GenerationResult, SessionState, StopReason

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from types import TracebackType

    from tokenloom.backends.base import Detokenizer, ModelHandle
    from tokenloom.config import RuntimeConfig
    from tokenloom.context.types import RotationEvent
    from tokenloom.params import SampleParams
    from tokenloom.sampling.types import SamplerState

    TokenCallback = Callable[[str, float], "bool | None"]

logger = logging.getLogger("tokenloom")


class _Run:
    """Bookkeeping for the generation currently in progress."""

    __slots__ = ("start", "tokens", "fragments", "forward_passes", "rotations", "last_elapsed")

    def __init__(self) -> None:
        self.start = time.perf_counter()
        self.tokens: list[int] = []
        self.fragments: list[str] = []
        self.forward_passes = 0
        self.rotations = 0
        self.last_elapsed = 0.0

    def elapsed(self) -> float:
        return time.perf_counter() - self.start

    def result(self, state: SessionState, stop_reason: StopReason | None) -> GenerationResult:
        return GenerationResult(
            state=state,
            stop_reason=stop_reason,
            tokens=tuple(self.tokens),
            text="".join(self.fragments),
            elapsed_s=self.last_elapsed,
            forward_passes=self.forward_passes,
            rotations=self.rotations,
        )


class GenerationSession:
    """Runs autoregressive generation against one model handle.

    A session runs at most one generation at a time. :meth:`generate`
    runs on the calling thread; :meth:`start` runs on the session's single
    worker thread and returns a :class:`~concurrent.futures.Future`.

    Args:
        model: Backend handle; owned by the session and freed by :meth:`close`.
        detokenizer: Maps generated token ids to text.
        params: Sampling parameters (a SampleParams or a plain dict).
        context_size: Maximum tokens held in the context window.
        keep_prefix: Leading tokens protected from rotation.
        eviction_count: Tokens discarded per rotation (0 = half the
            rotatable region).
        batch_size: Maximum tokens per forward pass while priming.
        max_new_tokens: Upper bound on generated tokens per request.
        stop_tokens: Token ids that end generation once emitted.
        generation_logger: Per-token logger; defaults to summary level.
        rng: Random generator for the sampler; defaults to one seeded from
            ``params.seed``. An injected generator survives :meth:`reset`.

    Raises:
        InvalidParamsError: If any parameter is invalid.
    """

    def __init__(
        self,
        model: ModelHandle,
        detokenizer: Detokenizer,
        params: SampleParams | dict[str, Any] | None = None,
        *,
        context_size: int = 2048,
        keep_prefix: int = 0,
        eviction_count: int = 0,
        batch_size: int = 512,
        max_new_tokens: int = 256,
        stop_tokens: Sequence[int] = (),
        generation_logger: GenerationLogger | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        if batch_size < 1:
            raise InvalidParamsError(f"batch_size must be >= 1, got {batch_size}")
        if max_new_tokens < 1:
            raise InvalidParamsError(f"max_new_tokens must be >= 1, got {max_new_tokens}")

        self._params = coerce_params(params)
        self._model = model
        self._detokenizer = detokenizer
        self._window = ContextWindow(context_size, keep_prefix, eviction_count)
        self._rng = rng
        self._sampler = TokenSampler(self._params, rng=rng)
        self._sampler_state = self._sampler.new_state()
        self._batch_size = batch_size
        self._max_new_tokens = max_new_tokens
        self._stop_tokens = frozenset(int(t) for t in stop_tokens)
        self._logger = generation_logger or GenerationLogger()

        self._state = SessionState.IDLE
        self._busy = threading.Lock()
        self._cancel = threading.Event()
        self._generating_thread: int | None = None
        self._free_on_release = False
        self._executor: ThreadPoolExecutor | None = None
        self._closed = False
        self._vocab_size = int(model.vocabulary_size())
        if self._vocab_size < 1:
            raise InvalidParamsError(f"Backend reports vocabulary size {self._vocab_size}")

    @classmethod
    def from_config(
        cls,
        config: RuntimeConfig,
        model: ModelHandle,
        detokenizer: Detokenizer,
        overrides: dict[str, Any] | None = None,
    ) -> GenerationSession:
        """Build a session from a RuntimeConfig plus optional flat overrides.

        Raises:
            InvalidParamsError: If an override key is unknown, targets an
                infrastructure field, or fails validation.
        """
        config = resolve_config(config, overrides)
        return cls(
            model,
            detokenizer,
            config.sampling,
            context_size=config.context_size,
            keep_prefix=config.keep_prefix_tokens,
            eviction_count=config.eviction_count,
            batch_size=config.batch_size,
            max_new_tokens=config.max_new_tokens,
            stop_tokens=config.stop_tokens,
            generation_logger=GenerationLogger.from_config(config),
        )

    # --- Read-only views ---

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def params(self) -> SampleParams:
        return self._params

    @property
    def window(self) -> ContextWindow:
        return self._window

    @property
    def sampler_state(self) -> SamplerState:
        return self._sampler_state

    @property
    def generation_logger(self) -> GenerationLogger:
        return self._logger

    @property
    def is_busy(self) -> bool:
        return self._busy.locked()

    @property
    def closed(self) -> bool:
        return self._closed

    # --- Public API ---

    def generate(
        self,
        prompt: Sequence[int],
        callback: TokenCallback | None = None,
    ) -> GenerationResult:
        """Prime *prompt* and generate tokens on the calling thread.

        Args:
            prompt: Token ids to append before generating. May be empty when
                continuing a session whose last token is still unconsumed.
            callback: Called as ``callback(text, elapsed_s)`` after every
                generated token; returning ``False`` halts after that token.

        Returns:
            The completed GenerationResult.

        Raises:
            SessionBusyError: If a generation is already running.
            GenerationCancelledError: If :meth:`cancel` was observed; carries
                the partial result.
            GenerationError: On any failure, with ``stage`` set.
        """
        self._acquire()
        try:
            return self._run(prompt, callback)
        finally:
            self._release()

    def start(
        self,
        prompt: Sequence[int],
        callback: TokenCallback | None = None,
    ) -> Future[GenerationResult]:
        """Run :meth:`generate` on the session's worker thread.

        The busy check happens here, on the calling thread.

        Raises:
            SessionBusyError: If a generation is already running.
        """
        self._acquire()
        try:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="tokenloom-session"
                )
            return self._executor.submit(self._run_and_release, list(prompt), callback)
        except BaseException:
            self._release()
            raise

    def cancel(self) -> None:
        """Request cancellation of the running generation.

        Observed before the next forward pass. Does nothing when idle.
        """
        # Each run owns its event, so a request racing the end of a run
        # cannot leak into the next one.
        event = self._cancel
        if self._busy.locked():
            logger.debug("cancellation requested")
            event.set()

    def reset(self) -> None:
        """Clear the context window and sampler state.

        The sampler's random generator is reseeded from ``params.seed``,
        unless a generator was passed to the constructor: that one is kept
        and continues from its current state.

        Raises:
            SessionBusyError: If a generation is running.
        """
        self._acquire()
        try:
            self._window.clear()
            self._sampler = TokenSampler(self._params, rng=self._rng)
            self._sampler_state = self._sampler.new_state()
            self._logger.clear()
            self._state = SessionState.IDLE
        finally:
            self._release()

    def close(self) -> None:
        """Cancel any running generation, stop the worker and free the model.

        Idempotent; the model handle is freed exactly once. When called from
        a callback, the model is freed as soon as the running generation
        unwinds.
        """
        if self._closed:
            return
        self._closed = True
        self.cancel()
        if self._generating_thread == threading.get_ident():
            self._free_on_release = True
            if self._executor is not None:
                self._executor.shutdown(wait=False)
                self._executor = None
            logger.debug("session close deferred to the end of the running generation")
            return
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        with self._busy:
            self._model.free()
        logger.debug("session closed")

    def __enter__(self) -> GenerationSession:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # --- Control loop ---

    def _acquire(self) -> None:
        if self._closed:
            raise GenerationError("Session is closed")
        if not self._busy.acquire(blocking=False):
            raise SessionBusyError("A generation is already running on this session")
        self._cancel = threading.Event()

    def _release(self) -> None:
        self._generating_thread = None
        try:
            if self._free_on_release:
                self._free_on_release = False
                self._model.free()
                logger.debug("session closed")
        finally:
            self._busy.release()

    def _run_and_release(
        self, prompt: Sequence[int], callback: TokenCallback | None
    ) -> GenerationResult:
        try:
            return self._run(prompt, callback)
        finally:
            self._release()

    def _run(self, prompt: Sequence[int], callback: TokenCallback | None) -> GenerationResult:
        self._generating_thread = threading.get_ident()
        prompt = [int(t) for t in prompt]
        if not prompt and not self._window.effective_input():
            raise InvalidParamsError("prompt is empty and the context has nothing to evaluate")

        run = _Run()
        try:
            self._set_state(SessionState.PRIMING)
            self._prime(prompt, run)
            self._set_state(SessionState.GENERATING)
            stop_reason = self._generate_loop(callback, run)
        except GenerationCancelledError:
            self._set_state(SessionState.CANCELLED)
            raise
        except GenerationError as exc:
            self._set_state(SessionState.FAILED)
            logger.warning("generation failed: %s", exc)
            raise
        except Exception:
            self._set_state(SessionState.FAILED)
            logger.exception("generation failed with an unexpected error")
            raise

        self._set_state(SessionState.COMPLETED)
        result = run.result(SessionState.COMPLETED, stop_reason)
        logger.info(
            "generation completed: tokens=%d reason=%s forward_passes=%d rotations=%d "
            "elapsed=%.3fs",
            result.num_tokens,
            stop_reason.value,
            result.forward_passes,
            result.rotations,
            result.elapsed_s,
        )
        return result

    def _prime(self, prompt: list[int], run: _Run) -> None:
        """Append the prompt and submit all of it but the last token."""
        self._sampler_state.accept_many(prompt)
        step = max(1, self._window.capacity)
        for start in range(0, len(prompt), step):
            self._append(prompt[start : start + step], run, stage="priming")
            pending = self._window.effective_input()[:-1]
            for offset in range(0, len(pending), self._batch_size):
                self._check_cancel(run, stage="priming")
                batch = pending[offset : offset + self._batch_size]
                self._forward(batch, run, stage="priming")
                self._window.mark_consumed(len(batch))

    def _generate_loop(self, callback: TokenCallback | None, run: _Run) -> StopReason:
        step = 0
        while True:
            self._check_cancel(run, stage="forward_pass")

            t0 = time.perf_counter()
            logits = self._forward(self._window.effective_input(), run, stage="forward_pass")
            self._window.mark_consumed()
            t1 = time.perf_counter()

            checkpoint = self._sampler_state.snapshot()
            sample = self._sampler.sample(logits, self._sampler_state)
            t2 = time.perf_counter()

            # The token is committed to the context only once it has decoded.
            token = sample.token_id
            try:
                text = self._detokenizer.decode(token)
            except Exception as exc:
                self._sampler_state.restore(checkpoint)
                raise BackendFailureError(
                    f"Detokenizer failed on token {token}: {exc}", stage="decode"
                ) from exc
            try:
                event = self._append([token], run, stage="sampling")
            except GenerationError:
                self._sampler_state.restore(checkpoint)
                raise

            step += 1
            run.tokens.append(token)
            run.fragments.append(text)
            run.last_elapsed = run.elapsed()

            self._logger.log_token(
                TokenGenerationRecord(
                    step=step,
                    token_id=token,
                    token_prob=sample.token_prob,
                    num_candidates=sample.num_candidates,
                    greedy=sample.greedy,
                    surprise=sample.surprise,
                    mu=sample.mu,
                    text=text,
                    forward_ms=(t1 - t0) * 1000.0,
                    sampling_ms=(t2 - t1) * 1000.0,
                    elapsed_s=run.last_elapsed,
                    rotated=event is not None,
                    context_length=len(self._window),
                )
            )

            keep_going: bool | None = True
            if callback is not None:
                try:
                    keep_going = callback(text, run.last_elapsed)
                except Exception as exc:
                    raise GenerationError(f"Callback raised: {exc}", stage="callback") from exc

            if keep_going is False:
                return StopReason.CALLBACK
            if token in self._stop_tokens:
                return StopReason.STOP_TOKEN
            if step >= self._max_new_tokens:
                return StopReason.MAX_TOKENS

    def _forward(self, tokens: Sequence[int], run: _Run, stage: str) -> np.ndarray:
        run.forward_passes += 1
        try:
            logits = self._model.forward_pass(tokens)
        except Exception as exc:
            raise BackendFailureError(f"Forward pass failed: {exc}", stage=stage) from exc

        logits = np.asarray(logits)
        if logits.shape != (self._vocab_size,):
            raise BackendFailureError(
                f"Backend returned logits of shape {logits.shape}, "
                f"expected ({self._vocab_size},)",
                stage=stage,
            )
        return logits

    def _append(self, tokens: list[int], run: _Run, stage: str) -> RotationEvent | None:
        try:
            event = self._window.append(tokens)
        except GenerationError as exc:
            exc.stage = stage
            raise
        if event is None:
            return None

        run.rotations += 1
        logger.info(
            "context rotated: discarded %d tokens after prefix %d (window %d/%d)",
            event.discarded,
            event.keep_prefix,
            event.length_after,
            self._window.max_size,
        )
        if event.consumed_discarded:
            try:
                self._model.discard(event.keep_prefix, event.consumed_discarded)
            except Exception as exc:
                raise BackendFailureError(
                    f"Backend failed to discard rotated tokens: {exc}", stage=stage
                ) from exc
        return event

    def _check_cancel(self, run: _Run, stage: str) -> None:
        if self._cancel.is_set():
            result = run.result(SessionState.CANCELLED, None)
            logger.info("generation cancelled after %d tokens", result.num_tokens)
            raise GenerationCancelledError(
                f"Generation cancelled after {result.num_tokens} tokens", result, stage=stage
            )

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            logger.debug("session state %s -> %s", self._state.value, state.value)
        self._state = state

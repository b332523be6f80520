"""llama.cpp backend adapter using the ``llama-cpp-python`` package.

Wraps ``llama_cpp.Llama`` so a quantized GGUF model can back a generation
session. The ``llama-cpp-python`` package is optional — this module
imports cleanly without it and reports :class:`ModelLoadError` on use.

Rotation support shifts the llama.cpp KV cache in place (remove the
discarded block, slide the tail left) so the context never has to be
re-evaluated from scratch.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import numpy as np

from tokenloom.backends.base import Detokenizer, ModelHandle
from tokenloom.backends.registry import register_backend
from tokenloom.exceptions import ContextLoadError, ModelLoadError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from tokenloom.config import RuntimeConfig

logger = logging.getLogger("tokenloom")

# ---------------------------------------------------------------------------
# Import guard: no crash when llama-cpp-python is not installed
# ---------------------------------------------------------------------------

try:
    from llama_cpp import Llama

    _LLAMA_CPP_AVAILABLE = True
except ImportError:
    _LLAMA_CPP_AVAILABLE = False


@register_backend("llama_cpp")
class LlamaCppModelHandle(ModelHandle):
    """Quantized model evaluated by llama.cpp.

    Configuration fields used from ``RuntimeConfig``:

    * ``model_path`` — GGUF file to load.
    * ``context_size`` — ``n_ctx`` of the llama.cpp context.
    * ``batch_size`` — ``n_batch`` for prompt evaluation.
    * ``thread_count`` — ``n_threads``.
    * ``use_accelerator`` — offload all layers (``n_gpu_layers=-1``).

    Raises:
        ModelLoadError: If the package is missing or the model cannot be read.
        ContextLoadError: If the inference context cannot be created.
    """

    def __init__(self, config: RuntimeConfig) -> None:
        if not _LLAMA_CPP_AVAILABLE:
            raise ModelLoadError(
                "llama-cpp-python package not installed. "
                "Install with: pip install 'tokenloom[llama-cpp]'"
            )
        if not config.model_path:
            raise ModelLoadError("model_path is required for the llama_cpp backend")

        try:
            self._llm = Llama(
                model_path=config.model_path,
                n_ctx=config.context_size,
                n_batch=config.batch_size,
                n_threads=config.thread_count,
                n_gpu_layers=-1 if config.use_accelerator else 0,
                logits_all=False,
                verbose=False,
            )
        except ValueError as e:
            # llama-cpp-python reports both failures as ValueError.
            if "context" in str(e).lower():
                raise ContextLoadError(f"llama.cpp context creation failed: {e}") from e
            raise ModelLoadError(f"llama.cpp could not load {config.model_path!r}: {e}") from e

        self._model_path = config.model_path
        self._freed = False
        logger.info(
            "llama.cpp model loaded: path=%s n_ctx=%d n_vocab=%d accelerator=%s",
            config.model_path,
            config.context_size,
            self._llm.n_vocab(),
            config.use_accelerator,
        )

    @property
    def llama(self) -> Any:
        """The underlying ``llama_cpp.Llama`` instance."""
        return self._llm

    def forward_pass(self, tokens: Sequence[int]) -> np.ndarray:
        if self._freed:
            raise RuntimeError("forward_pass on a freed LlamaCppModelHandle")
        self._llm.eval(list(tokens))
        return np.array(self._llm.scores[self._llm.n_tokens - 1], dtype=np.float32, copy=True)

    def vocabulary_size(self) -> int:
        return int(self._llm.n_vocab())

    def discard(self, keep: int, count: int) -> None:
        """Remove KV-cache positions ``[keep, keep + count)`` and shift the tail left."""
        n_past = self._llm.n_tokens
        end = min(keep + count, n_past)
        if end <= keep:
            return
        removed = end - keep
        ctx = self._llm._ctx
        if hasattr(ctx, "memory_seq_rm"):
            ctx.memory_seq_rm(0, keep, end)
            ctx.memory_seq_add(0, end, n_past, -removed)
        else:
            ctx.kv_cache_seq_rm(0, keep, end)
            ctx.kv_cache_seq_shift(0, end, n_past, -removed)
        self._llm.input_ids[keep : n_past - removed] = self._llm.input_ids[end:n_past]
        self._llm.n_tokens = n_past - removed

    def free(self) -> None:
        """Release the llama.cpp model and context (idempotent)."""
        if self._freed:
            return
        self._freed = True
        self._llm.close()

    def describe(self) -> dict[str, Any]:
        return {
            "backend": "llama_cpp",
            "model_path": self._model_path,
            "vocabulary_size": self.vocabulary_size(),
            "n_tokens": self._llm.n_tokens,
            "freed": self._freed,
        }


class LlamaCppDetokenizer(Detokenizer):
    """Incremental detokenizer for a :class:`LlamaCppModelHandle`.

    Multi-byte UTF-8 characters can span several tokens; their bytes are
    buffered and an empty fragment is returned until the character is
    complete.
    """

    def __init__(self, handle: LlamaCppModelHandle) -> None:
        self._llm = handle.llama
        self._pending = b""

    def decode(self, token: int) -> str:
        self._pending += self._llm.detokenize([token])
        try:
            text = self._pending.decode("utf-8")
        except UnicodeDecodeError as e:
            if e.reason == "unexpected end of data":
                return ""
            text = self._pending.decode("utf-8", errors="replace")
        self._pending = b""
        return text

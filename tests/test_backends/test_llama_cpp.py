"""Tests for LlamaCppModelHandle (mocked — no llama-cpp-python install required)."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from tokenloom.backends.llama_cpp import LlamaCppDetokenizer, LlamaCppModelHandle
from tokenloom.config import RuntimeConfig
from tokenloom.exceptions import ContextLoadError, ModelLoadError

_MODULE = "tokenloom.backends.llama_cpp"


def _make_config(**overrides: object) -> RuntimeConfig:
    defaults: dict[str, object] = {"backend": "llama_cpp", "model_path": "/models/tiny.gguf"}
    defaults.update(overrides)
    return RuntimeConfig(_env_file=None, **defaults)  # type: ignore[call-arg]


class _FakeLlama:
    """Stand-in for llama_cpp.Llama with an 8-token vocabulary."""

    def __init__(self, **kwargs: object) -> None:
        self.kwargs = kwargs
        self.n_tokens = 0
        self.input_ids = np.zeros(64, dtype=np.intc)
        self.scores = np.zeros((64, 8), dtype=np.float32)
        self._ctx = MagicMock(spec=["memory_seq_rm", "memory_seq_add"])
        self.closed = False

    def n_vocab(self) -> int:
        return 8

    def eval(self, tokens: list[int]) -> None:
        for token in tokens:
            self.input_ids[self.n_tokens] = token
            self.scores[self.n_tokens, (token + 1) % 8] = 5.0
            self.n_tokens += 1

    def close(self) -> None:
        self.closed = True


def _build(**overrides: object) -> LlamaCppModelHandle:
    with (
        patch(f"{_MODULE}._LLAMA_CPP_AVAILABLE", True),
        patch(f"{_MODULE}.Llama", _FakeLlama, create=True),
    ):
        return LlamaCppModelHandle(_make_config(**overrides))


class TestLoading:
    def test_missing_package(self) -> None:
        with patch(f"{_MODULE}._LLAMA_CPP_AVAILABLE", False):
            with pytest.raises(ModelLoadError, match="not installed"):
                LlamaCppModelHandle(_make_config())

    def test_missing_model_path(self) -> None:
        with patch(f"{_MODULE}._LLAMA_CPP_AVAILABLE", True):
            with pytest.raises(ModelLoadError, match="model_path"):
                LlamaCppModelHandle(_make_config(model_path=""))

    def test_model_load_failure(self) -> None:
        failing = MagicMock(side_effect=ValueError("Failed to load model from file"))
        with (
            patch(f"{_MODULE}._LLAMA_CPP_AVAILABLE", True),
            patch(f"{_MODULE}.Llama", failing, create=True),
        ):
            with pytest.raises(ModelLoadError, match="could not load"):
                LlamaCppModelHandle(_make_config())

    def test_context_failure(self) -> None:
        failing = MagicMock(side_effect=ValueError("Failed to create llama_context"))
        with (
            patch(f"{_MODULE}._LLAMA_CPP_AVAILABLE", True),
            patch(f"{_MODULE}.Llama", failing, create=True),
        ):
            with pytest.raises(ContextLoadError):
                LlamaCppModelHandle(_make_config())

    def test_config_forwarded(self) -> None:
        handle = _build(context_size=128, thread_count=2, use_accelerator=True, batch_size=16)
        kwargs = handle.llama.kwargs
        assert kwargs["n_ctx"] == 128
        assert kwargs["n_threads"] == 2
        assert kwargs["n_gpu_layers"] == -1
        assert kwargs["n_batch"] == 16

    def test_cpu_only(self) -> None:
        assert _build().llama.kwargs["n_gpu_layers"] == 0


class TestHandle:
    def test_forward_pass_returns_last_row(self) -> None:
        handle = _build()
        logits = handle.forward_pass([1, 2, 3])
        assert logits.shape == (8,)
        assert int(np.argmax(logits)) == 4
        assert handle.vocabulary_size() == 8

    def test_discard_shifts_cache(self) -> None:
        handle = _build()
        handle.forward_pass([0, 1, 2, 3, 4, 5])
        handle.discard(1, 2)
        llm = handle.llama
        assert llm.n_tokens == 4
        assert llm.input_ids[:4].tolist() == [0, 3, 4, 5]
        llm._ctx.memory_seq_rm.assert_called_once_with(0, 1, 3)
        llm._ctx.memory_seq_add.assert_called_once_with(0, 3, 6, -2)

    def test_discard_older_kv_api(self) -> None:
        handle = _build()
        handle.llama._ctx = MagicMock(spec=["kv_cache_seq_rm", "kv_cache_seq_shift"])
        handle.forward_pass([0, 1, 2, 3])
        handle.discard(0, 2)
        handle.llama._ctx.kv_cache_seq_rm.assert_called_once_with(0, 0, 2)
        handle.llama._ctx.kv_cache_seq_shift.assert_called_once_with(0, 2, 4, -2)

    def test_discard_nothing(self) -> None:
        handle = _build()
        handle.forward_pass([0, 1])
        handle.discard(2, 3)
        handle.llama._ctx.memory_seq_rm.assert_not_called()

    def test_free_once(self) -> None:
        handle = _build()
        handle.free()
        handle.free()
        assert handle.llama.closed
        with pytest.raises(RuntimeError, match="freed"):
            handle.forward_pass([1])


class TestLlamaCppDetokenizer:
    def test_buffers_partial_utf8(self) -> None:
        handle = _build()
        pieces = {1: b"\xc3", 2: b"\xa9", 3: b"ok"}
        handle.llama.detokenize = lambda tokens: pieces[tokens[0]]
        detok = LlamaCppDetokenizer(handle)
        assert detok.decode(1) == ""
        assert detok.decode(2) == "é"
        assert detok.decode(3) == "ok"

    def test_invalid_bytes_replaced(self) -> None:
        handle = _build()
        handle.llama.detokenize = lambda tokens: b"\xff"
        assert LlamaCppDetokenizer(handle).decode(0) == "�"

#!/usr/bin/env python3
"""Stream a generation to the terminal through a tokenloom session.

With the default ``mock`` backend no model file is needed: the mock emits
seeded synthetic logits and the detokenizer renders ids as ``<id>``. With
``--backend llama_cpp`` a GGUF model is loaded through llama-cpp-python and
the prompt is tokenized by the model itself.

Usage:
    # Scripted mock, small window so rotations are visible:
    python stream_demo.py --context-size 16 --keep-prefix 4 --max-new-tokens 40

    # A real model (requires: pip install 'tokenloom[llama-cpp]'):
    python stream_demo.py --backend llama_cpp --model-path ./model.gguf \\
        --prompt "Once upon a time" --mirostat 2

Any other setting is read from TOKENLOOM_* environment variables, e.g.
``TOKENLOOM_SAMPLING__TEMPERATURE=0.2``.
"""

from __future__ import annotations

import argparse
import logging
import sys

from tokenloom import GenerationCancelledError, GenerationSession, TokenloomError, load_config
from tokenloom.backends import BackendRegistry, MockDetokenizer, MockModelHandle

logger = logging.getLogger("tokenloom.demo")


def main() -> int:
    parser = argparse.ArgumentParser(description="tokenloom streaming demo")
    parser.add_argument("--backend", default="mock", help="Registered backend name")
    parser.add_argument("--model-path", default="", help="Model file for real backends")
    parser.add_argument("--prompt", default="Hello", help="Prompt text (llama_cpp only)")
    parser.add_argument("--context-size", type=int, default=512)
    parser.add_argument("--keep-prefix", type=int, default=0)
    parser.add_argument("--max-new-tokens", type=int, default=64)
    parser.add_argument("--temperature", type=float, default=None)
    parser.add_argument("--mirostat", type=int, choices=(0, 1, 2), default=None)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--verbose", action="store_true", help="Per-token summary logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    sampling = {
        key: value
        for key, value in (
            ("temperature", args.temperature),
            ("mirostat", args.mirostat),
            ("seed", args.seed),
        )
        if value is not None
    }
    try:
        config = load_config(
            backend=args.backend,
            model_path=args.model_path,
            context_size=args.context_size,
            keep_prefix_tokens=args.keep_prefix,
            max_new_tokens=args.max_new_tokens,
            log_level="summary" if args.verbose else "none",
            sampling=sampling,
        )
        if config.backend == "mock":
            model = MockModelHandle(config, next_token=lambda history: history[-1] * 7 + 3)
            detokenizer = MockDetokenizer()
            prompt = [1, 2, 3]
        else:
            from tokenloom.backends.llama_cpp import LlamaCppDetokenizer

            model = BackendRegistry.build(config)
            detokenizer = LlamaCppDetokenizer(model)  # type: ignore[arg-type]
            prompt = model.llama.tokenize(args.prompt.encode("utf-8"))  # type: ignore[attr-defined]
    except TokenloomError as e:
        logger.error("%s", e)
        return 1

    def on_token(text: str, elapsed_s: float) -> bool:
        sys.stdout.write(text)
        sys.stdout.flush()
        return True

    with GenerationSession.from_config(config, model, detokenizer) as session:
        try:
            result = session.generate(prompt, on_token)
        except GenerationCancelledError as e:
            result = e.result
        except TokenloomError as e:
            logger.error("generation failed: %s", e)
            return 1

    sys.stdout.write("\n")
    logger.warning(
        "%d tokens in %.2fs (%s, %d rotations)",
        result.num_tokens,
        result.elapsed_s,
        result.stop_reason.value if result.stop_reason else "cancelled",
        result.rotations,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""
Token counting and usage tracking.

Wraps tiktoken encodings behind a per-request, scoped tokenizer so that
every relay invocation owns its own handle and releases it on exit.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, ContextManager, Iterator

import tiktoken

FALLBACK_ENCODING = "cl100k_base"


@dataclass(frozen=True)
class TokenUsage:
    """Token counts for one exchange.

    Contains exact token counts without estimation or model-specific logic.
    """
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


class Tokenizer:
    """Token counter bound to one model's encoding.

    Instances are handed out by ``open_tokenizer`` and stop working once
    the surrounding scope exits.
    """

    def __init__(self, model: str, encoding: "tiktoken.Encoding"):
        self.model = model
        self._encoding = encoding
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def count(self, text: str) -> int:
        """Count the tokens in ``text``.

        Raises:
            RuntimeError: If the tokenizer was already released
        """
        if self._released:
            raise RuntimeError(f"Tokenizer for {self.model} already released")
        if not text:
            return 0
        return len(self._encoding.encode(text, disallowed_special=()))

    def release(self) -> None:
        self._released = True
        self._encoding = None


TokenizerFactory = Callable[[str], ContextManager[Tokenizer]]


def _encoding_for(model: str) -> "tiktoken.Encoding":
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        # Models tiktoken does not know (claude-v1, gemini-pro, ...) are
        # counted with the chat encoding.
        return tiktoken.get_encoding(FALLBACK_ENCODING)


@contextmanager
def open_tokenizer(model: str) -> Iterator[Tokenizer]:
    """Acquire a tokenizer for ``model`` and release it on every exit path.

    Args:
        model: Model identifier used to pick the encoding

    Yields:
        Tokenizer usable until the block exits
    """
    tokenizer = Tokenizer(model, _encoding_for(model))
    try:
        yield tokenizer
    finally:
        tokenizer.release()


def count_tokens(text: str, model: str) -> int:
    """One-shot token count for ``text`` using ``model``'s encoding."""
    with open_tokenizer(model) as tokenizer:
        return tokenizer.count(text)

"""Token counting for chat messages, backed by tiktoken."""

from __future__ import annotations

from functools import lru_cache
import logging
from typing import Protocol

import tiktoken

from chatservice.domain.errors import TokenizationError

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "cl100k_base"


class Encoding(Protocol):
    def encode(self, text: str) -> list[int]:
        ...


@lru_cache
def get_encoding(model_name: str) -> Encoding:
    """Resolve the tiktoken encoding for ``model_name``, falling back to ``cl100k_base``."""
    try:
        return tiktoken.encoding_for_model(model_name)
    except KeyError:
        logger.debug("no tiktoken mapping for model, using default encoding", extra={"model": model_name})
        return tiktoken.get_encoding(DEFAULT_ENCODING)


def count_tokens(content: str, model_name: str) -> int:
    try:
        return len(get_encoding(model_name).encode(content))
    except ValueError as exc:
        # tiktoken rejects text containing reserved special tokens.
        raise TokenizationError(f"content cannot be tokenized for model {model_name}: {exc}") from exc

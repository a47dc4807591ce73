#!/usr/bin/env python3
"""
Token Counters
==============

Tokenizers used to measure and split text in model tokens.

The chunker needs two operations from a tokenizer: the character span of
every token in a text (to place chunk boundaries on token starts) and the
exact token count of a candidate chunk. ``HuggingFaceTokenCounter`` answers
both with the model's own subword vocabulary through a fast tokenizer's
offset mapping, so two chunkers configured for different models may chunk
the same text differently.
"""

import logging
import re
import threading
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Pattern, Tuple, Union

from ..errors import TokenizerUnavailableError

logger = logging.getLogger(__name__)

Span = Tuple[int, int]


class TokenCounter(ABC):
    """Measures text in tokens of one vocabulary."""

    name: str = "tokenizer"

    @abstractmethod
    def token_spans(self, text: str) -> List[Span]:
        """Return (start, end) character spans of every token, in order, without special tokens."""

    def count(self, text: str) -> int:
        """Number of tokens in ``text``, without special tokens."""
        return len(self.token_spans(text))

    @property
    def special_tokens_count(self) -> int:
        """Tokens the model adds around every sequence (e.g. [CLS] and [SEP])."""
        return 0


class RegexTokenCounter(TokenCounter):
    """
    Tokenizer whose tokens are the matches of a regular expression.

    Useful when chunk budgets are expressed in words or sentences rather
    than in subword units of a model.
    """

    WORDS = r"\S+"
    SENTENCES = r"[^.!?\s][^.!?]*[.!?]*"

    def __init__(self, pattern: Union[str, Pattern[str]] = WORDS, name: Optional[str] = None):
        self.pattern = re.compile(pattern) if isinstance(pattern, str) else pattern
        self.name = name or f"regex:{self.pattern.pattern}"

    @classmethod
    def words(cls) -> "RegexTokenCounter":
        return cls(cls.WORDS, name="words")

    @classmethod
    def sentences(cls) -> "RegexTokenCounter":
        return cls(cls.SENTENCES, name="sentences")

    def token_spans(self, text: str) -> List[Span]:
        return [m.span() for m in self.pattern.finditer(text)]


class HuggingFaceTokenCounter(TokenCounter):
    """
    Subword tokenizer of a Hugging Face model.

    The tokenizer is loaded once with ``AutoTokenizer.from_pretrained`` and
    must be a fast (Rust-backed) tokenizer, which provides offset mappings.
    """

    def __init__(self, model_identifier: str, tokenizer: Optional[Any] = None, **load_kwargs):
        """
        Parameters:
            model_identifier: Hugging Face model id or local path of the vocabulary.
            tokenizer: Optional preloaded tokenizer instance; skips loading.
            **load_kwargs: Forwarded to ``AutoTokenizer.from_pretrained``.

        Raises:
            TokenizerUnavailableError: the vocabulary cannot be loaded or has no fast tokenizer.
        """
        self.model_identifier = model_identifier
        self.name = model_identifier
        self._lock = threading.Lock()
        self._tokenizer = tokenizer if tokenizer is not None else self._load(model_identifier, **load_kwargs)
        if not getattr(self._tokenizer, "is_fast", False):
            raise TokenizerUnavailableError(
                model_identifier,
                ValueError("a fast tokenizer with offset mapping is required"),
            )

    @staticmethod
    def _load(model_identifier: str, **load_kwargs):
        from transformers import AutoTokenizer

        try:
            tokenizer = AutoTokenizer.from_pretrained(model_identifier, use_fast=True, **load_kwargs)
        except (OSError, ValueError, ImportError) as e:
            logger.error(f"Failed to load tokenizer for {model_identifier}: {e}")
            raise TokenizerUnavailableError(model_identifier, e) from e
        logger.info(f"Loaded tokenizer for {model_identifier}")
        return tokenizer

    @property
    def tokenizer(self):
        """The underlying ``transformers`` tokenizer."""
        return self._tokenizer

    def token_spans(self, text: str) -> List[Span]:
        # Rust tokenizers raise "Already borrowed" when shared across threads
        with self._lock:
            encoding = self._tokenizer(
                text,
                add_special_tokens=False,
                return_offsets_mapping=True,
                verbose=False,
            )
        return [(start, end) for start, end in encoding["offset_mapping"] if end > start]

    def count(self, text: str) -> int:
        with self._lock:
            encoding = self._tokenizer(text, add_special_tokens=False, verbose=False)
        return len(encoding["input_ids"])

    def encode_batch(self, texts: List[str]) -> List[List[int]]:
        """Token ids for each text, including special tokens, without padding."""
        with self._lock:
            encoding = self._tokenizer(list(texts), add_special_tokens=True, verbose=False)
        return [list(ids) for ids in encoding["input_ids"]]

    @property
    def special_tokens_count(self) -> int:
        return int(self._tokenizer.num_special_tokens_to_add(pair=False))

    @property
    def pad_token_id(self) -> int:
        pad_id = self._tokenizer.pad_token_id
        return int(pad_id) if pad_id is not None else 0

    @property
    def model_max_length(self) -> Optional[int]:
        """Context length declared by the vocabulary, or None when unset."""
        value = getattr(self._tokenizer, "model_max_length", None)
        # transformers uses a very large sentinel when the length is unknown
        if value is None or value > 1_000_000:
            return None
        return int(value)

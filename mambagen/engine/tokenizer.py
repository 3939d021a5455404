"""Tokenizer collaborator interface and streaming-safe detokenization.

Encoding and decoding themselves belong to the tokenizer library; the
generation loop only needs the small `Tokenizer` protocol below plus
`TokenOutputStream`, which decides when a token's text is safe to display.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, Sequence, runtime_checkable

from mambagen.runtime import check_transformers_required

logger = logging.getLogger(__name__)

DEFAULT_TOKENIZER = "EleutherAI/gpt-neox-20b"


@runtime_checkable
class Tokenizer(Protocol):
    def encode(self, text: str) -> list[int]:
        ...

    def decode(self, ids: Sequence[int]) -> str:
        ...

    def token_to_id(self, token: str) -> int | None:
        ...


class HFTokenizer:
    """`Tokenizer` backed by a Hugging Face `transformers` tokenizer."""

    def __init__(self, tokenizer: Any) -> None:
        self._tokenizer = tokenizer
        self._vocab: dict[str, int] | None = None

    @classmethod
    def from_pretrained(cls, name_or_path: str = DEFAULT_TOKENIZER, **kwargs) -> "HFTokenizer":
        """Load with `transformers.AutoTokenizer.from_pretrained`."""
        check_transformers_required()
        from transformers import AutoTokenizer

        logger.info("Loading tokenizer %s", name_or_path)
        return cls(AutoTokenizer.from_pretrained(name_or_path, **kwargs))

    @property
    def hf_tokenizer(self) -> Any:
        """Access the wrapped tokenizer (for advanced use cases)."""
        return self._tokenizer

    def encode(self, text: str) -> list[int]:
        return list(self._tokenizer.encode(text, add_special_tokens=True))

    def decode(self, ids: Sequence[int]) -> str:
        return self._tokenizer.decode([int(t) for t in ids], skip_special_tokens=True)

    def token_to_id(self, token: str) -> int | None:
        if self._vocab is None:
            self._vocab = dict(self._tokenizer.get_vocab())
        return self._vocab.get(token)


class TokenOutputStream:
    """
    Incremental detokenizer.

    Some token ids only decode to sensible text once later ids are known
    (multi-byte characters split across tokens, leading-space merges). A
    token's text is therefore released only when the decoded tail grew and
    ends in an alphanumeric character; the rest is held until then or until
    `decode_rest()`.

    Example:
        >>> stream = TokenOutputStream(tokenizer)
        >>> for tid in ids:
        ...     text = stream.next_token(tid)
        ...     if text is not None:
        ...         print(text, end="")
        >>> print(stream.decode_rest() or "")
    """

    def __init__(self, tokenizer: Tokenizer) -> None:
        self._tokenizer = tokenizer
        self._tokens: list[int] = []
        self._prev_index = 0
        self._current_index = 0

    @property
    def tokenizer(self) -> Tokenizer:
        return self._tokenizer

    @property
    def tokens(self) -> list[int]:
        return list(self._tokens)

    def _decode(self, ids: Sequence[int]) -> str:
        return self._tokenizer.decode(ids)

    def next_token(self, token: int) -> str | None:
        """Feed one token id; return newly displayable text, if any."""
        if self._tokens:
            prev_text = self._decode(self._tokens[self._prev_index : self._current_index])
        else:
            prev_text = ""
        self._tokens.append(int(token))
        text = self._decode(self._tokens[self._prev_index :])
        if len(text) > len(prev_text) and text[-1].isalnum():
            self._prev_index = self._current_index
            self._current_index = len(self._tokens)
            return text[len(prev_text) :]
        return None

    def decode_rest(self) -> str | None:
        """Return text still held back (call once the stream ends)."""
        if self._tokens:
            prev_text = self._decode(self._tokens[self._prev_index : self._current_index])
        else:
            prev_text = ""
        text = self._decode(self._tokens[self._prev_index :])
        if len(text) > len(prev_text):
            return text[len(prev_text) :]
        return None

    def decode_all(self) -> str:
        return self._decode(self._tokens)

    def special_token_id(self, token: str) -> int | None:
        return self._tokenizer.token_to_id(token)

    def encode(self, text: str) -> list[int]:
        return list(self._tokenizer.encode(text))

    def clear(self) -> None:
        self._tokens.clear()
        self._prev_index = 0
        self._current_index = 0

    def get_state(self) -> dict[str, Any]:
        return {
            "tokens": list(self._tokens),
            "prev_index": self._prev_index,
            "current_index": self._current_index,
        }

    def set_state(self, state: dict[str, Any]) -> None:
        tokens = [int(t) for t in state.get("tokens", [])]
        prev_index = int(state.get("prev_index", 0))
        current_index = int(state.get("current_index", 0))
        if not 0 <= prev_index <= current_index <= len(tokens):
            raise ValueError("Invalid token stream state.")
        self._tokens = tokens
        self._prev_index = prev_index
        self._current_index = current_index

    # Names used by the generation loop's collaborator contract.
    id_to_displayable_text = next_token
    flush_remaining = decode_rest

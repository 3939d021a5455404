"""Adapter for the Mamba model family."""

from __future__ import annotations

import gc
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Sequence

import torch

from mambagen.errors import (
    ConfigurationError,
    MissingEosTokenError,
    ShapeError,
    SnapshotCompatibilityError,
)
from mambagen.model.mamba import MambaLMHeadModel
from mambagen.model.state import StateCache
from mambagen.model.weights import load_pretrained
from mambagen.runtime import configure_threads

from ..generation import GenerationLoop
from ..logits import LogitsProcessor
from ..snapshots import compute_model_compatibility, load_snapshot, save_snapshot
from ..tokenizer import DEFAULT_TOKENIZER, HFTokenizer, Tokenizer
from ..types import GenerateResponse, GenerationParams
from .base import BaseAdapter

logger = logging.getLogger(__name__)


# =============================================================================
# Session State
# =============================================================================


@dataclass
class _SessionState:
    """Internal state for a stateful session.

    `states` has absorbed every token in `tokens`; `next_token_logits` are the
    logits the last of them produced (None until something was appended).
    """

    states: StateCache
    tokens: list[int]
    next_token_logits: torch.Tensor | None
    processor: LogitsProcessor
    params: GenerationParams


@dataclass(frozen=True)
class _SessionCheckpoint:
    """In-memory checkpoint for a session.

    The recurrent state is not position-sliced, so the whole StateCache is
    copied; token history and the sampler's random stream come along so a
    restored session replays the same draws.
    """

    states: StateCache
    tokens: tuple[int, ...]
    next_token_logits: torch.Tensor | None
    rng_state: torch.Tensor


# =============================================================================
# Adapter
# =============================================================================


class MambaAdapter(BaseAdapter):
    """
    Adapter for Mamba language models on CPU.

    Thread Safety:
        This adapter is NOT thread-safe. Do not call generation methods concurrently
        from multiple threads on the same adapter instance. For concurrent requests,
        use separate adapter instances or external synchronization.

    Provides three generation modes:

    1. **Stateful loop** (default):
       - `generate()` / `stream_generate()` with `stateful=True`
       - One `forward_step` per token against a fresh StateCache.

    2. **Stateless loop**:
       - `generate()` / `stream_generate()` with `stateful=False`
       - Recomputes the whole sequence; useful as a reference.

    3. **Stateful sessions**:
       - `create_session()` → `append_to_session()` → `stream_generate_session()`
       - Keeps the StateCache between calls, so follow-up text is only
         prefilled once.

    Example:
        >>> adapter = get_adapter("mamba")
        >>> adapter.load("/models/mamba-130m")
        >>> print(adapter.generate("Mamba is the", max_new_tokens=50))
    """

    def __init__(self) -> None:
        self._model: MambaLMHeadModel | None = None
        self._tokenizer: Tokenizer | None = None
        self._model_path: str | None = None
        self._params = GenerationParams()
        self._sessions: dict[str, _SessionState] = {}

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def model(self) -> MambaLMHeadModel | None:
        """Access the underlying model (for advanced use cases)."""
        return self._model

    @property
    def tokenizer(self) -> Tokenizer | None:
        """Access the tokenizer (for encoding/decoding at higher layers)."""
        return self._tokenizer

    @property
    def default_params(self) -> GenerationParams:
        return self._params

    @property
    def eos_token_id(self) -> int | None:
        """EOS token ID, or None if tokenizer not loaded or it lacks the token."""
        if self._tokenizer is None:
            return None
        return self._tokenizer.token_to_id(self._params.eos_token)

    @property
    def model_info(self) -> dict[str, Any]:
        """Return model metadata."""
        info: dict[str, Any] = {
            "model_path": self._model_path,
            "device": "cpu",
            "dtype": None,
            "loaded": self._model is not None,
            "active_sessions": len(self._sessions),
        }
        if self._model is not None:
            config = self._model.config
            info.update(
                {
                    "dtype": str(self._model.lm_head.weight.dtype),
                    "n_layer": config.n_layer,
                    "d_model": config.d_model,
                    "vocab_size": config.vocab_size,
                    "padded_vocab_size": config.padded_vocab_size,
                    "num_parameters": self._model.num_parameters(),
                }
            )
        return info

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def load(self, model_path: str, **kwargs) -> None:
        """Load a Mamba model and tokenizer.

        Args:
            model_path: Directory holding `config.json` and `model.safetensors`
                (or `pytorch_model.bin`).
            tokenizer: A `Tokenizer`, or a name/path for `HFTokenizer`
                (default: the model directory when it ships `tokenizer.json`,
                else "EleutherAI/gpt-neox-20b").
            skip_missing: Leave parameters absent from the checkpoint at their
                initial values instead of failing (default: False).
            num_threads: torch intra-op threads (default: MAMBAGEN_NUM_THREADS).
            generation: Dict of default `GenerationParams` overrides.
        """
        tokenizer = kwargs.pop("tokenizer", None)
        skip_missing = bool(kwargs.pop("skip_missing", False))
        num_threads = kwargs.pop("num_threads", None)
        generation = kwargs.pop("generation", None)
        if kwargs:
            raise ConfigurationError(f"Unknown load option(s): {', '.join(sorted(kwargs))}")

        configure_threads(num_threads)
        params = self._params.merged(generation)

        if tokenizer is None:
            local = Path(model_path) / "tokenizer.json"
            tokenizer = model_path if local.is_file() else DEFAULT_TOKENIZER
        if isinstance(tokenizer, str):
            tokenizer = HFTokenizer.from_pretrained(tokenizer)

        model = load_pretrained(model_path, skip_missing=skip_missing)
        self.load_components(model, tokenizer, params=params, model_path=str(model_path))

    def load_components(
        self,
        model: MambaLMHeadModel,
        tokenizer: Tokenizer,
        *,
        params: GenerationParams | None = None,
        model_path: str | None = None,
    ) -> None:
        """Use an already built model and tokenizer."""
        if self._model is not None:
            self.unload()
        self._model = model.eval()
        self._tokenizer = tokenizer
        self._model_path = model_path
        if params is not None:
            params.validate()
            self._params = params
        logger.info(
            "Mamba adapter ready: n_layer=%d vocab=%d path=%s",
            model.config.n_layer,
            model.config.padded_vocab_size,
            model_path,
        )

    def unload(self) -> None:
        """Drop the model, tokenizer and every session."""
        for cache_id in list(self._sessions.keys()):
            self.close_session(cache_id)

        self._model = None
        self._tokenizer = None
        self._model_path = None
        self._sessions.clear()
        gc.collect()

    # -------------------------------------------------------------------------
    # Stateless Generation (Public API)
    # -------------------------------------------------------------------------

    def new_loop(self, params: GenerationParams | None = None, **overrides) -> GenerationLoop:
        """Build a `GenerationLoop` bound to the loaded model."""
        self._ensure_loaded()
        params = (params or self._params).merged(overrides or None)
        return GenerationLoop(self._model, self._tokenizer, params)

    def generate(
        self,
        prompt: str,
        max_new_tokens: int = 200,
        temperature: float | None = None,
        **kwargs,
    ) -> str:
        """Run a full generation and return the displayed text.

        Extra kwargs are `GenerationParams` overrides (`top_p`, `seed`,
        `repeat_penalty`, `stateful`, ...).
        """
        return self.generate_response(
            prompt, max_new_tokens=max_new_tokens, temperature=temperature, **kwargs
        ).text

    def generate_response(
        self,
        prompt: str | Sequence[int],
        max_new_tokens: int = 200,
        temperature: float | None = None,
        **kwargs,
    ) -> GenerateResponse:
        """Like `generate`, but also report token history and finish reason."""
        ids = self._prompt_ids(prompt)
        loop = self.new_loop(
            sample_len=self._sample_len(ids, max_new_tokens), temperature=temperature, **kwargs
        )
        return loop.run(ids)

    def stream_generate(
        self,
        prompt: str | Sequence[int],
        max_new_tokens: int = 200,
        temperature: float | None = None,
        **kwargs,
    ) -> Iterator[str]:
        """Stream displayable text chunks, starting with the prompt's echo."""
        ids = self._prompt_ids(prompt)
        loop = self.new_loop(
            sample_len=self._sample_len(ids, max_new_tokens), temperature=temperature, **kwargs
        )
        first = loop.start(ids)
        if first:
            yield first
        for result in loop:
            if result.text:
                yield result.text

    # -------------------------------------------------------------------------
    # Stateful Sessions (Public API)
    # -------------------------------------------------------------------------

    def create_session(
        self,
        *,
        cache_id: str,
        prompt: str | Sequence[int] | None = None,
        params: GenerationParams | dict[str, Any] | None = None,
    ) -> None:
        """Create a stateful session.

        Args:
            cache_id: Unique identifier for this session.
            prompt: Optional initial text or token ids to prefill.
            params: Sampling parameters for this session (merged over the
                adapter defaults).
        """
        self._ensure_loaded()
        if cache_id in self._sessions:
            raise ValueError(f"Session already exists: {cache_id}")

        session_params = self._params.merged(params)
        self._sessions[cache_id] = _SessionState(
            states=self._model.empty_states(),
            tokens=[],
            next_token_logits=None,
            processor=LogitsProcessor.from_params(session_params),
            params=session_params,
        )
        if prompt is not None:
            try:
                self.append_to_session(cache_id=cache_id, prompt=prompt)
            except Exception:
                self._sessions.pop(cache_id, None)
                raise

    def append_to_session(self, *, cache_id: str, prompt: str | Sequence[int]) -> int:
        """Prefill text or token ids into an existing session.

        Returns:
            Number of tokens appended.
        """
        self._ensure_loaded()
        session = self._get_session(cache_id)

        ids = self._tokenizer.encode(prompt) if isinstance(prompt, str) else [int(t) for t in prompt]
        if not ids:
            return 0

        logits = self._model.prefill(ids, session.states)
        session.tokens.extend(ids)
        session.next_token_logits = logits[0, -1].detach()
        logger.debug("Session %s: appended %d tokens (total %d)", cache_id, len(ids), len(session.tokens))
        return len(ids)

    def stream_generate_session(
        self,
        *,
        cache_id: str,
        max_new_tokens: int = 200,
        stop_on_eos: bool | None = None,
    ) -> Iterator[int]:
        """Sample from a session, streaming token ids.

        Every sampled token is absorbed into the session state before it is
        yielded, so breaking out of the loop leaves the session consistent and
        a later `append_to_session()` continues right after the last yielded
        token.

        Args:
            cache_id: Session identifier.
            max_new_tokens: Maximum tokens to sample.
            stop_on_eos: Override the session's `stop_on_eos`.
        """
        self._ensure_loaded()
        session = self._get_session(cache_id)
        if session.next_token_logits is None:
            raise RuntimeError(
                f"Session {cache_id} has no prefill state. "
                "Call append_to_session() with some tokens before decoding."
            )

        stop = session.params.stop_on_eos if stop_on_eos is None else bool(stop_on_eos)
        eos_token_id = self._tokenizer.token_to_id(session.params.eos_token)
        if eos_token_id is None:
            raise MissingEosTokenError(session.params.eos_token)

        processor = session.processor
        for _ in range(max_new_tokens):
            i = len(session.tokens) - 1
            logits = processor.penalize(i, session.tokens, session.next_token_logits)
            token_id = processor.sample(logits)

            next_logits = self._model.forward_step(token_id, session.states)[0]
            session.tokens.append(token_id)
            session.next_token_logits = next_logits.detach()

            yield token_id

            if token_id == eos_token_id and stop:
                break

    def close_session(self, cache_id: str) -> None:
        """Close a session and free its state."""
        self._sessions.pop(cache_id, None)

    def list_sessions(self) -> list[str]:
        """List all active session IDs."""
        return sorted(self._sessions.keys())

    def get_session_info(self, cache_id: str) -> dict[str, Any]:
        """Get info about a session."""
        session = self._get_session(cache_id)
        return {
            "cache_id": cache_id,
            "current_pos": len(session.tokens),
            "seen_tokens": session.states.seen_tokens,
            "has_prefill": session.next_token_logits is not None,
        }

    def get_session_tokens(self, cache_id: str) -> list[int]:
        return list(self._get_session(cache_id).tokens)

    def checkpoint_session(self, cache_id: str) -> _SessionCheckpoint:
        """Create an in-memory checkpoint for a session."""
        self._ensure_loaded()
        session = self._get_session(cache_id)

        logits_snap = None
        if session.next_token_logits is not None:
            logits_snap = session.next_token_logits.detach().clone()

        return _SessionCheckpoint(
            states=session.states.clone(),
            tokens=tuple(session.tokens),
            next_token_logits=logits_snap,
            rng_state=session.processor.get_rng_state(),
        )

    def restore_session_checkpoint(self, *, cache_id: str, checkpoint: _SessionCheckpoint) -> None:
        """Restore a session from a checkpoint created by checkpoint_session()."""
        self._ensure_loaded()
        session = self._get_session(cache_id)

        session.states.copy_from(checkpoint.states)
        session.tokens = list(checkpoint.tokens)
        session.next_token_logits = (
            None if checkpoint.next_token_logits is None else checkpoint.next_token_logits.clone()
        )
        session.processor.set_rng_state(checkpoint.rng_state)

    def save_session(self, cache_id: str, path: str | Path) -> Path:
        """Persist a session's StateCache and token history to `path`."""
        self._ensure_loaded()
        session = self._get_session(cache_id)
        compat = compute_model_compatibility(self._model.config)
        return save_snapshot(
            path,
            session.states,
            session.tokens,
            metadata={"cache_id": cache_id, "fingerprint": compat["fingerprint"]},
        )

    def load_session(self, *, cache_id: str, path: str | Path, overwrite: bool = False) -> None:
        """Recreate a session from a snapshot written by `save_session()`.

        Note: Logits are not stored. Append at least one token before decoding.
        """
        self._ensure_loaded()
        cache, tokens, manifest = load_snapshot(path)

        fingerprint = (manifest.get("metadata") or {}).get("fingerprint")
        expected = compute_model_compatibility(self._model.config)["fingerprint"]
        if fingerprint is not None and fingerprint != expected:
            raise SnapshotCompatibilityError("Snapshot fingerprint does not match the loaded model.")

        states = self._model.empty_states()
        try:
            states.copy_from(cache)
        except (ConfigurationError, ShapeError) as exc:
            raise SnapshotCompatibilityError(str(exc)) from exc

        if cache_id in self._sessions:
            if not overwrite:
                raise ValueError(f"Session already exists: {cache_id}")
            self.close_session(cache_id)

        self._sessions[cache_id] = _SessionState(
            states=states,
            tokens=list(tokens),
            next_token_logits=None,
            processor=LogitsProcessor.from_params(self._params),
            params=self._params,
        )

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _ensure_loaded(self) -> None:
        """Raise if model/tokenizer not loaded."""
        if self._model is None or self._tokenizer is None:
            raise RuntimeError("Model not loaded. Call load() first.")

    def _prompt_ids(self, prompt: str | Sequence[int]) -> list[int]:
        self._ensure_loaded()
        if isinstance(prompt, str):
            return list(self._tokenizer.encode(prompt))
        return [int(t) for t in prompt]

    @staticmethod
    def _sample_len(ids: Sequence[int], max_new_tokens: int) -> int:
        # The loop's length covers the prompt too.
        if max_new_tokens < 0:
            raise ConfigurationError("'max_new_tokens' must be >= 0.")
        return len(ids) + int(max_new_tokens)

    def _get_session(self, cache_id: str) -> _SessionState:
        session = self._sessions.get(cache_id)
        if session is None:
            raise KeyError(f"Unknown session: {cache_id}")
        return session

"""Resumable token-by-token generation loop.

The loop is an explicit state object rather than a blocking run: each call to
`step()` performs exactly one model evaluation and returns control to the
caller, so any scheduler (plain loop, timer callback, worker thread) can drive
it and cancel between steps by simply not calling `step()` again.

    IDLE --start()--> PRIMING --> STEPPING(i) --step()--> STEPPING(i+1) | FINISHED
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Iterator, Sequence

import torch

from mambagen.errors import ConfigurationError, MissingEosTokenError
from mambagen.model.mamba import MambaLMHeadModel
from mambagen.model.state import StateCache

from .logits import LogitsProcessor
from .tokenizer import TokenOutputStream, Tokenizer
from .types import GenerateResponse, GenerationParams, GenerationState, GenerationStats, StepResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoopCheckpoint:
    """Everything needed to continue a run exactly where it was left.

    Notes:
    - Buffered stateless logits are not kept; a restored stateless run
      recomputes them on its next step with identical results.
    - `states` is a deep copy, so the live cache can keep advancing.
    """

    tokens: tuple[int, ...]
    prompt_len: int
    step: int
    eos_token: int
    output: str
    finish_reason: str | None
    states: StateCache | None
    rng_state: torch.Tensor
    stream_state: dict[str, Any]
    stateful: bool


class GenerationLoop:
    """
    Drives a Mamba model one token at a time.

    Two modes, selected by `GenerationParams.stateful`:

    1. **Stateful** (default): each step feeds `tokens[i]` through
       `forward_step` against a StateCache allocated by `start()`.
    2. **Stateless**: each forward pass recomputes the whole sequence; the
       per-position logits it yields are buffered and consumed one per step,
       and a new pass runs only when the buffer is empty.

    Prompt positions are teacher forced: for i < len(prompt) - 1 the committed
    token is the prompt's own token i + 1; sampling starts at the last prompt
    position.

    Thread Safety:
        Not thread-safe. The token history and StateCache belong to this loop.

    Example:
        >>> loop = GenerationLoop(model, tokenizer, GenerationParams(sample_len=50))
        >>> print(loop.start("Mamba is the") or "", end="")
        >>> for result in loop:
        ...     print(result.text or "", end="", flush=True)
    """

    def __init__(
        self,
        model: MambaLMHeadModel,
        tokenizer: Tokenizer | TokenOutputStream,
        params: GenerationParams | None = None,
        *,
        processor: LogitsProcessor | None = None,
    ) -> None:
        self._model = model
        if isinstance(tokenizer, TokenOutputStream):
            self._stream = tokenizer
        else:
            self._stream = TokenOutputStream(tokenizer)
        self._params = params or GenerationParams()
        self._params.validate()
        self._processor = processor or LogitsProcessor.from_params(self._params)

        self._state = GenerationState.IDLE
        self._is_generating = False
        self._tokens: list[int] = []
        self._prompt_len = 0
        self._eos_token: int | None = None
        self._step = 0
        self._states: StateCache | None = None
        self._pending: deque[torch.Tensor] = deque()
        self._pending_pos = 0
        self._output = ""
        self._finish_reason: str | None = None
        self._stats = GenerationStats()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> GenerationState:
        return self._state

    @property
    def params(self) -> GenerationParams:
        return self._params

    @property
    def processor(self) -> LogitsProcessor:
        return self._processor

    @property
    def tokens(self) -> list[int]:
        """A copy of the token history (prompt followed by sampled tokens)."""
        return list(self._tokens)

    @property
    def prompt_len(self) -> int:
        return self._prompt_len

    @property
    def position(self) -> int:
        """Index of the token the next step consumes."""
        return self._step

    @property
    def eos_token(self) -> int | None:
        return self._eos_token

    @property
    def states(self) -> StateCache | None:
        """The live StateCache (stateful mode only)."""
        return self._states

    @property
    def output(self) -> str:
        """All text emitted so far, kept even if a step failed."""
        return self._output

    @property
    def finish_reason(self) -> str | None:
        return self._finish_reason

    @property
    def stats(self) -> GenerationStats:
        return self._stats

    @property
    def max_steps(self) -> int:
        """Model calls per run: `sample_len - 1` (the first prompt token is never predicted)."""
        return max(self._params.sample_len - 1, 0)

    @property
    def is_generating(self) -> bool:
        return self._is_generating

    @property
    def is_done(self) -> bool:
        return self._state is GenerationState.FINISHED

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self, prompt: str | Sequence[int]) -> str | None:
        """Prime a new run.

        Encodes the prompt (or takes ids as given), resolves the EOS id,
        allocates a fresh all-zero StateCache in stateful mode, and re-seeds
        the sampler.

        Returns:
            The display text of the first prompt token, if it has one. When
            the run has no steps to take, any text the detokenizer held back
            is flushed and included.

        Raises:
            ConfigurationError: Empty prompt.
            MissingEosTokenError: The tokenizer does not know `params.eos_token`.
        """
        self._state = GenerationState.PRIMING
        self._stream.clear()

        if isinstance(prompt, str):
            tokens = self._stream.encode(prompt)
        else:
            tokens = [int(t) for t in prompt]
        if not tokens:
            self._state = GenerationState.IDLE
            raise ConfigurationError("The prompt must encode to at least one token.")

        eos_token = self._stream.special_token_id(self._params.eos_token)
        if eos_token is None:
            self._state = GenerationState.IDLE
            raise MissingEosTokenError(self._params.eos_token)

        self._tokens = tokens
        self._prompt_len = len(tokens)
        self._eos_token = int(eos_token)
        self._step = 0
        self._pending.clear()
        self._pending_pos = 0
        self._finish_reason = None
        self._stats = GenerationStats()
        self._processor.reset()
        self._states = self._model.empty_states() if self._params.stateful else None

        # The first prompt token is model input, never output; show it anyway.
        first_text = self._stream.next_token(tokens[0])
        self._output = first_text or ""

        logger.debug(
            "Primed generation: prompt_len=%d sample_len=%d stateful=%s eos=%d",
            self._prompt_len,
            self._params.sample_len,
            self._params.stateful,
            self._eos_token,
        )

        self._state = GenerationState.STEPPING
        self._is_generating = True
        if self.max_steps == 0:
            rest = self._finish("length")
            if rest:
                first_text = (first_text or "") + rest
        return first_text

    def stop(self) -> None:
        """Pause between steps. `step()` is a no-op until `resume()`."""
        self._is_generating = False

    def resume(self) -> None:
        """Continue from the last committed token history and StateCache."""
        if self._state is GenerationState.IDLE:
            raise RuntimeError("Nothing to resume. Call start() first.")
        if self._state is GenerationState.STEPPING:
            self._is_generating = True

    def reset_states(self) -> None:
        """Discard the run: drop the StateCache, token history and output.

        The next `start()` allocates fresh, all-zero states.
        """
        if self._is_generating and self._state is GenerationState.STEPPING:
            raise RuntimeError("Cannot reset while generating. Call stop() first.")
        self._states = None
        self._tokens = []
        self._prompt_len = 0
        self._step = 0
        self._pending.clear()
        self._pending_pos = 0
        self._output = ""
        self._finish_reason = None
        self._stream.clear()
        self._processor.reset()
        self._is_generating = False
        self._state = GenerationState.IDLE

    def checkpoint(self) -> LoopCheckpoint:
        """Capture the committed token history, StateCache and sampler state."""
        if self._state is GenerationState.IDLE or self._eos_token is None:
            raise RuntimeError("Nothing to checkpoint. Call start() first.")
        return LoopCheckpoint(
            tokens=tuple(self._tokens),
            prompt_len=self._prompt_len,
            step=self._step,
            eos_token=self._eos_token,
            output=self._output,
            finish_reason=self._finish_reason,
            states=None if self._states is None else self._states.clone(),
            rng_state=self._processor.get_rng_state(),
            stream_state=self._stream.get_state(),
            stateful=self._params.stateful,
        )

    def restore(self, checkpoint: LoopCheckpoint) -> None:
        """Continue from `checkpoint`. The loop is left paused; call `resume()`."""
        if checkpoint.stateful != self._params.stateful:
            raise ConfigurationError(
                f"Checkpoint was taken with stateful={checkpoint.stateful}, "
                f"this loop runs with stateful={self._params.stateful}."
            )
        if checkpoint.stateful:
            if checkpoint.states is None:
                raise ConfigurationError("Stateful checkpoint carries no state cache.")
            checkpoint.states.check_layers(self._model.n_layer)
        if not 0 <= checkpoint.step < len(checkpoint.tokens):
            raise ValueError(f"Checkpoint step {checkpoint.step} is outside its token history.")

        self._tokens = list(checkpoint.tokens)
        self._prompt_len = checkpoint.prompt_len
        self._step = checkpoint.step
        self._eos_token = checkpoint.eos_token
        self._output = checkpoint.output
        self._finish_reason = checkpoint.finish_reason
        self._states = None if checkpoint.states is None else checkpoint.states.clone()
        self._pending.clear()
        self._pending_pos = self._step
        self._processor.set_rng_state(checkpoint.rng_state)
        self._stream.set_state(checkpoint.stream_state)
        self._is_generating = False
        if checkpoint.finish_reason is not None:
            self._state = GenerationState.FINISHED
        else:
            self._state = GenerationState.STEPPING

    # -------------------------------------------------------------------------
    # Stepping
    # -------------------------------------------------------------------------

    def _next_logits(self) -> torch.Tensor:
        i = self._step
        if self._params.stateful:
            assert self._states is not None
            return self._model.forward_step(self._tokens[i], self._states)[0]

        if not self._pending:
            # A stateless pass recomputes every position; keep only the ones
            # not consumed yet.
            logits = self._model.forward_sequence(self._tokens)[0]
            self._pending.extend(logits[i:])
            self._pending_pos = i
        if self._pending_pos != i:
            raise RuntimeError(
                f"Buffered logits are for position {self._pending_pos}, expected {i}."
            )
        self._pending_pos += 1
        return self._pending.popleft()

    def step(self) -> StepResult:
        """Run one model evaluation and commit the next token.

        Returns:
            The committed token and any newly displayable text. `is_done` is
            True on the last step (and on every call after it).
        """
        if self._state is GenerationState.IDLE:
            raise RuntimeError("Generation has not started. Call start() first.")
        if self._state is GenerationState.FINISHED:
            return StepResult(
                token=None,
                text=None,
                is_done=True,
                position=self._step,
                finish_reason=self._finish_reason,
            )
        if not self._is_generating:
            return StepResult(token=None, text=None, is_done=False, position=self._step)

        t0 = time.perf_counter()
        i = self._step
        try:
            logits = self._next_logits()
            history_len = len(self._tokens)
            next_token = self._processor.add_logits(i, self._tokens, logits)
            sampled = len(self._tokens) > history_len

            text: str | None = None
            self._step += 1
            self._stats.steps += 1
            if sampled:
                self._stats.generated_tokens += 1

            if next_token == self._eos_token and self._params.stop_on_eos:
                reason: str | None = "eos"
            else:
                if next_token == self._eos_token:
                    logger.debug("End-of-sequence token at position %d ignored", i + 1)
                text = self._stream.next_token(next_token)
                reason = "length" if self._step >= self.max_steps else None
        except Exception:
            self._finish_reason = "error"
            self._state = GenerationState.FINISHED
            self._is_generating = False
            logger.exception("Generation failed at position %d", i)
            raise
        finally:
            self._stats.elapsed_s += time.perf_counter() - t0

        if text:
            self._output += text
        if reason is not None:
            rest = self._finish(reason)
            if rest:
                text = (text or "") + rest

        return StepResult(
            token=next_token,
            text=text,
            is_done=reason is not None,
            position=i,
            sampled=sampled,
            finish_reason=reason,
        )

    def _finish(self, reason: str) -> str | None:
        rest = self._stream.decode_rest()
        if rest:
            self._output += rest
        self._finish_reason = reason
        self._state = GenerationState.FINISHED
        self._is_generating = False
        logger.info(
            "%d tokens generated (%.2f token/s), finish_reason=%s",
            self._stats.generated_tokens,
            self._stats.tokens_per_second,
            reason,
        )
        return rest

    def __iter__(self) -> Iterator[StepResult]:
        """Yield step results until the run finishes or is paused."""
        while self._state is GenerationState.STEPPING and self._is_generating:
            result = self.step()
            yield result
            if result.is_done:
                return

    def run(self, prompt: str | Sequence[int] | None = None) -> GenerateResponse:
        """Start (when `prompt` is given) and drain the loop."""
        if prompt is not None:
            self.start(prompt)
        for _ in self:
            pass
        return GenerateResponse(
            text=self._output,
            tokens=list(self._tokens),
            prompt_tokens=self._prompt_len,
            completion_tokens=len(self._tokens) - self._prompt_len,
            finish_reason=self._finish_reason or "length",
        )

"""Logits post-processing: repeat penalty, sampling, teacher forcing."""

from __future__ import annotations

import logging
from typing import Sequence

import torch

from .types import DEFAULT_SEED, GenerationParams

logger = logging.getLogger(__name__)

# Temperatures below this are treated as greedy decoding.
_MIN_TEMPERATURE = 1e-7


def apply_repeat_penalty(
    logits: torch.Tensor,
    penalty: float,
    context: Sequence[int],
) -> torch.Tensor:
    """Discourage tokens that appear in `context`.

    For each distinct token in `context`, a non-negative logit is divided by
    `penalty` and a negative logit is multiplied by it, so the adjustment never
    flips a logit's sign. A penalty of exactly 1.0 returns `logits` unchanged.

    Args:
        logits: [vocab] logits for one position.
        penalty: Penalty factor (> 0).
        context: Token ids to penalize (duplicates are penalized once).

    Returns:
        A new tensor (or `logits` itself when the penalty is neutral).
    """
    if penalty == 1.0 or len(context) == 0:
        return logits
    vocab = logits.shape[-1]
    ids = torch.tensor(sorted({int(t) for t in context if 0 <= int(t) < vocab}), dtype=torch.long)
    if ids.numel() == 0:
        return logits
    out = logits.clone()
    vals = out[..., ids]
    out[..., ids] = torch.where(vals >= 0, vals / penalty, vals * penalty)
    return out


class LogitsProcessor:
    """
    Turns the logits of position `i` into the committed token for `i + 1`.

    Sampling modes:
    - greedy arg-max when `temperature` is None (or ~0)
    - softmax(logits / temperature) multinomial draw
    - the same, restricted to the smallest top-p nucleus when 0 < top_p < 1

    The random stream comes from a private `torch.Generator` seeded with
    `seed`, so two processors with the same seed make the same draws.

    Thread Safety:
        Not thread-safe; owned by one generation loop.
    """

    def __init__(
        self,
        seed: int = DEFAULT_SEED,
        temperature: float | None = None,
        top_p: float | None = None,
        repeat_penalty: float = 1.1,
        repeat_last_n: int = 1024,
        *,
        sample_forced_positions: bool = True,
    ) -> None:
        if temperature is not None and temperature < _MIN_TEMPERATURE:
            temperature = None
        self.seed = int(seed)
        self.temperature = temperature
        self.top_p = top_p
        self.repeat_penalty = float(repeat_penalty)
        self.repeat_last_n = int(repeat_last_n)
        self.sample_forced_positions = sample_forced_positions
        self._generator = torch.Generator(device="cpu")
        self._generator.manual_seed(self.seed)

    @classmethod
    def from_params(cls, params: GenerationParams) -> "LogitsProcessor":
        return cls(
            seed=params.seed,
            temperature=params.temperature,
            top_p=params.top_p,
            repeat_penalty=params.repeat_penalty,
            repeat_last_n=params.repeat_last_n,
            sample_forced_positions=params.sample_forced_positions,
        )

    @property
    def is_greedy(self) -> bool:
        return self.temperature is None

    def reset(self) -> None:
        """Re-seed the random stream."""
        self._generator.manual_seed(self.seed)

    def get_rng_state(self) -> torch.Tensor:
        return self._generator.get_state()

    def set_rng_state(self, state: torch.Tensor) -> None:
        self._generator.set_state(state)

    # -------------------------------------------------------------------------
    # Sampling
    # -------------------------------------------------------------------------

    def sample(self, logits: torch.Tensor) -> int:
        """Pick one token id from a [vocab] (or [1, vocab]) logits tensor."""
        logits = logits.detach().float().reshape(-1)
        if self.temperature is None:
            return int(torch.argmax(logits).item())

        probs = torch.softmax(logits / float(self.temperature), dim=-1)
        if self.top_p is not None and 0.0 < self.top_p < 1.0:
            probs = self._top_p_filter(probs, self.top_p)

        if torch.isnan(probs).any() or torch.isinf(probs).any() or (probs < 0).any():
            probs = torch.nan_to_num(probs, nan=0.0, posinf=0.0, neginf=0.0)
            probs = torch.clamp(probs, min=0.0)
        z = probs.sum()
        if z <= 0:
            logger.warning("All sampling probabilities vanished; falling back to arg-max.")
            return int(torch.argmax(logits).item())

        return int(torch.multinomial(probs / z, 1, generator=self._generator).item())

    @staticmethod
    def _top_p_filter(probs: torch.Tensor, top_p: float) -> torch.Tensor:
        """Zero every token outside the top-p nucleus.

        Tokens are visited by decreasing probability; once the mass of the
        tokens already kept reaches `top_p`, the rest are dropped.
        """
        sorted_probs, order = torch.sort(probs, descending=True)
        mass_before = torch.cumsum(sorted_probs, dim=-1) - sorted_probs
        sorted_probs = sorted_probs.masked_fill(mass_before >= top_p, 0.0)
        return torch.zeros_like(probs).scatter(-1, order, sorted_probs)

    # -------------------------------------------------------------------------
    # Per-position decision
    # -------------------------------------------------------------------------

    def penalize(self, i: int, tokens: Sequence[int], logits: torch.Tensor) -> torch.Tensor:
        """Apply the repeat penalty over `tokens[max(0, i - repeat_last_n) : i + 1]`."""
        if self.repeat_penalty == 1.0:
            return logits
        start_at = max(0, i - self.repeat_last_n)
        return apply_repeat_penalty(logits, self.repeat_penalty, tokens[start_at : i + 1])

    def add_logits(self, i: int, tokens: list[int], logits: torch.Tensor) -> int:
        """Decide the token following position `i`.

        If `tokens[i + 1]` already exists (a prompt token, teacher forcing) it
        is returned and `tokens` is left untouched. Otherwise a token is
        sampled from the penalized logits and appended to `tokens`.

        Args:
            i: Position whose logits these are (0 for the first call).
            tokens: The token history; appended to when a token is sampled.
            logits: [vocab] logits predicting position i + 1.

        Returns:
            The committed next token id.
        """
        if i < 0 or i >= len(tokens):
            raise IndexError(f"Position {i} is outside the token history (length {len(tokens)})")

        logits = self.penalize(i, tokens, logits)

        if i + 1 < len(tokens):
            # Pre-defined token; the history already holds it.
            if self.sample_forced_positions:
                self.sample(logits)
            return int(tokens[i + 1])

        next_token = self.sample(logits)
        tokens.append(next_token)
        return next_token

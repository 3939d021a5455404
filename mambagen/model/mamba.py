"""Stacked Mamba language model.

    token ids -> embedding -> N x ResidualBlock -> norm_f -> lm_head -> logits

`lm_head.weight` is the embedding table (tied). Parameter names follow the
upstream checkpoints (`backbone.embedding.weight`, `backbone.layers.{i}...`,
`backbone.norm_f.weight`).
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Union

import torch
import torch.nn as nn

from mambagen.errors import ShapeError

from .block import ResidualBlock, RMSNorm
from .config import MambaConfig
from .state import StateCache

logger = logging.getLogger(__name__)

TokenIds = Union[torch.Tensor, Sequence[int], int]


class MambaBackbone(nn.Module):
    def __init__(self, config: MambaConfig) -> None:
        super().__init__()
        self.embedding = nn.Embedding(config.padded_vocab_size, config.d_model)
        self.layers = nn.ModuleList(ResidualBlock(config) for _ in range(config.n_layer))
        self.norm_f = RMSNorm(config.d_model, eps=config.norm_eps)


class MambaLMHeadModel(nn.Module):
    """
    Mamba language model with a tied output head.

    Provides two explicit generation paths:

    1. **Stateless** (`forward_sequence(input_ids)`):
       recomputes every position of the sequence; no state survives the call.

    2. **Stateful** (`forward_step(token_id, states)`):
       one timestep against a `StateCache` from `empty_states()`; O(1) per
       token regardless of how many tokens came before.

    `prefill(input_ids, states)` runs the sequence path and leaves `states`
    positioned after the last token, so stepping can continue from there.

    Example:
        >>> model = MambaLMHeadModel(MambaConfig.mamba_130m()).eval()
        >>> states = model.empty_states()
        >>> logits = model.forward_step(5, states)  # [1, 50280]
    """

    def __init__(self, config: MambaConfig) -> None:
        super().__init__()
        self.config = config
        self.backbone = MambaBackbone(config)
        self.lm_head = nn.Linear(config.d_model, config.padded_vocab_size, bias=False)
        self.tie_weights()

    def tie_weights(self) -> None:
        """Alias the output head to the embedding table."""
        self.lm_head.weight = self.backbone.embedding.weight

    @property
    def n_layer(self) -> int:
        return len(self.backbone.layers)

    def num_parameters(self) -> int:
        # Tied weights are counted once.
        return sum(p.numel() for p in self.parameters())

    def empty_states(self, batch_size: int = 1) -> StateCache:
        """An all-zero state cache with one entry per layer."""
        weight = self.backbone.embedding.weight
        return StateCache.empty(
            self.config, batch_size=batch_size, dtype=weight.dtype, device=weight.device
        )

    # -------------------------------------------------------------------------
    # Input normalization
    # -------------------------------------------------------------------------

    def _check_vocab(self, ids: torch.Tensor) -> None:
        if ids.numel() == 0:
            return
        vocab = self.config.padded_vocab_size
        lo = int(ids.min())
        hi = int(ids.max())
        if lo < 0 or hi >= vocab:
            raise ShapeError(f"Token ids must be in [0, {vocab}) (got range [{lo}, {hi}])")

    def _sequence_ids(self, input_ids: TokenIds) -> torch.Tensor:
        ids = torch.as_tensor(input_ids, device=self.backbone.embedding.weight.device)
        if ids.numel() == 0:
            raise ShapeError("Sequence input must contain at least one token")
        if ids.is_floating_point() or ids.is_complex() or ids.dtype == torch.bool:
            raise ShapeError(f"Token ids must be integers (got dtype {ids.dtype})")
        if ids.dim() == 1:
            ids = ids.unsqueeze(0)
        if ids.dim() != 2:
            raise ShapeError(f"Sequence input must be [L] or [B, L] (got shape {tuple(ids.shape)})")
        ids = ids.long()
        self._check_vocab(ids)
        return ids

    def _step_ids(self, input_ids: TokenIds) -> torch.Tensor:
        ids = torch.as_tensor(input_ids, device=self.backbone.embedding.weight.device)
        if ids.is_floating_point() or ids.is_complex() or ids.dtype == torch.bool:
            raise ShapeError(f"Token ids must be integers (got dtype {ids.dtype})")
        if ids.dim() == 0:
            ids = ids.unsqueeze(0)
        if ids.dim() != 1:
            raise ShapeError(f"Step input must be a scalar or [B] (got shape {tuple(ids.shape)})")
        ids = ids.long()
        self._check_vocab(ids)
        return ids

    # -------------------------------------------------------------------------
    # Forward paths
    # -------------------------------------------------------------------------

    def _run_sequence(self, ids: torch.Tensor, states: Optional[StateCache]) -> torch.Tensor:
        hidden = self.backbone.embedding(ids)
        for i, layer in enumerate(self.backbone.layers):
            hidden = layer.forward_sequence(hidden, None if states is None else states[i])
        hidden = self.backbone.norm_f(hidden)
        return self.lm_head(hidden)

    def forward_sequence(self, input_ids: TokenIds) -> torch.Tensor:
        """
        Stateless whole-sequence pass.

        Args:
            input_ids: [L] or [B, L] token ids.

        Returns:
            Logits [B, L, padded_vocab]; position t predicts token t+1.
        """
        ids = self._sequence_ids(input_ids)
        with torch.no_grad():
            return self._run_sequence(ids, None)

    def forward_step(self, input_ids: TokenIds, states: StateCache) -> torch.Tensor:
        """
        Stateful single-timestep pass.

        Args:
            input_ids: One token id (int / scalar) or [B] ids.
            states: One LayerState per layer; each is updated in place, in
                layer order.

        Returns:
            Logits [B, padded_vocab] for the next position.

        Raises:
            StateCacheMismatchError: `len(states)` differs from the layer count.
        """
        states.check_layers(self.n_layer)
        ids = self._step_ids(input_ids)
        if ids.shape[0] != states.batch_size:
            raise ShapeError(
                f"Step batch size {ids.shape[0]} does not match state batch size {states.batch_size}"
            )
        with torch.no_grad():
            hidden = self.backbone.embedding(ids)
            for layer, state in zip(self.backbone.layers, states):
                hidden = layer.forward_step(hidden, state)
            hidden = self.backbone.norm_f(hidden)
            logits = self.lm_head(hidden)
        states.seen_tokens += 1
        return logits

    def prefill(self, input_ids: TokenIds, states: StateCache) -> torch.Tensor:
        """
        Sequence pass that also advances `states` past every input token.

        Equivalent to calling `forward_step` once per token, but with one
        projection per layer for the whole chunk.

        Returns:
            Logits [B, L, padded_vocab]
        """
        states.check_layers(self.n_layer)
        ids = self._sequence_ids(input_ids)
        if ids.shape[0] != states.batch_size:
            raise ShapeError(
                f"Prefill batch size {ids.shape[0]} does not match state batch size {states.batch_size}"
            )
        with torch.no_grad():
            logits = self._run_sequence(ids, states)
        states.seen_tokens += int(ids.shape[1])
        return logits

    def forward(self, input_ids: TokenIds) -> torch.Tensor:
        """Alias of `forward_sequence` so the module can be called directly."""
        return self.forward_sequence(input_ids)

    @classmethod
    def from_config(cls, config: MambaConfig, *, seed: int | None = None) -> "MambaLMHeadModel":
        """Build a randomly initialized model in eval mode.

        Args:
            seed: Seed for the parameter init (the global torch RNG is left
                untouched when given).
        """
        if seed is None:
            model = cls(config)
        else:
            with torch.random.fork_rng(devices=[]):
                torch.manual_seed(seed)
                model = cls(config)
        model.eval()
        logger.debug(
            "Built Mamba model: n_layer=%d d_model=%d vocab=%d params=%d",
            config.n_layer,
            config.d_model,
            config.padded_vocab_size,
            model.num_parameters(),
        )
        return model

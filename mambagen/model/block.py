"""Residual block: `x + mixer(rmsnorm(x))`."""

from __future__ import annotations

from typing import Optional

import torch
import torch.nn as nn

from .config import MambaConfig
from .mixer import SelectiveScanLayer
from .state import LayerState


class RMSNorm(nn.Module):
    """Root-mean-square layer norm: scale only, no bias, no mean subtraction."""

    def __init__(self, d_model: int, eps: float = 1e-5) -> None:
        super().__init__()
        self.eps = eps
        self.weight = nn.Parameter(torch.ones(d_model))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        variance = x.pow(2).mean(dim=-1, keepdim=True)
        return x * torch.rsqrt(variance + self.eps) * self.weight


class ResidualBlock(nn.Module):
    """One Mamba layer. Both entry points use the same composition rule."""

    def __init__(self, config: MambaConfig) -> None:
        super().__init__()
        self.norm = RMSNorm(config.d_model, eps=config.norm_eps)
        self.mixer = SelectiveScanLayer(config)

    def forward_sequence(
        self,
        hidden_states: torch.Tensor,
        state: Optional[LayerState] = None,
    ) -> torch.Tensor:
        """[B, L, d_model] -> [B, L, d_model]"""
        return hidden_states + self.mixer.forward_sequence(self.norm(hidden_states), state)

    def forward_step(self, hidden_states: torch.Tensor, state: LayerState) -> torch.Tensor:
        """[B, d_model] -> [B, d_model]"""
        return hidden_states + self.mixer.forward_step(self.norm(hidden_states), state)

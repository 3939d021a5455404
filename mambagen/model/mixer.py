"""Selective-scan layer (the Mamba mixer).

Two explicit entry points share one recurrence step
(`mambagen.kernels.scan.selective_scan_step`):

- `forward_sequence`: whole sequence at once, scan carried only inside the call
- `forward_step`: exactly one timestep, conv window and hidden state read from
  and written back to a caller-owned `LayerState`

For the same token prefix, `forward_step` at position t returns the same
activation as `forward_sequence` at position t, up to float accumulation order.
"""

from __future__ import annotations

import math
from typing import Optional

import torch
import torch.nn as nn
import torch.nn.functional as F

from mambagen.kernels.scan import (
    causal_conv1d,
    causal_conv1d_update,
    selective_scan,
    selective_scan_update,
)

from .config import MambaConfig
from .state import LayerState


class SelectiveScanLayer(nn.Module):
    """
    Input-dependent (selective) state-space layer.

    Parameter names match upstream Mamba checkpoints (`in_proj`, `conv1d`,
    `x_proj`, `dt_proj`, `A_log`, `D`, `out_proj`).

    Args:
        config: Model dimensions.
        dt_min, dt_max: Range of the initial step sizes.
    """

    def __init__(self, config: MambaConfig, *, dt_min: float = 0.001, dt_max: float = 0.1) -> None:
        super().__init__()
        self.d_model = config.d_model
        self.d_inner = config.d_inner
        self.d_state = config.d_state
        self.d_conv = config.d_conv
        self.dt_rank = config.dt_rank
        self._dt_min = dt_min
        self._dt_max = dt_max

        self.in_proj = nn.Linear(self.d_model, self.d_inner * 2, bias=False)
        # Depthwise; the padding is handled by the scan kernels, not the module.
        self.conv1d = nn.Conv1d(
            in_channels=self.d_inner,
            out_channels=self.d_inner,
            kernel_size=self.d_conv,
            groups=self.d_inner,
            bias=True,
        )
        self.x_proj = nn.Linear(self.d_inner, self.dt_rank + 2 * self.d_state, bias=False)
        self.dt_proj = nn.Linear(self.dt_rank, self.d_inner, bias=True)
        self.A_log = nn.Parameter(torch.empty(self.d_inner, self.d_state))
        self.D = nn.Parameter(torch.empty(self.d_inner))
        self.out_proj = nn.Linear(self.d_inner, self.d_model, bias=False)

        self.reset_ssm_parameters()

    def reset_ssm_parameters(self) -> None:
        """Standard Mamba init for A_log, D and the dt projection."""
        with torch.no_grad():
            A = torch.arange(1, self.d_state + 1, dtype=torch.float32)
            self.A_log.copy_(torch.log(A).unsqueeze(0).expand(self.d_inner, -1))
            self.D.fill_(1.0)

            dt_init_std = self.dt_rank ** -0.5
            nn.init.uniform_(self.dt_proj.weight, -dt_init_std, dt_init_std)
            dt = torch.exp(
                torch.rand(self.d_inner) * (math.log(self._dt_max) - math.log(self._dt_min))
                + math.log(self._dt_min)
            ).clamp(min=1e-4)
            # Inverse of softplus, so softplus(bias) == dt.
            self.dt_proj.bias.copy_(dt + torch.log(-torch.expm1(-dt)))

    # -------------------------------------------------------------------------
    # Shared pieces
    # -------------------------------------------------------------------------

    def _state_matrix(self) -> torch.Tensor:
        # Negative real part keeps exp(delta * A) < 1, so h decays.
        return -torch.exp(self.A_log.float())

    def _ssm_params(self, x: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """x [..., d_inner] -> (delta [..., d_inner], B [..., N], C [..., N])."""
        x_dbl = self.x_proj(x)
        delta_raw, B, C = torch.split(x_dbl, [self.dt_rank, self.d_state, self.d_state], dim=-1)
        delta = F.softplus(self.dt_proj(delta_raw))
        return delta, B, C

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def forward_sequence(
        self,
        hidden_states: torch.Tensor,
        state: Optional[LayerState] = None,
    ) -> torch.Tensor:
        """
        Whole-sequence formulation.

        Args:
            hidden_states: [B, L, d_model]
            state: Optional layer state. When given, it seeds the conv window
                and hidden state and receives their values after the last
                timestep (prefill). When None, the sequence starts from zeros
                and nothing survives the call.

        Returns:
            [B, L, d_model]
        """
        xz = self.in_proj(hidden_states)
        x, z = xz.chunk(2, dim=-1)  # each [B, L, d_inner]

        x_conv, conv_final = causal_conv1d(
            x.transpose(1, 2),
            self.conv1d.weight,
            self.conv1d.bias,
            initial_state=None if state is None else state.conv_state,
        )
        x = F.silu(x_conv.transpose(1, 2))

        delta, B, C = self._ssm_params(x)
        y, h = selective_scan(
            x,
            delta,
            self._state_matrix(),
            B,
            C,
            self.D.float(),
            initial_state=None if state is None else state.ssm_state,
        )

        if state is not None:
            state.conv_state.copy_(conv_final)
            state.ssm_state.copy_(h)

        y = y * F.silu(z)
        return self.out_proj(y)

    def forward_step(self, hidden_states: torch.Tensor, state: LayerState) -> torch.Tensor:
        """
        Single-timestep formulation.

        Args:
            hidden_states: [B, d_model]
            state: This layer's state; updated in place.

        Returns:
            [B, d_model]
        """
        xz = self.in_proj(hidden_states)
        x, z = xz.chunk(2, dim=-1)  # each [B, d_inner]

        x = causal_conv1d_update(x, state.conv_state, self.conv1d.weight, self.conv1d.bias)
        x = F.silu(x)

        delta, B, C = self._ssm_params(x)
        y = selective_scan_update(
            state.ssm_state,
            x,
            delta,
            self._state_matrix(),
            B,
            C,
            self.D.float(),
        )

        y = y * F.silu(z)
        return self.out_proj(y)

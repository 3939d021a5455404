"""PyTorch reference implementation of the selective scan.

This implementation is the only one shipped (CPU, float32). It is useful for:
- Both generation modes: whole-sequence and single-step recurrent
- Testing stateless/stateful equivalence, since both paths share
  `selective_scan_step`
- Understanding the algorithm in pure PyTorch

Shape legend:
    B: batch, L: sequence length, D: d_inner, N: d_state, K: d_conv
"""

from __future__ import annotations

from typing import Optional

import torch
import torch.nn.functional as F


def discretize(
    delta_t: torch.Tensor,
    A: torch.Tensor,
    B_t: torch.Tensor,
    x_t: torch.Tensor,
) -> tuple[torch.Tensor, torch.Tensor]:
    """
    Zero-order-hold discretization of one timestep.

    Args:
        delta_t: Step sizes [B, D] (positive, after softplus)
        A: Continuous state matrix [D, N] (negative)
        B_t: Input matrix for this timestep [B, N]
        x_t: Input for this timestep [B, D]

    Returns:
        (deltaA [B, D, N], deltaB_x [B, D, N])
    """
    delta_e = delta_t.unsqueeze(-1)  # [B, D, 1]
    deltaA = torch.exp(delta_e * A)
    deltaB_x = delta_e * B_t.unsqueeze(1) * x_t.unsqueeze(-1)
    return deltaA, deltaB_x


def selective_scan_step(
    h: torch.Tensor,
    x_t: torch.Tensor,
    delta_t: torch.Tensor,
    A: torch.Tensor,
    B_t: torch.Tensor,
    C_t: torch.Tensor,
    D: torch.Tensor,
) -> tuple[torch.Tensor, torch.Tensor]:
    """
    One step of the selective recurrence.

        h[t] = exp(delta ⊗ A) * h[t-1] + (delta ⊗ B) ⊗ x
        y[t] = C · h[t] + D * x

    Args:
        h: Previous hidden state [B, D, N]
        x_t: Input [B, D]
        delta_t: Step sizes [B, D]
        A: [D, N]
        B_t: [B, N]
        C_t: [B, N]
        D: Skip vector [D]

    Returns:
        (y_t [B, D], h_new [B, D, N]). `h` is not modified.
    """
    deltaA, deltaB_x = discretize(delta_t, A, B_t, x_t)
    h_new = deltaA * h + deltaB_x
    y_t = (h_new * C_t.unsqueeze(1)).sum(dim=-1)
    y_t = y_t + D * x_t
    return y_t, h_new


def selective_scan(
    x: torch.Tensor,
    delta: torch.Tensor,
    A: torch.Tensor,
    B: torch.Tensor,
    C: torch.Tensor,
    D: torch.Tensor,
    initial_state: Optional[torch.Tensor] = None,
) -> tuple[torch.Tensor, torch.Tensor]:
    """
    Sequential selective scan over the time axis.

    Computes per-timestep so no [B, L, D, N] tensor is materialized.

    Args:
        x: [B, L, D]
        delta: [B, L, D]
        A: [D, N]
        B: [B, L, N]
        C: [B, L, N]
        D: [D]
        initial_state: Optional carried-in hidden state [B, D, N] (zeros if None)

    Returns:
        (y [B, L, D], final_state [B, D, N])
    """
    batch, seq_len, d_inner = x.shape
    d_state = A.shape[1]

    if initial_state is None:
        h = torch.zeros(batch, d_inner, d_state, device=x.device, dtype=x.dtype)
    else:
        h = initial_state

    ys = []
    for t in range(seq_len):
        y_t, h = selective_scan_step(h, x[:, t], delta[:, t], A, B[:, t], C[:, t], D)
        ys.append(y_t)

    if not ys:
        return x.new_zeros(batch, 0, d_inner), h
    return torch.stack(ys, dim=1), h


def causal_conv1d(
    x: torch.Tensor,
    weight: torch.Tensor,
    bias: Optional[torch.Tensor],
    initial_state: Optional[torch.Tensor] = None,
) -> tuple[torch.Tensor, torch.Tensor]:
    """
    Causal depthwise convolution over a whole sequence.

    The first K-1 outputs see `initial_state` (or zeros) as their history, so
    output t only depends on inputs <= t.

    Args:
        x: [B, D, L]
        weight: Depthwise kernel [D, 1, K]
        bias: [D] or None
        initial_state: The K-1 inputs preceding x, [B, D, K-1] (zeros if None)

    Returns:
        (out [B, D, L], final_state [B, D, K-1]) where final_state holds the
        last K-1 inputs, ready for `causal_conv1d_update`.
    """
    d_conv = weight.shape[-1]
    if initial_state is None:
        padded = F.pad(x, (d_conv - 1, 0))
    else:
        padded = torch.cat([initial_state, x], dim=-1)
    out = F.conv1d(padded, weight, bias, groups=x.shape[1])
    final_state = padded[..., padded.shape[-1] - (d_conv - 1):]
    return out, final_state


def causal_conv1d_update(
    x_t: torch.Tensor,
    conv_state: torch.Tensor,
    weight: torch.Tensor,
    bias: Optional[torch.Tensor],
) -> torch.Tensor:
    """
    Single-step causal convolution against a rolling window.

    Args:
        x_t: New input [B, D]
        conv_state: The K-1 most recent inputs [B, D, K-1]. Shifted left by one
            and updated in place with x_t.
        weight: [D, 1, K]
        bias: [D] or None

    Returns:
        out [B, D]
    """
    window = torch.cat([conv_state, x_t.unsqueeze(-1)], dim=-1)  # [B, D, K]
    out = (window * weight[:, 0, :]).sum(dim=-1)
    if bias is not None:
        out = out + bias
    conv_state.copy_(window[..., 1:])
    return out

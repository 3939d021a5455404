"""Public API for selective-scan operations.

This module provides stable entry points for the scan. Users should import
from here rather than from the private implementation module.

Key functions:
- selective_scan: Whole-sequence scan (stateless mode, or prefill into a state)
- selective_scan_update: Single-timestep scan against a carried hidden state
- causal_conv1d: Causal depthwise convolution over a sequence
- causal_conv1d_update: Single-timestep convolution against a rolling window

Shape validation is skipped unless MAMBAGEN_ENABLE_ASSERTS=1.
"""

from __future__ import annotations

from typing import Optional

import torch

from mambagen.errors import ShapeError
from mambagen.runtime import asserts_enabled

from ._reference import (
    causal_conv1d as _causal_conv1d,
    causal_conv1d_update as _causal_conv1d_update,
    discretize,
    selective_scan as _selective_scan,
    selective_scan_step,
)

__all__ = [
    "selective_scan",
    "selective_scan_update",
    "selective_scan_step",
    "discretize",
    "causal_conv1d",
    "causal_conv1d_update",
    "check_shape",
]


def check_shape(name: str, tensor: torch.Tensor, expected: tuple) -> None:
    """Raise ShapeError unless `tensor.shape` matches `expected` (None = any)."""
    shape = tuple(tensor.shape)
    if len(shape) != len(expected) or any(
        e is not None and e != s for s, e in zip(shape, expected)
    ):
        raise ShapeError(f"{name} must have shape {expected} (got {shape})")


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
    Whole-sequence selective scan.

    Args:
        x: Convolved input [B, L, D]
        delta: Step sizes [B, L, D]
        A: Continuous state matrix [D, N], typically -exp(A_log)
        B: [B, L, N]
        C: [B, L, N]
        D: Skip vector [D]
        initial_state: Optional hidden state [B, D, N] carried in from a
            previous call. Zeros when None (start of sequence).

    Returns:
        (y [B, L, D], final_state [B, D, N])
    """
    if asserts_enabled():
        batch, seq_len, d_inner = x.shape
        d_state = A.shape[-1]
        check_shape("delta", delta, (batch, seq_len, d_inner))
        check_shape("A", A, (d_inner, d_state))
        check_shape("B", B, (batch, seq_len, d_state))
        check_shape("C", C, (batch, seq_len, d_state))
        check_shape("D", D, (d_inner,))
        if initial_state is not None:
            check_shape("initial_state", initial_state, (batch, d_inner, d_state))
    return _selective_scan(x, delta, A, B, C, D, initial_state=initial_state)


def selective_scan_update(
    ssm_state: torch.Tensor,
    x_t: torch.Tensor,
    delta_t: torch.Tensor,
    A: torch.Tensor,
    B_t: torch.Tensor,
    C_t: torch.Tensor,
    D: torch.Tensor,
) -> torch.Tensor:
    """
    Single-timestep selective scan. `ssm_state` [B, D, N] is updated in place.

    Returns:
        y_t [B, D]
    """
    if asserts_enabled():
        batch, d_inner = x_t.shape
        d_state = A.shape[-1]
        check_shape("ssm_state", ssm_state, (batch, d_inner, d_state))
        check_shape("delta_t", delta_t, (batch, d_inner))
        check_shape("B_t", B_t, (batch, d_state))
        check_shape("C_t", C_t, (batch, d_state))
    y_t, h_new = selective_scan_step(ssm_state, x_t, delta_t, A, B_t, C_t, D)
    ssm_state.copy_(h_new)
    return y_t


def causal_conv1d(
    x: torch.Tensor,
    weight: torch.Tensor,
    bias: Optional[torch.Tensor] = None,
    initial_state: Optional[torch.Tensor] = None,
) -> tuple[torch.Tensor, torch.Tensor]:
    """
    Causal depthwise convolution over a sequence.

    Args:
        x: [B, D, L]
        weight: [D, 1, K]
        bias: [D] or None
        initial_state: Optional [B, D, K-1] window of preceding inputs

    Returns:
        (out [B, D, L], final_state [B, D, K-1])
    """
    if asserts_enabled():
        batch, d_inner, _ = x.shape
        d_conv = weight.shape[-1]
        check_shape("weight", weight, (d_inner, 1, d_conv))
        if bias is not None:
            check_shape("bias", bias, (d_inner,))
        if initial_state is not None:
            check_shape("initial_state", initial_state, (batch, d_inner, d_conv - 1))
    return _causal_conv1d(x, weight, bias, initial_state=initial_state)


def causal_conv1d_update(
    x_t: torch.Tensor,
    conv_state: torch.Tensor,
    weight: torch.Tensor,
    bias: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """
    Single-timestep causal convolution. `conv_state` [B, D, K-1] is shifted
    and updated in place.

    Returns:
        out [B, D]
    """
    if asserts_enabled():
        batch, d_inner = x_t.shape
        d_conv = weight.shape[-1]
        check_shape("conv_state", conv_state, (batch, d_inner, d_conv - 1))
        check_shape("weight", weight, (d_inner, 1, d_conv))
    return _causal_conv1d_update(x_t, conv_state, weight, bias)

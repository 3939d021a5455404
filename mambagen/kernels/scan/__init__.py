"""Selective-scan kernels (PyTorch reference, CPU)."""

from .api import (
    causal_conv1d,
    causal_conv1d_update,
    check_shape,
    discretize,
    selective_scan,
    selective_scan_step,
    selective_scan_update,
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

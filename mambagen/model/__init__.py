"""Mamba model: config, selective-scan layer, residual blocks, state cache."""

from .block import ResidualBlock, RMSNorm
from .config import MambaConfig
from .mamba import MambaBackbone, MambaLMHeadModel
from .mixer import SelectiveScanLayer
from .state import LayerState, StateCache
from .weights import LoadReport, checkpoint_key_map, load_pretrained, load_weights, read_checkpoint

__all__ = [
    "MambaConfig",
    "MambaBackbone",
    "MambaLMHeadModel",
    "ResidualBlock",
    "RMSNorm",
    "SelectiveScanLayer",
    "LayerState",
    "StateCache",
    "LoadReport",
    "checkpoint_key_map",
    "load_pretrained",
    "load_weights",
    "read_checkpoint",
]

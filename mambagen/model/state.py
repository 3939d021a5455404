"""Per-layer recurrent state for stateful (single-step) inference."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Sequence

import torch

from mambagen.errors import ShapeError, StateCacheMismatchError
from mambagen.runtime import DTYPE

from .config import MambaConfig


@dataclass
class LayerState:
    """Recurrent state of one selective-scan layer.

    conv_state: the d_conv-1 most recent conv inputs, [B, d_inner, d_conv-1]
    ssm_state: the scan hidden state h, [B, d_inner, d_state]
    """

    conv_state: torch.Tensor
    ssm_state: torch.Tensor

    @classmethod
    def zeros(
        cls,
        *,
        batch_size: int,
        d_inner: int,
        d_state: int,
        d_conv: int,
        dtype: torch.dtype = DTYPE,
        device: torch.device | str = "cpu",
    ) -> "LayerState":
        return cls(
            conv_state=torch.zeros(batch_size, d_inner, d_conv - 1, dtype=dtype, device=device),
            ssm_state=torch.zeros(batch_size, d_inner, d_state, dtype=dtype, device=device),
        )

    def clone(self) -> "LayerState":
        return LayerState(
            conv_state=self.conv_state.detach().clone(),
            ssm_state=self.ssm_state.detach().clone(),
        )

    def copy_(self, other: "LayerState") -> None:
        if other.conv_state.shape != self.conv_state.shape or other.ssm_state.shape != self.ssm_state.shape:
            raise ShapeError(
                "Layer state shapes differ: "
                f"conv {tuple(other.conv_state.shape)} vs {tuple(self.conv_state.shape)}, "
                f"ssm {tuple(other.ssm_state.shape)} vs {tuple(self.ssm_state.shape)}"
            )
        self.conv_state.copy_(other.conv_state)
        self.ssm_state.copy_(other.ssm_state)

    def zero_(self) -> None:
        self.conv_state.zero_()
        self.ssm_state.zero_()


class StateCache:
    """One LayerState per model layer, threaded through every stateful step.

    The cache is created all-zero when a stateful session starts, mutated in
    place exactly once per step in layer order, and replaced wholesale when
    the session is restarted. `seen_tokens` counts the timesteps absorbed.

    Example:
        >>> states = StateCache.empty(config, batch_size=1)
        >>> logits = model.forward_step(token_id, states)
    """

    def __init__(self, layers: Sequence[LayerState], *, seen_tokens: int = 0) -> None:
        self._layers: list[LayerState] = list(layers)
        self.seen_tokens = int(seen_tokens)

    @classmethod
    def empty(
        cls,
        config: MambaConfig,
        *,
        batch_size: int = 1,
        dtype: torch.dtype = DTYPE,
        device: torch.device | str = "cpu",
    ) -> "StateCache":
        if batch_size <= 0:
            raise ValueError(f"batch_size must be > 0, got {batch_size}")
        return cls(
            [
                LayerState.zeros(
                    batch_size=batch_size,
                    d_inner=config.d_inner,
                    d_state=config.d_state,
                    d_conv=config.d_conv,
                    dtype=dtype,
                    device=device,
                )
                for _ in range(config.n_layer)
            ]
        )

    def __len__(self) -> int:
        return len(self._layers)

    def __getitem__(self, index: int) -> LayerState:
        return self._layers[index]

    def __iter__(self) -> Iterator[LayerState]:
        return iter(self._layers)

    @property
    def batch_size(self) -> int:
        if not self._layers:
            return 0
        return int(self._layers[0].ssm_state.shape[0])

    def check_layers(self, n_layer: int) -> None:
        """Raise StateCacheMismatchError unless there is one state per layer."""
        if len(self._layers) != n_layer:
            raise StateCacheMismatchError(expected=n_layer, got=len(self._layers))

    def clone(self) -> "StateCache":
        return StateCache([layer.clone() for layer in self._layers], seen_tokens=self.seen_tokens)

    def copy_from(self, other: "StateCache") -> None:
        """Overwrite this cache's buffers with `other`'s values."""
        other.check_layers(len(self._layers))
        for dst, src in zip(self._layers, other):
            dst.copy_(src)
        self.seen_tokens = other.seen_tokens

    def reset(self) -> None:
        """Zero every buffer in place."""
        for layer in self._layers:
            layer.zero_()
        self.seen_tokens = 0

    def to_payload(self) -> dict[str, Any]:
        """Stack the buffers into CPU tensors, e.g. for `torch.save`."""
        if not self._layers:
            raise ValueError("Cannot export an empty state cache.")
        return {
            "conv_states": torch.stack([s.conv_state.detach().cpu() for s in self._layers]),
            "ssm_states": torch.stack([s.ssm_state.detach().cpu() for s in self._layers]),
            "seen_tokens": int(self.seen_tokens),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "StateCache":
        conv_states = payload.get("conv_states")
        ssm_states = payload.get("ssm_states")
        if not isinstance(conv_states, torch.Tensor) or not isinstance(ssm_states, torch.Tensor):
            raise TypeError("State payload must contain 'conv_states' and 'ssm_states' tensors.")
        if conv_states.dim() != 4 or ssm_states.dim() != 4:
            raise ShapeError(
                "State payload tensors must be [n_layer, B, d_inner, *] "
                f"(got conv {tuple(conv_states.shape)}, ssm {tuple(ssm_states.shape)})"
            )
        if conv_states.shape[:3] != ssm_states.shape[:3]:
            raise ShapeError(
                f"conv_states {tuple(conv_states.shape)} and ssm_states "
                f"{tuple(ssm_states.shape)} disagree on [n_layer, B, d_inner]"
            )
        layers = [
            LayerState(
                conv_state=conv_states[i].to(DTYPE).clone(),
                ssm_state=ssm_states[i].to(DTYPE).clone(),
            )
            for i in range(conv_states.shape[0])
        ]
        return cls(layers, seen_tokens=int(payload.get("seen_tokens", 0)))

"""Model configuration.

All dimensions are fixed when the model is built; nothing in the model or the
state cache reads module-level globals.
"""

from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Mapping

from mambagen.errors import ConfigurationError

# Keys found in upstream `config.json` files that have no effect on a
# float32 CPU reference implementation.
_IGNORED_CONFIG_KEYS = frozenset(
    {"ssm_cfg", "rms_norm", "residual_in_fp32", "fused_add_norm", "tie_embeddings"}
)


@dataclass(frozen=True)
class MambaConfig:
    """Dimensions of a Mamba language model.

    Notes:
    - `dt_rank` defaults to ceil(d_model / 16).
    - `d_inner` is `d_model * expand`.
    - The embedding/head vocabulary is padded up to a multiple of
      `pad_vocab_size_multiple` (50277 -> 50280 for mamba-130m).
    """

    n_layer: int
    vocab_size: int
    d_model: int
    d_state: int = 16
    expand: int = 2
    d_conv: int = 4
    dt_rank: int | None = None
    pad_vocab_size_multiple: int = 8
    norm_eps: float = 1e-5

    def __post_init__(self) -> None:
        if self.dt_rank is None and self.d_model > 0:
            object.__setattr__(self, "dt_rank", math.ceil(self.d_model / 16))
        self.validate()

    @property
    def d_inner(self) -> int:
        return self.d_model * self.expand

    @property
    def padded_vocab_size(self) -> int:
        m = self.pad_vocab_size_multiple
        if m <= 1 or self.vocab_size % m == 0:
            return self.vocab_size
        return self.vocab_size + (m - self.vocab_size % m)

    def validate(self) -> None:
        for name in ("n_layer", "vocab_size", "d_model", "d_state", "expand", "d_conv"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"'{name}' must be a positive integer, got {value!r}.")
        if not isinstance(self.dt_rank, int) or self.dt_rank <= 0:
            raise ConfigurationError(f"'dt_rank' must be a positive integer, got {self.dt_rank!r}.")
        if not isinstance(self.pad_vocab_size_multiple, int) or self.pad_vocab_size_multiple <= 0:
            raise ConfigurationError("'pad_vocab_size_multiple' must be a positive integer.")
        if not self.norm_eps > 0:
            raise ConfigurationError(f"'norm_eps' must be > 0, got {self.norm_eps!r}.")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MambaConfig":
        """Build a config from a checkpoint's `config.json` contents.

        Unknown keys are rejected, except the handful of kernel/precision flags
        upstream configs carry that do not apply here.
        """
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        unknown: list[str] = []
        for key, value in data.items():
            if key in known:
                kwargs[key] = value
            elif key not in _IGNORED_CONFIG_KEYS:
                unknown.append(key)
        if unknown:
            raise ConfigurationError(f"Unknown model config key(s): {', '.join(sorted(unknown))}")
        try:
            return cls(**kwargs)
        except TypeError as exc:
            raise ConfigurationError(f"Incomplete model config: {exc}") from exc

    @classmethod
    def from_json_file(cls, path: str | Path) -> "MambaConfig":
        with Path(path).open("r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def mamba_130m(cls) -> "MambaConfig":
        """Dimensions of state-spaces/mamba-130m."""
        return cls(n_layer=24, vocab_size=50277, d_model=768)

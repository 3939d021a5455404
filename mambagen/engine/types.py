"""Engine request and response types.

These types are used internally by the generation loop and adapters.
They are independent of any front-end or scheduler.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field, replace
from typing import Any

from mambagen.errors import ConfigurationError

DEFAULT_SEED = 299792458
DEFAULT_EOS_TOKEN = "<|endoftext|>"


class GenerationState(str, enum.Enum):
    IDLE = "idle"
    PRIMING = "priming"
    STEPPING = "stepping"
    FINISHED = "finished"


@dataclass(frozen=True)
class GenerationParams:
    """Caller-provided generation parameters.

    Notes:
    - `temperature=None` means greedy arg-max decoding.
    - `repeat_penalty=1.0` disables the repeat penalty.
    - `stop_on_eos=False` treats the end-of-sequence token as an ignorable
      signal and keeps generating until `sample_len - 1` steps ran.
    - `sample_forced_positions` controls whether the sampler is still run (and
      its result discarded) on teacher-forced prompt positions. Running it
      keeps the random stream's consumption independent of the prompt length.
    """

    seed: int = DEFAULT_SEED
    temperature: float | None = None
    top_p: float | None = None
    repeat_penalty: float = 1.1
    repeat_last_n: int = 1024
    sample_len: int = 200
    stop_on_eos: bool = True
    stateful: bool = True
    sample_forced_positions: bool = True
    eos_token: str = DEFAULT_EOS_TOKEN

    def validate(self) -> None:
        if isinstance(self.seed, bool) or not isinstance(self.seed, int) or self.seed < 0:
            raise ConfigurationError("'seed' must be a non-negative integer.")
        if self.temperature is not None:
            if not math.isfinite(self.temperature) or self.temperature < 0:
                raise ConfigurationError("'temperature' must be finite and >= 0, or None.")
        if self.top_p is not None:
            if not math.isfinite(self.top_p) or not 0.0 < self.top_p <= 1.0:
                raise ConfigurationError("'top_p' must be in (0, 1], or None.")
        if not math.isfinite(self.repeat_penalty) or self.repeat_penalty <= 0:
            raise ConfigurationError("'repeat_penalty' must be finite and > 0.")
        if self.repeat_last_n < 0:
            raise ConfigurationError("'repeat_last_n' must be >= 0.")
        if self.sample_len < 0:
            raise ConfigurationError("'sample_len' must be >= 0.")
        if not self.eos_token:
            raise ConfigurationError("'eos_token' must be a non-empty string.")

    def merged(self, override: Any | None) -> "GenerationParams":
        """Merge per-call overrides (a dict or another GenerationParams)."""
        if override is None:
            return self
        if isinstance(override, GenerationParams):
            override.validate()
            return override
        if not isinstance(override, dict):
            raise ConfigurationError("Generation overrides must be a dict.")

        data: dict[str, Any] = dict(override)
        # Alias used by other front-ends.
        if "temp" in data and "temperature" not in data:
            data["temperature"] = data.pop("temp")

        known = set(self.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown generation parameter(s): {', '.join(unknown)}")

        kwargs: dict[str, Any] = {}
        for name in ("seed", "repeat_last_n", "sample_len"):
            if name in data:
                kwargs[name] = _coerce_int(data[name], name)
        for name in ("temperature", "top_p"):
            if name in data:
                kwargs[name] = None if data[name] is None else _coerce_float(data[name], name)
        if "repeat_penalty" in data:
            kwargs["repeat_penalty"] = _coerce_float(data["repeat_penalty"], "repeat_penalty")
        for name in ("stop_on_eos", "stateful", "sample_forced_positions"):
            if name in data:
                if not isinstance(data[name], bool):
                    raise ConfigurationError(f"'{name}' must be a boolean.")
                kwargs[name] = data[name]
        if "eos_token" in data:
            kwargs["eos_token"] = str(data["eos_token"])

        merged = replace(self, **kwargs)
        merged.validate()
        return merged


def _coerce_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"'{name}' must be an integer.")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"'{name}' must be an integer.") from exc


def _coerce_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ConfigurationError(f"'{name}' must be a number.")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"'{name}' must be a number.") from exc


@dataclass(frozen=True)
class StepResult:
    """Outcome of one generation step.

    `token` is the committed next token (None once the loop is already
    finished). `text` is whatever became displayable during this step; the
    final step also carries the flushed remainder of the detokenizer.
    """

    token: int | None
    text: str | None
    is_done: bool
    position: int = -1
    sampled: bool = False
    finish_reason: str | None = None  # "length", "eos"


@dataclass
class GenerationStats:
    generated_tokens: int = 0
    steps: int = 0
    elapsed_s: float = 0.0

    @property
    def tokens_per_second(self) -> float:
        if self.elapsed_s <= 0:
            return 0.0
        return self.generated_tokens / self.elapsed_s


@dataclass
class GenerateResponse:
    """Response from a full generation run."""

    text: str
    tokens: list[int] = field(default_factory=list)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    finish_reason: str = "length"  # "length", "eos"

"""Exception types raised by mambagen.

Every error in this package is fatal for the generation session that raised
it: the selective scan and sampling are deterministic given their inputs and
seed, so retrying with the same input reproduces the same failure.
"""

from __future__ import annotations


class MambaGenError(Exception):
    """Base class for all mambagen errors."""


class ConfigurationError(MambaGenError, ValueError):
    """Invalid configuration or a precondition violated by the caller."""


class StateCacheMismatchError(ConfigurationError):
    """The number of per-layer states does not match the number of layers."""

    def __init__(self, expected: int, got: int) -> None:
        super().__init__(
            f"State cache has {got} layer state(s) but the model has {expected} layer(s)."
        )
        self.expected = expected
        self.got = got


class MissingEosTokenError(ConfigurationError):
    """The tokenizer does not know the configured end-of-sequence token."""

    def __init__(self, token: str) -> None:
        super().__init__(f"Cannot find the end-of-sequence token {token!r} in the tokenizer vocabulary.")
        self.token = token


class ShapeError(MambaGenError, ValueError):
    """A tensor has an incompatible shape or dtype."""


class WeightLoadError(MambaGenError, RuntimeError):
    """A checkpoint could not be read or applied."""


class MissingWeightError(WeightLoadError, KeyError):
    """A required parameter is absent from the checkpoint."""

    def __init__(self, names: list[str]) -> None:
        preview = ", ".join(names[:5])
        more = f" (+{len(names) - 5} more)" if len(names) > 5 else ""
        super().__init__(f"Checkpoint is missing {len(names)} required parameter(s): {preview}{more}")
        self.names = list(names)

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message.
        return str(self.args[0])


class SnapshotCompatibilityError(MambaGenError, RuntimeError):
    """A saved state snapshot does not fit the model it is loaded into."""

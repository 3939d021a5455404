"""Runtime environment checks and feature flags for mambagen."""

from __future__ import annotations

import functools
import logging
import os

import torch

logger = logging.getLogger(__name__)

DTYPE = torch.float32


@functools.lru_cache(maxsize=1)
def is_safetensors_available() -> bool:
    """Check if safetensors is installed (needed for `.safetensors` checkpoints)."""
    try:
        import safetensors.torch  # noqa: F401
        return True
    except ImportError:
        return False


@functools.lru_cache(maxsize=1)
def is_transformers_available() -> bool:
    """Check if transformers is installed (needed for the Hugging Face tokenizer)."""
    try:
        import transformers  # noqa: F401
        return True
    except ImportError:
        return False


def asserts_enabled() -> bool:
    """Whether expensive shape validation in the scan kernels is switched on.

    Controlled by MAMBAGEN_ENABLE_ASSERTS=1. Read on every call so tests can
    toggle it with monkeypatch.
    """
    return os.environ.get("MAMBAGEN_ENABLE_ASSERTS", "0") == "1"


def configure_threads(num_threads: int | None = None) -> int:
    """Set the intra-op thread count used by torch on CPU.

    Args:
        num_threads: Desired thread count. None reads MAMBAGEN_NUM_THREADS and
            otherwise leaves torch's default untouched.

    Returns:
        The thread count torch reports after configuration.
    """
    if num_threads is None:
        raw = os.environ.get("MAMBAGEN_NUM_THREADS")
        if raw:
            try:
                num_threads = int(raw)
            except ValueError:
                logger.warning("Ignoring non-integer MAMBAGEN_NUM_THREADS=%r", raw)
    if num_threads is not None:
        if num_threads <= 0:
            raise ValueError(f"num_threads must be > 0, got {num_threads}")
        torch.set_num_threads(num_threads)
    return torch.get_num_threads()


def check_safetensors_required() -> None:
    """Raise ImportError if safetensors is not available."""
    if not is_safetensors_available():
        raise ImportError(
            "Loading .safetensors checkpoints requires safetensors. "
            "Install it with: pip install safetensors"
        )


def check_transformers_required() -> None:
    """Raise ImportError if transformers is not available."""
    if not is_transformers_available():
        raise ImportError(
            "The Hugging Face tokenizer requires transformers. "
            "Install it with: pip install transformers"
        )

"""
mambagen - Mamba selective state-space language model text generation on CPU.

This package provides a pure-PyTorch Mamba model with two equivalent inference
paths (whole-sequence recomputation and O(1)-per-token stateful stepping) and a
resumable, step-at-a-time generation loop around it.

Quick Start:
    from mambagen import GenerationLoop, GenerationParams, HFTokenizer, load_pretrained

    model = load_pretrained("/models/mamba-130m")
    tokenizer = HFTokenizer.from_pretrained("EleutherAI/gpt-neox-20b")
    loop = GenerationLoop(model, tokenizer, GenerationParams(sample_len=100))

    print(loop.start("Mamba is the") or "", end="")
    for result in loop:
        print(result.text or "", end="", flush=True)

Submodules:
    - mambagen.model: Config, selective-scan layer, blocks, state cache, weights
    - mambagen.kernels.scan: Reference selective scan and causal conv kernels
    - mambagen.engine: Sampling, generation loop, tokenizer stream, adapters

Environment Variables:
    MAMBAGEN_ENABLE_ASSERTS: Set to "1" to enable kernel shape validation
    MAMBAGEN_NUM_THREADS: torch intra-op thread count used by adapters
"""

from mambagen._version import __version__

from mambagen.errors import (
    ConfigurationError,
    MambaGenError,
    MissingEosTokenError,
    MissingWeightError,
    ShapeError,
    SnapshotCompatibilityError,
    StateCacheMismatchError,
    WeightLoadError,
)

from mambagen.model import (
    LayerState,
    MambaConfig,
    MambaLMHeadModel,
    ResidualBlock,
    SelectiveScanLayer,
    StateCache,
    load_pretrained,
    load_weights,
)

from mambagen.engine import (
    GenerateResponse,
    GenerationLoop,
    GenerationParams,
    GenerationState,
    HFTokenizer,
    LogitsProcessor,
    StepResult,
    TokenOutputStream,
    get_adapter,
)

# Runtime utilities
from mambagen.runtime import (
    configure_threads,
    is_safetensors_available,
    is_transformers_available,
)

__all__ = [
    # Version
    "__version__",
    # Errors
    "MambaGenError",
    "ConfigurationError",
    "StateCacheMismatchError",
    "MissingEosTokenError",
    "ShapeError",
    "WeightLoadError",
    "MissingWeightError",
    "SnapshotCompatibilityError",
    # Model
    "MambaConfig",
    "MambaLMHeadModel",
    "ResidualBlock",
    "SelectiveScanLayer",
    "LayerState",
    "StateCache",
    "load_pretrained",
    "load_weights",
    # Generation
    "GenerationParams",
    "GenerationState",
    "GenerationLoop",
    "LogitsProcessor",
    "StepResult",
    "GenerateResponse",
    "TokenOutputStream",
    "HFTokenizer",
    "get_adapter",
    # Runtime
    "configure_threads",
    "is_safetensors_available",
    "is_transformers_available",
]

# Generation engine
#
# Key components:
#   - types.py       GenerationParams, StepResult, GenerateResponse
#   - logits.py      Repeat penalty, sampling, teacher forcing
#   - tokenizer.py   Tokenizer protocol and streaming detokenizer
#   - generation.py  Resumable step-by-step GenerationLoop
#   - snapshots.py   StateCache persistence
#   - adapters/      Model-family adapters with sessions, looked up by name

from .generation import GenerationLoop, LoopCheckpoint
from .logits import LogitsProcessor, apply_repeat_penalty
from .adapters import get_adapter, list_model_families, register_adapter
from .tokenizer import HFTokenizer, Tokenizer, TokenOutputStream
from .types import (
    GenerateResponse,
    GenerationParams,
    GenerationState,
    GenerationStats,
    StepResult,
)

__all__ = [
    "GenerateResponse",
    "GenerationLoop",
    "GenerationParams",
    "GenerationState",
    "GenerationStats",
    "HFTokenizer",
    "LogitsProcessor",
    "LoopCheckpoint",
    "StepResult",
    "TokenOutputStream",
    "Tokenizer",
    "apply_repeat_penalty",
    "get_adapter",
    "list_model_families",
    "register_adapter",
]

# Model-family adapters
#
# Each adapter implements a common interface for:
#   - Loading model + tokenizer
#   - Running generation (streaming and non-streaming)
#   - Stateful sessions with checkpoint/restore
#
# Callers pick an adapter by family name through get_adapter().

from typing import Type

from .base import BaseAdapter
from .mamba import MambaAdapter

_ADAPTERS: dict[str, Type[BaseAdapter]] = {"mamba": MambaAdapter}


def get_adapter(model_family: str) -> BaseAdapter:
    """Return a new, unloaded adapter for `model_family` (e.g. "mamba")."""
    try:
        adapter_cls = _ADAPTERS[model_family]
    except KeyError:
        raise ValueError(
            f"Unknown model family: {model_family!r}. Available: {', '.join(_ADAPTERS)}"
        ) from None
    return adapter_cls()


def register_adapter(model_family: str, adapter_cls: Type[BaseAdapter]) -> None:
    if not (isinstance(adapter_cls, type) and issubclass(adapter_cls, BaseAdapter)):
        raise TypeError(f"{adapter_cls!r} is not a BaseAdapter subclass")
    _ADAPTERS[model_family] = adapter_cls


def list_model_families() -> list[str]:
    return list(_ADAPTERS)


__all__ = ["BaseAdapter", "MambaAdapter", "get_adapter", "list_model_families", "register_adapter"]

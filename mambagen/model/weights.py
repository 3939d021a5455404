"""Reading checkpoints and applying them to a `MambaLMHeadModel`.

Weight loading fails fast: a required parameter that is absent raises
`MissingWeightError` unless the caller opts into `skip_missing`, in which case
the parameter keeps its initialized value. A shape mismatch always raises.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

import torch

from mambagen.errors import MissingWeightError, ShapeError, WeightLoadError
from mambagen.runtime import DTYPE, check_safetensors_required

from .config import MambaConfig
from .mamba import MambaLMHeadModel

logger = logging.getLogger(__name__)

_CHECKPOINT_FILENAMES = ("model.safetensors", "pytorch_model.bin")
_TIED_KEY = "lm_head.weight"
_EMBEDDING_KEY = "backbone.embedding.weight"

_MIXER_PARAMS = (
    "in_proj.weight",
    "conv1d.weight",
    "conv1d.bias",
    "x_proj.weight",
    "dt_proj.weight",
    "dt_proj.bias",
    "A_log",
    "D",
    "out_proj.weight",
)


@dataclass
class LoadReport:
    """What `load_weights` did."""

    loaded: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    unexpected: list[str] = field(default_factory=list)


def checkpoint_key_map(n_layer: int) -> dict[str, tuple[str, ...]]:
    """Required parameter name -> checkpoint keys that may hold it, in order.

    The output head is not a parameter of its own: it is tied to the
    embedding. A checkpoint that only ships `lm_head.weight` (or the
    `backbone.embeddings.weight` spelling) still provides the embedding.
    """
    keys: dict[str, tuple[str, ...]] = {
        _EMBEDDING_KEY: (_EMBEDDING_KEY, "backbone.embeddings.weight", _TIED_KEY),
    }
    for i in range(n_layer):
        prefix = f"backbone.layers.{i}"
        for name in _MIXER_PARAMS:
            keys[f"{prefix}.mixer.{name}"] = (f"{prefix}.mixer.{name}",)
        keys[f"{prefix}.norm.weight"] = (f"{prefix}.norm.weight",)
    keys["backbone.norm_f.weight"] = ("backbone.norm_f.weight",)
    return keys


def _canonical_key(key: str) -> str:
    if key.startswith("model."):
        key = key[len("model."):]
    if not key.startswith("backbone.") and key != _TIED_KEY:
        key = f"backbone.{key}"
    return key


def _resolve(incoming: Mapping[str, torch.Tensor], candidates: tuple[str, ...]) -> torch.Tensor | None:
    for key in candidates:
        tensor = incoming.get(key)
        if tensor is not None:
            return tensor
    return None


def read_checkpoint(path: str | os.PathLike) -> dict[str, torch.Tensor]:
    """Read a checkpoint file (or a directory containing one) into CPU tensors.

    Raises:
        WeightLoadError: The file is missing or unreadable.
    """
    path = Path(path)
    if path.is_dir():
        for name in _CHECKPOINT_FILENAMES:
            if (path / name).is_file():
                path = path / name
                break
        else:
            raise WeightLoadError(
                f"No checkpoint found under {path} (looked for {', '.join(_CHECKPOINT_FILENAMES)})"
            )
    if not path.is_file():
        raise WeightLoadError(f"Checkpoint file not found: {path}")

    try:
        if path.suffix == ".safetensors":
            check_safetensors_required()
            from safetensors.torch import load_file

            tensors = load_file(str(path), device="cpu")
        else:
            tensors = torch.load(str(path), map_location="cpu", weights_only=True)
    except ImportError:
        raise
    except Exception as exc:
        raise WeightLoadError(f"Failed to read checkpoint {path}: {exc}") from exc

    if not isinstance(tensors, Mapping):
        raise WeightLoadError(f"Checkpoint {path} does not contain a tensor mapping.")
    logger.info("Read %d tensors from %s", len(tensors), path)
    return dict(tensors)


def load_weights(
    model: MambaLMHeadModel,
    state_dict: Mapping[str, torch.Tensor],
    *,
    skip_missing: bool = False,
) -> LoadReport:
    """Copy checkpoint tensors into `model`'s parameters.

    Args:
        model: Target model; its parameters are overwritten in place.
        state_dict: Checkpoint tensors. Keys may omit the `backbone.` prefix.
        skip_missing: Keep initialized values for absent parameters instead of
            raising.

    Returns:
        A LoadReport.

    Raises:
        MissingWeightError: A required parameter is absent and skip_missing is False.
        ShapeError: A tensor's shape differs from the parameter's.
    """
    params = dict(model.named_parameters(remove_duplicate=False))
    required = checkpoint_key_map(model.n_layer)

    incoming: dict[str, torch.Tensor] = {}
    for key, tensor in state_dict.items():
        incoming[_canonical_key(key)] = tensor

    resolved = {name: _resolve(incoming, candidates) for name, candidates in required.items()}

    report = LoadReport()
    mismatched: list[str] = []
    for name, tensor in resolved.items():
        if tensor is None:
            report.missing.append(name)
            continue
        param = params[name]
        if tuple(tensor.shape) != tuple(param.shape):
            mismatched.append(f"{name}: checkpoint {tuple(tensor.shape)} vs model {tuple(param.shape)}")

    if mismatched:
        raise ShapeError("Checkpoint shape mismatch:\n  " + "\n  ".join(mismatched))
    if report.missing and not skip_missing:
        raise MissingWeightError(report.missing)

    with torch.no_grad():
        for name, tensor in resolved.items():
            if tensor is None:
                continue
            params[name].copy_(tensor.to(dtype=DTYPE))
            report.loaded.append(name)

    known = {key for candidates in required.values() for key in candidates}
    report.unexpected = sorted(k for k in incoming if k not in known)
    if report.missing:
        logger.warning(
            "Kept initialized values for %d missing parameter(s), e.g. %s",
            len(report.missing),
            report.missing[0],
        )
    if report.unexpected:
        logger.debug("Ignored %d unexpected checkpoint key(s): %s", len(report.unexpected), report.unexpected)

    model.tie_weights()
    return report


def load_pretrained(
    model_path: str | os.PathLike,
    *,
    skip_missing: bool = False,
    config: MambaConfig | None = None,
) -> MambaLMHeadModel:
    """Build a model from a local directory holding `config.json` and a checkpoint.

    Args:
        model_path: Directory with `config.json` and `model.safetensors` (or
            `pytorch_model.bin`).
        skip_missing: Passed through to `load_weights`.
        config: Use this config instead of reading `config.json`.
    """
    model_path = Path(model_path)
    if config is None:
        config_file = model_path / "config.json"
        if not config_file.is_file():
            raise WeightLoadError(f"Model config not found: {config_file}")
        config = MambaConfig.from_json_file(config_file)

    model = MambaLMHeadModel.from_config(config)
    state_dict = read_checkpoint(model_path)
    report = load_weights(model, state_dict, skip_missing=skip_missing)
    logger.info(
        "Loaded %d parameter tensors into a %d-layer model (%d missing)",
        len(report.loaded),
        config.n_layer,
        len(report.missing),
    )
    return model.eval()

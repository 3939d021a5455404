"""StateCache snapshot persistence.

A **session** owns a live, mutable StateCache. A **snapshot** is an immutable
copy of it on disk, together with the token history it was built from.

Format (one directory per snapshot):
- `manifest.json`: schema, timestamp, layer count, caller metadata
- `tokens.json`: the committed token history
- `cache.pt`: `torch.save` of the stacked conv/ssm state tensors
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import time
import uuid
from pathlib import Path
from typing import Any, Mapping, Sequence

import torch

from mambagen.errors import SnapshotCompatibilityError
from mambagen.model.config import MambaConfig
from mambagen.model.state import StateCache

logger = logging.getLogger(__name__)

SCHEMA = "mambagen.state_snapshot.v1"
CACHE_FORMAT = "mamba_state_cache_v1"


def _stable_json_dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, ensure_ascii=False, default=str, allow_nan=True)


def compute_model_compatibility(config: MambaConfig, *, model_id: str = "mamba") -> dict[str, Any]:
    """Fingerprint the parts of a model a StateCache depends on."""
    cfg_hash = hashlib.sha256(_stable_json_dumps(config.to_dict()).encode("utf-8")).hexdigest()
    payload = {
        "model_id": model_id,
        "config_sha256": cfg_hash,
        "n_layer": config.n_layer,
        "d_inner": config.d_inner,
        "d_state": config.d_state,
        "d_conv": config.d_conv,
        "schema": SCHEMA,
    }
    fingerprint = hashlib.sha256(_stable_json_dumps(payload).encode("utf-8")).hexdigest()
    return {"fingerprint": fingerprint, "payload": payload}


def export_state_cache(cache: StateCache) -> dict[str, Any]:
    """Export `cache` into CPU tensors."""
    payload = cache.to_payload()
    payload["cache_format"] = CACHE_FORMAT
    payload["n_layer"] = len(cache)
    return payload


def import_state_cache(cache: StateCache, payload: Mapping[str, Any]) -> int:
    """Populate `cache` in place from a payload produced by `export_state_cache`.

    Returns:
        The `seen_tokens` count restored into the cache.

    Raises:
        SnapshotCompatibilityError: Unknown format, or the payload's layer count
            or buffer shapes do not match `cache`.
    """
    if payload.get("cache_format") != CACHE_FORMAT:
        raise SnapshotCompatibilityError(f"Unsupported cache_format: {payload.get('cache_format')!r}")
    try:
        source = StateCache.from_payload(payload)
    except (TypeError, ValueError) as exc:
        raise SnapshotCompatibilityError(f"Invalid state payload: {exc}") from exc

    if len(source) != len(cache):
        raise SnapshotCompatibilityError(
            f"Snapshot has {len(source)} layer states, target cache has {len(cache)}."
        )
    for idx, (dst, src) in enumerate(zip(cache, source)):
        if dst.conv_state.shape != src.conv_state.shape or dst.ssm_state.shape != src.ssm_state.shape:
            raise SnapshotCompatibilityError(
                f"Layer {idx} state shape mismatch: snapshot conv {tuple(src.conv_state.shape)} "
                f"ssm {tuple(src.ssm_state.shape)}, target conv {tuple(dst.conv_state.shape)} "
                f"ssm {tuple(dst.ssm_state.shape)}"
            )
        dst.conv_state.copy_(src.conv_state.to(device=dst.conv_state.device, dtype=dst.conv_state.dtype))
        dst.ssm_state.copy_(src.ssm_state.to(device=dst.ssm_state.device, dtype=dst.ssm_state.dtype))

    cache.seen_tokens = source.seen_tokens
    return cache.seen_tokens


def save_snapshot(
    path: str | Path,
    cache: StateCache,
    tokens: Sequence[int],
    metadata: Mapping[str, Any] | None = None,
) -> Path:
    """Write a single snapshot directory at `path` (which must not exist)."""
    final_dir = Path(path)
    if final_dir.exists():
        raise FileExistsError(str(final_dir))
    final_dir.parent.mkdir(parents=True, exist_ok=True)
    tmp_dir = final_dir.parent / f".tmp-{final_dir.name}-{uuid.uuid4().hex}"
    tmp_dir.mkdir(parents=True, exist_ok=False)

    try:
        _write_snapshot_files(
            tmp_dir,
            cache=cache,
            tokens=tokens,
            manifest={
                "schema": SCHEMA,
                "created_at": int(time.time()),
                "n_layer": len(cache),
                "token_count": len(tokens),
                "metadata": dict(metadata or {}),
            },
        )
        tmp_dir.rename(final_dir)
    except Exception:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise
    logger.debug("Saved state snapshot to %s (%d tokens)", final_dir, len(tokens))
    return final_dir


def load_snapshot(path: str | Path) -> tuple[StateCache, list[int], dict[str, Any]]:
    """Read a snapshot directory written by `save_snapshot`.

    Returns:
        (cache, tokens, manifest)
    """
    d = Path(path)
    mf = d / "manifest.json"
    if not mf.is_file():
        raise FileNotFoundError(str(mf))
    manifest = json.loads(mf.read_text(encoding="utf-8"))
    if manifest.get("schema") != SCHEMA:
        raise SnapshotCompatibilityError(f"Unsupported snapshot schema: {manifest.get('schema')!r}")

    tokens, payload = _read_snapshot_files(d, manifest.get("files") or {})
    try:
        cache = StateCache.from_payload(payload)
    except (TypeError, ValueError) as exc:
        raise SnapshotCompatibilityError(f"Invalid state payload: {exc}") from exc
    return cache, tokens, manifest


def _write_snapshot_files(
    directory: Path,
    *,
    cache: StateCache,
    tokens: Sequence[int],
    manifest: dict[str, Any],
) -> None:
    files = {"tokens": "tokens.json", "cache": "cache.pt"}
    (directory / files["tokens"]).write_text(
        _stable_json_dumps({"tokens": [int(t) for t in tokens]}), encoding="utf-8"
    )
    torch.save(export_state_cache(cache), directory / files["cache"])
    manifest = dict(manifest, files=files)
    (directory / "manifest.json").write_text(_stable_json_dumps(manifest), encoding="utf-8")


def _read_snapshot_files(directory: Path, files: Mapping[str, str]) -> tuple[list[int], dict[str, Any]]:
    tokens_path = directory / files.get("tokens", "tokens.json")
    cache_path = directory / files.get("cache", "cache.pt")
    if not tokens_path.is_file() or not cache_path.is_file():
        raise FileNotFoundError(str(directory))

    tokens_obj = json.loads(tokens_path.read_text(encoding="utf-8"))
    tokens = tokens_obj.get("tokens")
    if not isinstance(tokens, list):
        raise SnapshotCompatibilityError("Snapshot token history is missing.")

    payload = torch.load(cache_path, map_location="cpu", weights_only=True)
    if not isinstance(payload, dict):
        raise SnapshotCompatibilityError("Invalid cache payload (expected dict).")
    if payload.get("cache_format") != CACHE_FORMAT:
        raise SnapshotCompatibilityError(f"Unsupported cache_format: {payload.get('cache_format')!r}")
    return [int(t) for t in tokens], payload

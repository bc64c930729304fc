"""Core primitives for billchain.

This module provides the foundational utilities used throughout the engine:
- Cryptographic hashing (SHA-256)
- Canonical JSON serialization (sorted keys, no whitespace, UTF-8, no floats)
- YAML/JSON loading with consistent encoding

Every hash and signature in a bill chain is computed over bytes produced by
`canonical_json_bytes`, so two nodes holding the same logical block always
derive the same digest.
"""

from __future__ import annotations

import hashlib
import json
import os
import pathlib
import tempfile
import time
from typing import Any, Union

import yaml


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hash of bytes, returning lowercase hex string."""
    return hashlib.sha256(data).hexdigest()


def load_yaml(path: Union[str, pathlib.Path]) -> Any:
    """Load YAML file with UTF-8 encoding."""
    return yaml.safe_load(pathlib.Path(path).read_text(encoding="utf-8"))


def load_json(path: Union[str, pathlib.Path]) -> Any:
    """Load JSON file with UTF-8 encoding."""
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize object to canonical JSON bytes.

    Properties:
    - Keys sorted lexicographically
    - No whitespace
    - UTF-8 encoded
    - Floats rejected (amounts are integers in the smallest currency unit)
    """
    def _reject_floats(o: Any, path: str = "") -> None:
        if isinstance(o, float):
            raise ValueError(f"Float not allowed in canonical JSON at {path or '$'}")
        if isinstance(o, dict):
            for k, v in o.items():
                _reject_floats(v, f"{path}.{k}")
        if isinstance(o, (list, tuple)):
            for i, v in enumerate(o):
                _reject_floats(v, f"{path}[{i}]")

    _reject_floats(obj)
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def write_json_atomic(path: Union[str, pathlib.Path], obj: Any) -> None:
    """Write JSON to `path` via a temp file in the same directory and `os.replace`.

    Readers never observe a partially written file.
    """
    target = pathlib.Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=str(target.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(obj, fh, indent=2, sort_keys=True, ensure_ascii=False)
            fh.write("\n")
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def now_unix() -> int:
    """Current time in whole Unix seconds.

    For deterministic runs, set `SOURCE_DATE_EPOCH` (seconds since Unix epoch).
    """
    sde = os.environ.get("SOURCE_DATE_EPOCH")
    if sde is not None and str(sde).strip() != "":
        try:
            return int(str(sde).strip(), 10)
        except ValueError as ex:
            raise ValueError("SOURCE_DATE_EPOCH must be an integer (seconds)") from ex
    return int(time.time())

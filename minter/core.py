"""Core primitives for the minter.

This module provides the foundational utilities used throughout the package:
- Cryptographic hashing (SHA-256)
- Canonical JSON serialization (JCS/RFC8785 subset)
- YAML/JSON loading with consistent encoding
- Atomic file replacement
- base64url and base58 codecs

Design principles:
- Pure functions where possible
- No global mutable state
- Explicit error handling
"""

from __future__ import annotations

import base64
import hashlib
import json
import os
import pathlib
import tempfile
from datetime import datetime, timezone
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


def load_document(path: Union[str, pathlib.Path]) -> Any:
    """Load a JSON or YAML document, chosen by file suffix."""
    p = pathlib.Path(path)
    if p.suffix.lower() == ".json":
        return load_json(p)
    return load_yaml(p)


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize object to canonical JSON bytes (JCS/RFC8785 subset).

    Properties:
    - Keys sorted lexicographically
    - No whitespace
    - UTF-8 encoded
    - Floats rejected (use strings/ints for amounts)

    This ensures byte-for-byte reproducibility for signatures and digests.
    """
    def _reject_floats(o: Any, path: str = "") -> None:
        if isinstance(o, float):
            raise ValueError(f"Float not allowed in canonical JSON at {path}")
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


def atomic_write_bytes(path: Union[str, pathlib.Path], data: bytes) -> None:
    """Replace `path` with `data` so readers see either the old or new file.

    Writes to a temporary file in the same directory, fsyncs it, then
    renames it over the destination.
    """
    target = pathlib.Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def write_canonical_json(path: Union[str, pathlib.Path], obj: Any) -> str:
    """Atomically write canonical JSON to file, returning the digest.

    Appends a trailing newline for POSIX compatibility.
    Returns the SHA-256 digest of the canonical bytes (without newline).
    """
    canonical = canonical_json_bytes(obj)
    atomic_write_bytes(path, canonical + b"\n")
    return sha256_bytes(canonical)


def now_rfc3339() -> str:
    """RFC3339 UTC timestamp with second precision.

    For deterministic runs set `SOURCE_DATE_EPOCH` (seconds since Unix epoch).
    """
    sde = os.environ.get("SOURCE_DATE_EPOCH")
    if sde is not None and str(sde).strip() != "":
        try:
            epoch = int(str(sde).strip(), 10)
        except ValueError as ex:
            raise ValueError("SOURCE_DATE_EPOCH must be an integer (seconds)") from ex
        dt = datetime.fromtimestamp(epoch, tz=timezone.utc)
    else:
        dt = datetime.now(timezone.utc)
    return dt.replace(microsecond=0).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# base64url / base58
# ---------------------------------------------------------------------------


def b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    pad = "=" * ((4 - len(s) % 4) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


B58_ALPHABET = b"123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
B58_MAP = {c: i for i, c in enumerate(B58_ALPHABET)}


def b58decode(s: str) -> bytes:
    s_bytes = s.encode("ascii")
    num = 0
    for c in s_bytes:
        if c not in B58_MAP:
            raise ValueError("Invalid base58 character")
        num = num * 58 + B58_MAP[c]
    # Count leading zeros
    n_pad = 0
    for c in s_bytes:
        if c == B58_ALPHABET[0]:
            n_pad += 1
        else:
            break
    full = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    return b"\x00" * n_pad + full

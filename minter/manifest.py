"""Manifest loading.

A manifest is a YAML or JSON document listing the mints to perform. Two
shapes are accepted:

    # bare list
    - recipient: "<principal>"
      metadata: {name: "Token #1", file: "art/1.png"}

    # document
    manifest_id: drop-2026-10
    canister_id: "<principal>"
    defaults:
      metadata: {mime_type: image/png}
    entries:
      - id: token-1
        owner: "<principal>"
        metadata: {name: "Token #1", file: "art/1.png"}

`entry_id` is the explicit `id` or, when absent, `entry-NNNNN` from the
1-based position. `manifest_id` is explicit or the SHA-256 of the canonical
entry list, so repeated loads of the same file yield the same identifiers.
"""

from __future__ import annotations

import pathlib
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml
from jsonschema import Draft202012Validator

from minter.core import canonical_json_bytes, load_document, sha256_bytes
from minter.errors import ManifestError
from minter.observability import MintLayer, get_logger, timed_operation

logger = get_logger("manifest", MintLayer.MANIFEST)

_ITEM_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "id": {"type": ["string", "integer"]},
        "recipient": {"type": "string"},
        "owner": {"type": "string"},
        "metadata": {"type": "object"},
    },
    "required": ["metadata"],
    "anyOf": [{"required": ["recipient"]}, {"required": ["owner"]}],
}

MANIFEST_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "$defs": {"item": _ITEM_SCHEMA},
    "oneOf": [
        {"type": "array", "items": {"$ref": "#/$defs/item"}},
        {
            "type": "object",
            "properties": {
                "manifest_id": {"type": "string", "minLength": 1},
                "canister_id": {"type": "string"},
                "defaults": {
                    "type": "object",
                    "properties": {"metadata": {"type": "object"}},
                },
                "entries": {"type": "array", "items": {"$ref": "#/$defs/item"}},
            },
            "required": ["entries"],
        },
    ],
}


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class ManifestEntry:
    """One desired mint. Immutable once loaded."""
    entry_id: str
    recipient_principal: str
    metadata: Mapping[str, Any]

    def __post_init__(self):
        object.__setattr__(self, "metadata", _freeze(self.metadata))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "recipient_principal": self.recipient_principal,
            "metadata": _thaw(self.metadata),
        }


@dataclass(frozen=True)
class Manifest:
    """An ordered, validated list of manifest entries."""
    manifest_id: str
    entries: Tuple[ManifestEntry, ...]
    canister_id: Optional[str] = None
    source: Optional[pathlib.Path] = None

    @property
    def base_dir(self) -> Optional[pathlib.Path]:
        return self.source.parent if self.source is not None else None

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def get(self, entry_id: str) -> Optional[ManifestEntry]:
        for entry in self.entries:
            if entry.entry_id == entry_id:
                return entry
        return None


def validate_manifest_document(doc: Any) -> List[str]:
    """Return schema errors for a manifest document (empty if valid)."""
    validator = Draft202012Validator(MANIFEST_SCHEMA)
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(validator.iter_errors(doc), key=lambda e: e.json_path)
    ]


def parse_manifest(doc: Any, source: Optional[pathlib.Path] = None) -> Manifest:
    """Build a Manifest from an already-parsed document."""
    errors = validate_manifest_document(doc)
    if errors:
        raise ManifestError("invalid manifest: " + "; ".join(errors))

    if isinstance(doc, list):
        items, header = doc, {}
    else:
        items, header = doc["entries"], doc

    defaults = dict((header.get("defaults") or {}).get("metadata") or {})

    entries: List[ManifestEntry] = []
    seen: Dict[str, int] = {}
    for index, item in enumerate(items, start=1):
        raw_id = item.get("id")
        entry_id = str(raw_id) if raw_id is not None else f"entry-{index:05d}"
        if not entry_id.strip():
            raise ManifestError(f"entry {index}: id must not be blank")
        if entry_id in seen:
            raise ManifestError(
                f"duplicate entry id {entry_id!r} at positions {seen[entry_id]} and {index}"
            )
        seen[entry_id] = index

        metadata = {**defaults, **item["metadata"]}
        recipient = item.get("recipient", item.get("owner"))
        entries.append(ManifestEntry(
            entry_id=entry_id,
            recipient_principal=recipient,
            metadata=metadata,
        ))

    manifest_id = header.get("manifest_id")
    if not manifest_id:
        try:
            canonical = canonical_json_bytes([e.to_dict() for e in entries])
        except ValueError as ex:
            raise ManifestError(f"manifest is not canonicalizable: {ex}") from ex
        manifest_id = "sha256:" + sha256_bytes(canonical)

    return Manifest(
        manifest_id=str(manifest_id),
        entries=tuple(entries),
        canister_id=header.get("canister_id"),
        source=source,
    )


@timed_operation(logger, "load_manifest")
def load_manifest(path: Union[str, pathlib.Path]) -> Manifest:
    """Load and validate a manifest file."""
    p = pathlib.Path(path).resolve()
    try:
        doc = load_document(p)
    except OSError as ex:
        raise ManifestError(f"cannot read manifest {p}: {ex}") from ex
    except (yaml.YAMLError, ValueError) as ex:
        raise ManifestError(f"cannot parse manifest {p}: {ex}") from ex
    return parse_manifest(doc, source=p)


__all__ = [
    "ManifestEntry",
    "Manifest",
    "MANIFEST_SCHEMA",
    "validate_manifest_document",
    "parse_manifest",
    "load_manifest",
]

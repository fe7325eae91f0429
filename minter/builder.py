"""
Mint Request Builder

Turns one manifest entry into the canonical `mintDip721` payload:

    mintDip721(to: Principal, metadata: Vec<MetadataPart>, data: Blob)

A metadata document carries one RENDERED `MetadataPart` whose key/value
data follows the DIP-721 well-known keys:

    locationType   Nat8   1 = IPFS CID, 2 = asset canister, 3 = URI, 4 = none
    location       Blob (CID bytes) or Text (principal / URI)
    contentHash    Blob   SHA-256 of the content
    contentType    Text   MIME type

Every constraint violation raises `ValidationError(field, reason)` and the
entry fails without contacting the ledger.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import mimetypes
import pathlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from minter.core import b58decode, b64url_encode, sha256_bytes
from minter.errors import ValidationError
from minter.manifest import ManifestEntry
from minter.principal import Principal

MINT_METHOD = "mintDip721"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

_HEX64_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


# =============================================================================
# METADATA TYPES
# =============================================================================

class MetadataPurpose(Enum):
    """Purpose of a metadata part."""
    PREVIEW = "Preview"
    RENDERED = "Rendered"


class MetadataValKind(Enum):
    """Variants of a metadata value."""
    TEXT = "TextContent"
    BLOB = "BlobContent"
    NAT = "NatContent"
    NAT8 = "Nat8Content"
    NAT16 = "Nat16Content"
    NAT32 = "Nat32Content"
    NAT64 = "Nat64Content"

    @property
    def bit_width(self) -> Optional[int]:
        return {
            MetadataValKind.NAT: 128,
            MetadataValKind.NAT8: 8,
            MetadataValKind.NAT16: 16,
            MetadataValKind.NAT32: 32,
            MetadataValKind.NAT64: 64,
        }.get(self)


@dataclass(frozen=True)
class MetadataVal:
    """A single typed metadata value."""
    kind: MetadataValKind
    value: Any

    def __post_init__(self):
        width = self.kind.bit_width
        if width is not None:
            if isinstance(self.value, bool) or not isinstance(self.value, int):
                raise ValueError(f"{self.kind.value} requires an integer")
            if not 0 <= self.value < (1 << width):
                raise ValueError(f"{self.kind.value} out of range: {self.value}")
        elif self.kind == MetadataValKind.TEXT and not isinstance(self.value, str):
            raise ValueError("TextContent requires a string")
        elif self.kind == MetadataValKind.BLOB and not isinstance(self.value, bytes):
            raise ValueError("BlobContent requires bytes")

    @classmethod
    def text(cls, value: str) -> "MetadataVal":
        return cls(MetadataValKind.TEXT, value)

    @classmethod
    def blob(cls, value: bytes) -> "MetadataVal":
        return cls(MetadataValKind.BLOB, value)

    @classmethod
    def nat8(cls, value: int) -> "MetadataVal":
        return cls(MetadataValKind.NAT8, value)

    def to_dict(self) -> Dict[str, Any]:
        if self.kind == MetadataValKind.BLOB:
            return {self.kind.value: b64url_encode(self.value)}
        if self.kind.bit_width is not None and self.kind.bit_width > 53:
            # Large naturals travel as decimal strings to survive JSON readers.
            return {self.kind.value: str(self.value)}
        return {self.kind.value: self.value}


@dataclass(frozen=True)
class MetadataPart:
    """One part of an NFT's metadata."""
    purpose: MetadataPurpose
    key_val_data: Tuple[Tuple[str, MetadataVal], ...]
    data: bytes = b""

    def get(self, key: str) -> Optional[MetadataVal]:
        for k, v in self.key_val_data:
            if k == key:
                return v
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "purpose": self.purpose.value,
            "key_val_data": [
                {"key": k, "val": v.to_dict()}
                for k, v in sorted(self.key_val_data, key=lambda kv: kv[0])
            ],
            "data": b64url_encode(self.data),
        }


class LocationType(Enum):
    """Where the token content lives."""
    IPFS = 1
    ASSET_CANISTER = 2
    URI = 3
    NONE = 4


RESERVED_KEYS = frozenset({
    "name", "description", "locationType", "location", "contentHash", "contentType",
})

_TYPED_ATTRIBUTE_KINDS = {
    "text": MetadataValKind.TEXT,
    "blob": MetadataValKind.BLOB,
    "nat": MetadataValKind.NAT,
    "nat8": MetadataValKind.NAT8,
    "nat16": MetadataValKind.NAT16,
    "nat32": MetadataValKind.NAT32,
    "nat64": MetadataValKind.NAT64,
}


# =============================================================================
# MINT REQUEST
# =============================================================================

@dataclass(frozen=True)
class MintRequest:
    """
    Canonical payload for one mint attempt.

    The call content excludes `attempt` and `created_at`, so every attempt
    for an entry carries the same request id.
    """
    entry_id: str
    canister_id: str
    owner: str
    metadata: Tuple[MetadataPart, ...]
    data: bytes
    minting_authority: str
    idempotency_key: str
    attempt: int = 1
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_content(self) -> Dict[str, Any]:
        return {
            "request_type": "call",
            "canister_id": self.canister_id,
            "method_name": MINT_METHOD,
            "arg": {
                "to": self.owner,
                "metadata": [part.to_dict() for part in self.metadata],
                "data": b64url_encode(self.data),
            },
            "minting_authority": self.minting_authority,
            "nonce": self.idempotency_key,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "attempt": self.attempt,
            "created_at": self.created_at,
            "content": self.to_content(),
        }


def idempotency_key(manifest_id: str, entry_id: str) -> str:
    """Stable per-entry key shared by every attempt in every run."""
    return sha256_bytes(f"{manifest_id}:{entry_id}".encode("utf-8"))


# =============================================================================
# BUILDER
# =============================================================================

class MintRequestBuilder:
    """
    Converts manifest entries into MintRequests.

    Apart from reading a referenced content file the builder has no side
    effects, so one instance serves every worker.

    Example:
        builder = MintRequestBuilder(canister_id, signer.principal, manifest.manifest_id)
        request = builder.build(entry, attempt=1)
    """

    def __init__(
        self,
        canister_id: str,
        minting_authority: Principal,
        manifest_id: str,
        base_dir: Optional[pathlib.Path] = None,
        content_loader: Optional[Callable[[pathlib.Path], bytes]] = None,
    ):
        try:
            Principal.from_text(canister_id)
        except ValueError as ex:
            raise ValidationError("canister_id", str(ex), canister_id) from ex
        self.canister_id = canister_id
        self.minting_authority = minting_authority
        self.manifest_id = manifest_id
        self.base_dir = base_dir
        self._load_content = content_loader or (lambda p: p.read_bytes())

    def build(self, entry: ManifestEntry, attempt: int = 1) -> MintRequest:
        """Validate an entry and build its MintRequest."""
        owner = self._validate_recipient(entry.recipient_principal)
        metadata = entry.metadata
        if not isinstance(metadata, Mapping):
            raise ValidationError("metadata", "must be a mapping")

        name = metadata.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("metadata.name", "must be a non-empty string", name)

        kv: Dict[str, MetadataVal] = {"name": MetadataVal.text(name)}
        description = metadata.get("description")
        if description is not None:
            if not isinstance(description, str):
                raise ValidationError("metadata.description", "must be a string", description)
            kv["description"] = MetadataVal.text(description)

        location_type, location = self._location(metadata)
        kv["locationType"] = MetadataVal.nat8(location_type.value)
        if location is not None:
            kv["location"] = location

        data, content_path = self._content(metadata, location_type)
        content_hash = self._content_hash(metadata, location_type, data, content_path)
        if content_hash is not None:
            kv["contentHash"] = MetadataVal.blob(content_hash)
        kv["contentType"] = MetadataVal.text(self._content_type(metadata, content_path))

        for key, val in self._attributes(metadata.get("attributes")):
            kv[key] = val

        part = MetadataPart(
            purpose=MetadataPurpose.RENDERED,
            key_val_data=tuple(sorted(kv.items(), key=lambda item: item[0])),
            data=data,
        )

        return MintRequest(
            entry_id=entry.entry_id,
            canister_id=self.canister_id,
            owner=owner,
            metadata=(part,),
            data=data,
            minting_authority=self.minting_authority.to_text(),
            idempotency_key=idempotency_key(self.manifest_id, entry.entry_id),
            attempt=attempt,
        )

    # -------------------------------------------------------------------------
    # field validators
    # -------------------------------------------------------------------------

    @staticmethod
    def _validate_recipient(recipient: Any) -> str:
        if not isinstance(recipient, str) or not recipient.strip():
            raise ValidationError("recipient_principal", "must be a non-empty string", recipient)
        try:
            principal = Principal.from_text(recipient.strip())
        except ValueError as ex:
            raise ValidationError("recipient_principal", str(ex), recipient) from ex
        if principal.is_anonymous:
            raise ValidationError("recipient_principal", "anonymous principal cannot own tokens", recipient)
        return principal.to_text()

    def _location(self, metadata: Mapping[str, Any]) -> Tuple[LocationType, Optional[MetadataVal]]:
        present = [k for k in ("ipfs_location", "asset_canister", "uri") if metadata.get(k)]
        if len(present) > 1:
            raise ValidationError(
                "metadata.location",
                f"only one of ipfs_location, asset_canister, uri may be set (got {', '.join(present)})",
            )
        if not present:
            return LocationType.NONE, None

        key = present[0]
        value = metadata[key]
        if not isinstance(value, str):
            raise ValidationError(f"metadata.{key}", "must be a string", value)

        if key == "ipfs_location":
            return LocationType.IPFS, MetadataVal.blob(parse_cid(value))

        if key == "asset_canister":
            try:
                Principal.from_text(value)
            except ValueError as ex:
                raise ValidationError("metadata.asset_canister", str(ex), value) from ex
            return LocationType.ASSET_CANISTER, MetadataVal.text(value)

        parsed = urlparse(value)
        if not parsed.scheme or not parsed.netloc:
            raise ValidationError("metadata.uri", "must be an absolute URI", value)
        if not metadata.get("sha2") and not metadata.get("sha2_auto"):
            raise ValidationError("metadata.uri", "a uri requires sha2 or sha2_auto")
        return LocationType.URI, MetadataVal.text(value)

    def _content(
        self,
        metadata: Mapping[str, Any],
        location_type: LocationType,
    ) -> Tuple[bytes, Optional[pathlib.Path]]:
        file_ref = metadata.get("file")
        if not file_ref:
            if location_type == LocationType.NONE:
                raise ValidationError(
                    "metadata.file",
                    "required unless ipfs_location, asset_canister or uri is set",
                )
            return b"", None

        path = pathlib.Path(str(file_ref))
        if not path.is_absolute() and self.base_dir is not None:
            path = self.base_dir / path
        try:
            return self._load_content(path), path
        except (OSError, ValueError) as ex:
            raise ValidationError("metadata.file", f"cannot read {path}: {ex}", str(file_ref)) from ex

    @staticmethod
    def _content_hash(
        metadata: Mapping[str, Any],
        location_type: LocationType,
        data: bytes,
        content_path: Optional[pathlib.Path],
    ) -> Optional[bytes]:
        sha2 = metadata.get("sha2")
        sha2_auto = bool(metadata.get("sha2_auto"))
        if sha2 and sha2_auto:
            raise ValidationError("metadata.sha2_auto", "conflicts with sha2")
        if sha2:
            if not isinstance(sha2, str) or not _HEX64_PATTERN.match(sha2):
                raise ValidationError("metadata.sha2", "must be 64 hex characters", sha2)
            return bytes.fromhex(sha2)
        if sha2_auto:
            if content_path is None:
                raise ValidationError("metadata.sha2_auto", "requires file")
            return hashlib.sha256(data).digest()
        return None

    @staticmethod
    def _content_type(metadata: Mapping[str, Any], content_path: Optional[pathlib.Path]) -> str:
        mime_type = metadata.get("mime_type")
        if mime_type is not None:
            if not isinstance(mime_type, str) or "/" not in mime_type:
                raise ValidationError("metadata.mime_type", "must look like type/subtype", mime_type)
            return mime_type
        if content_path is None:
            raise ValidationError("metadata.mime_type", "required unless file is set")
        guessed, _ = mimetypes.guess_type(str(content_path))
        return guessed or DEFAULT_CONTENT_TYPE

    @staticmethod
    def _attributes(attributes: Any) -> List[Tuple[str, MetadataVal]]:
        if attributes is None:
            return []
        if not isinstance(attributes, Mapping):
            raise ValidationError("metadata.attributes", "must be a mapping")

        out: List[Tuple[str, MetadataVal]] = []
        for key, raw in attributes.items():
            field_name = f"metadata.attributes.{key}"
            if not isinstance(key, str) or not key:
                raise ValidationError("metadata.attributes", "keys must be non-empty strings", key)
            if key in RESERVED_KEYS:
                raise ValidationError(field_name, "reserved metadata key")
            try:
                out.append((key, _attribute_value(raw)))
            except ValueError as ex:
                raise ValidationError(field_name, str(ex), raw) from ex
        return out


def _attribute_value(raw: Any) -> MetadataVal:
    if isinstance(raw, bool):
        raise ValueError("booleans are not supported; use nat8 0/1")
    if isinstance(raw, str):
        return MetadataVal.text(raw)
    if isinstance(raw, int):
        return MetadataVal(MetadataValKind.NAT, raw)
    if isinstance(raw, Mapping) and len(raw) == 1:
        (type_name, value), = raw.items()
        kind = _TYPED_ATTRIBUTE_KINDS.get(str(type_name))
        if kind is None:
            raise ValueError(f"unknown attribute type {type_name!r}")
        if kind == MetadataValKind.BLOB:
            try:
                value = base64.b64decode(str(value), validate=True)
            except (binascii.Error, ValueError) as ex:
                raise ValueError("blob attributes must be base64") from ex
        return MetadataVal(kind, value)
    raise ValueError(f"unsupported attribute value {raw!r}")


def parse_cid(cid: str) -> bytes:
    """Return the binary form of an IPFS CID (v0 base58btc or v1 base32)."""
    try:
        if cid.startswith("Qm") and len(cid) == 46:
            raw = b58decode(cid)
            if len(raw) != 34 or raw[:2] != b"\x12\x20":
                raise ValueError("not a sha2-256 multihash")
            return raw
        if cid.startswith("b") and len(cid) > 1:
            body = cid[1:].upper()
            raw = base64.b32decode(body + "=" * ((-len(body)) % 8))
            if not raw or raw[0] != 0x01:
                raise ValueError("unsupported CID version")
            return raw
    except (ValueError, binascii.Error) as ex:
        raise ValidationError("metadata.ipfs_location", f"invalid CID: {ex}", cid) from ex
    raise ValidationError("metadata.ipfs_location", "expected a CIDv0 (Qm...) or base32 CIDv1 (b...)", cid)


__all__ = [
    "MetadataPurpose",
    "MetadataValKind",
    "MetadataVal",
    "MetadataPart",
    "LocationType",
    "MintRequest",
    "MintRequestBuilder",
    "idempotency_key",
    "parse_cid",
    "MINT_METHOD",
]

"""Textual principal codec.

Principals identify both token owners and canisters on the ledger network.
The textual form is the lowercase, unpadded base32 encoding of
`crc32(raw) || raw`, split into dash-separated groups of five characters:

    aaaaa-aa                  (management canister, empty raw bytes)
    2vxsx-fae                 (anonymous principal, raw = 0x04)
    rrkah-fqaaa-aaaaa-aaaaq-cai

Self-authenticating principals are derived from a DER-encoded public key as
`sha224(der) || 0x02`.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import zlib
from dataclasses import dataclass

MAX_PRINCIPAL_BYTES = 29
SELF_AUTHENTICATING_SUFFIX = 0x02
ANONYMOUS_SUFFIX = 0x04


@dataclass(frozen=True)
class Principal:
    """An opaque principal identifier."""
    raw: bytes

    def __post_init__(self):
        if len(self.raw) > MAX_PRINCIPAL_BYTES:
            raise ValueError(
                f"principal must be at most {MAX_PRINCIPAL_BYTES} bytes, got {len(self.raw)}"
            )

    @classmethod
    def from_text(cls, text: str) -> "Principal":
        """Parse and checksum-verify a textual principal."""
        if not isinstance(text, str) or not text:
            raise ValueError("principal text must be a non-empty string")
        if text != text.lower():
            raise ValueError("principal text must be lowercase")

        compact = text.replace("-", "").upper()
        compact += "=" * ((-len(compact)) % 8)
        try:
            decoded = base64.b32decode(compact)
        except (binascii.Error, ValueError) as ex:
            raise ValueError(f"principal is not valid base32: {text!r}") from ex

        if len(decoded) < 4:
            raise ValueError(f"principal too short: {text!r}")

        checksum, raw = decoded[:4], decoded[4:]
        if int.from_bytes(checksum, "big") != zlib.crc32(raw):
            raise ValueError(f"principal checksum mismatch: {text!r}")

        principal = cls(raw)
        if principal.to_text() != text:
            raise ValueError(f"principal is not in canonical form: {text!r}")
        return principal

    @classmethod
    def self_authenticating(cls, der_public_key: bytes) -> "Principal":
        """Derive the principal of a DER-encoded public key."""
        digest = hashlib.sha224(der_public_key).digest()
        return cls(digest + bytes([SELF_AUTHENTICATING_SUFFIX]))

    @classmethod
    def anonymous(cls) -> "Principal":
        return cls(bytes([ANONYMOUS_SUFFIX]))

    @classmethod
    def management_canister(cls) -> "Principal":
        return cls(b"")

    def to_text(self) -> str:
        checksum = zlib.crc32(self.raw).to_bytes(4, "big")
        encoded = base64.b32encode(checksum + self.raw).decode("ascii").rstrip("=").lower()
        return "-".join(encoded[i:i + 5] for i in range(0, len(encoded), 5))

    @property
    def is_anonymous(self) -> bool:
        return self.raw == bytes([ANONYMOUS_SUFFIX])

    def __str__(self) -> str:
        return self.to_text()


def is_valid_principal(text: str) -> bool:
    """Return True if `text` is a well-formed textual principal."""
    try:
        Principal.from_text(text)
    except ValueError:
        return False
    return True


__all__ = [
    "Principal",
    "is_valid_principal",
    "MAX_PRINCIPAL_BYTES",
]

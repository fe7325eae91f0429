"""Operator identity: credential loading and request signing.

Profile / invariants:
- Ed25519 keys only (PKCS#8 PEM as written by dfx, or an OKP JWK)
- The operator principal is the self-authenticating principal of the
  DER-encoded (SubjectPublicKeyInfo) public key
- The request id is the SHA-256 of the canonical JSON bytes of the envelope
  content; the signature covers `b"\\x0aic-request" || request_id`

The signer holds nothing but key material, so a single instance is shared by
every worker in a run.
"""

from __future__ import annotations

import json
import os
import pathlib
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from minter.core import b64url_decode, b64url_encode, canonical_json_bytes, sha256_bytes
from minter.errors import CredentialError, SigningError
from minter.principal import Principal

REQUEST_DOMAIN_SEPARATOR = b"\x0aic-request"


# ---------------------------------------------------------------------------
# Signed envelope
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SignedEnvelope:
    """A signed call, opaque to everything except the transport."""
    content: Dict[str, Any]
    request_id: str
    sender_pubkey: str
    sender_sig: str

    @property
    def canister_id(self) -> str:
        return str(self.content.get("canister_id", ""))

    @property
    def method_name(self) -> str:
        return str(self.content.get("method_name", ""))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "request_id": self.request_id,
            "sender_pubkey": self.sender_pubkey,
            "sender_sig": self.sender_sig,
        }


def _signing_message(request_id_hex: str) -> bytes:
    return REQUEST_DOMAIN_SEPARATOR + bytes.fromhex(request_id_hex)


# ---------------------------------------------------------------------------
# Signer
# ---------------------------------------------------------------------------


class IdentitySigner:
    """Produces signed envelopes for outgoing calls."""

    def __init__(self, private_key: Ed25519PrivateKey):
        if not isinstance(private_key, Ed25519PrivateKey):
            raise SigningError("identity key must be an Ed25519 private key")
        self._private_key = private_key
        try:
            self._der_public_key = private_key.public_key().public_bytes(
                encoding=serialization.Encoding.DER,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as ex:
            raise SigningError(f"unusable identity key: {ex}") from ex
        self._principal = Principal.self_authenticating(self._der_public_key)

    @property
    def principal(self) -> Principal:
        """The operator's self-authenticating principal."""
        return self._principal

    @property
    def der_public_key(self) -> bytes:
        return self._der_public_key

    def sign_content(self, content: Dict[str, Any]) -> SignedEnvelope:
        """Sign an arbitrary call content document."""
        try:
            request_id = sha256_bytes(canonical_json_bytes(content))
            signature = self._private_key.sign(_signing_message(request_id))
        except (ValueError, TypeError) as ex:
            raise SigningError(f"failed to sign request: {ex}") from ex

        return SignedEnvelope(
            content=content,
            request_id=request_id,
            sender_pubkey=b64url_encode(self._der_public_key),
            sender_sig=b64url_encode(signature),
        )

    def sign(self, request: Any) -> SignedEnvelope:
        """Sign a MintRequest (anything exposing `to_content()`)."""
        content = dict(request.to_content())
        content["sender"] = self._principal.to_text()
        return self.sign_content(content)

    def self_check(self) -> None:
        """Sign and verify a test message, raising SigningError if the key is unusable."""
        sample = {"check": "minter-self-check", "sender": self._principal.to_text()}
        envelope = self.sign_content(sample)
        if not verify_envelope(envelope):
            raise SigningError("identity key failed signature self-check")


def verify_envelope(envelope: SignedEnvelope) -> bool:
    """Verify the envelope signature against its embedded public key."""
    try:
        der = b64url_decode(envelope.sender_pubkey)
        public_key = serialization.load_der_public_key(der)
        if not isinstance(public_key, Ed25519PublicKey):
            return False
        expected_id = sha256_bytes(canonical_json_bytes(envelope.content))
        if expected_id != envelope.request_id:
            return False
        public_key.verify(b64url_decode(envelope.sender_sig), _signing_message(expected_id))
    except (InvalidSignature, ValueError, TypeError, UnsupportedAlgorithm):
        return False
    return True


# ---------------------------------------------------------------------------
# Credential loading
# ---------------------------------------------------------------------------


def load_ed25519_private_key_from_jwk(jwk: Dict[str, Any]) -> Ed25519PrivateKey:
    """Load an Ed25519 private key from an OKP JWK."""

    if jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519":
        raise CredentialError("Only OKP/Ed25519 JWK is supported")

    d = jwk.get("d")
    if not d:
        raise CredentialError("JWK must include 'd' (private key)")
    try:
        return Ed25519PrivateKey.from_private_bytes(b64url_decode(str(d)))
    except ValueError as ex:
        raise CredentialError(f"invalid Ed25519 JWK: {ex}") from ex


def load_identity(path: Union[str, pathlib.Path]) -> IdentitySigner:
    """Load an operator identity from a PEM or JWK file.

    Accepted file shapes:

    1) PKCS#8 PEM holding an Ed25519 key (dfx `identity.pem`)
    2) A private OKP JWK: {"kty":"OKP","crv":"Ed25519","x":"...","d":"..."}
    3) A wrapper object: {"private_jwk": <jwk>}
    """

    p = pathlib.Path(path)
    try:
        data = p.read_bytes()
    except OSError as ex:
        raise CredentialError(f"cannot read identity file {p}: {ex}") from ex

    if data.lstrip().startswith(b"-----BEGIN"):
        try:
            key = serialization.load_pem_private_key(data, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as ex:
            raise CredentialError(f"cannot parse PEM identity {p}: {ex}") from ex
        if not isinstance(key, Ed25519PrivateKey):
            raise CredentialError(f"only Ed25519 identities are supported: {p}")
    else:
        try:
            key_obj = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as ex:
            raise CredentialError(f"identity file is neither PEM nor JSON: {p}") from ex
        if isinstance(key_obj, dict) and ("private_jwk" in key_obj or "jwk" in key_obj):
            inner = key_obj.get("private_jwk") or key_obj.get("jwk")
            if not isinstance(inner, dict):
                raise CredentialError("key file wrapper must contain a JWK object under 'private_jwk' or 'jwk'")
            key_obj = inner
        if not isinstance(key_obj, dict):
            raise CredentialError("key file must be a JSON object")
        key = load_ed25519_private_key_from_jwk(key_obj)

    try:
        return IdentitySigner(key)
    except SigningError as ex:
        raise CredentialError(str(ex)) from ex


def default_identity_path(home: Optional[Union[str, pathlib.Path]] = None) -> pathlib.Path:
    """Resolve the dfx default identity PEM under the user's home directory."""
    user_home = pathlib.Path(home) if home is not None else pathlib.Path.home()
    index = user_home / ".config" / "dfx" / "identity.json"
    try:
        default = json.loads(index.read_text(encoding="utf-8"))["default"]
    except (OSError, ValueError, KeyError, TypeError) as ex:
        raise CredentialError(
            "Configure an identity in `dfx` or provide an --identity flag"
        ) from ex
    return user_home / ".config" / "dfx" / "identity" / str(default) / "identity.pem"


def generate_identity_pem(path: Union[str, pathlib.Path]) -> IdentitySigner:
    """Generate a new Ed25519 identity and write it as PKCS#8 PEM (mode 0600)."""
    p = pathlib.Path(path)
    if p.exists():
        raise CredentialError(f"refusing to overwrite existing identity: {p}")

    key = Ed25519PrivateKey.generate()
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    p.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(p), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(pem)
    return IdentitySigner(key)


__all__ = [
    "SignedEnvelope",
    "IdentitySigner",
    "verify_envelope",
    "load_identity",
    "load_ed25519_private_key_from_jwk",
    "default_identity_path",
    "generate_identity_pem",
]

"""
Call Transport

Sends one signed call to the ledger service and classifies the result into
a closed `CallOutcome` variant. Classification happens exactly once, here;
everything downstream matches on the variant.

    ┌──────────────────────────────┬──────────────────────────────┐
    │ Observation                  │ Outcome                      │
    ├──────────────────────────────┼──────────────────────────────┤
    │ timeout / connect / I/O      │ TransportFailure             │
    │ HTTP 429, 502, 503, 504      │ TransportFailure             │
    │ HTTP 401, 403                │ AuthFailure                  │
    │ {"Err": "Unauthorized"}      │ AuthFailure                  │
    │ {"reject_code": 3, ...}      │ RemoteRejected (no minting)  │
    │ other reject / Err / 4xx/5xx │ RemoteRejected               │
    │ {"Ok": {"id", "token_id"}}   │ Success                      │
    │ 2xx, undecodable body        │ RemoteRejected               │
    └──────────────────────────────┴──────────────────────────────┘

The transport never retries; retries belong to the orchestrator.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Protocol, Union

import httpx

from minter.errors import InterfaceError
from minter.identity import SignedEnvelope
from minter.observability import MintLayer, get_logger

logger = get_logger("transport", MintLayer.TRANSPORT)

NETWORK_ALIASES = {
    "local": "http://localhost:4943",
    "ic": "https://ic0.app",
}

RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})
AUTH_STATUS_CODES = frozenset({401, 403})

# Replica reject code for "destination invalid" (unknown canister or method).
REJECT_DESTINATION_INVALID = 3

INTERFACE_QUERY_METHOD = "supportedInterfacesDip721"


# =============================================================================
# CALL OUTCOME
# =============================================================================

class OutcomeKind(Enum):
    """Tag of a CallOutcome."""
    SUCCESS = "success"
    REMOTE_REJECTED = "remote_rejected"
    TRANSPORT_FAILURE = "transport_failure"
    AUTH_FAILURE = "auth_failure"


@dataclass(frozen=True)
class Success:
    """The ledger minted the token."""
    token_id: int
    transaction_id: Optional[int] = None
    kind: ClassVar[OutcomeKind] = OutcomeKind.SUCCESS

    @property
    def reason(self) -> str:
        return f"minted token {self.token_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "token_id": self.token_id,
            "transaction_id": self.transaction_id,
        }


@dataclass(frozen=True)
class RemoteRejected:
    """The ledger refused the mint."""
    reason: str
    reject_code: Optional[int] = None
    kind: ClassVar[OutcomeKind] = OutcomeKind.REMOTE_REJECTED

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "reason": self.reason, "reject_code": self.reject_code}


@dataclass(frozen=True)
class TransportFailure:
    """No usable response was obtained."""
    cause: str
    kind: ClassVar[OutcomeKind] = OutcomeKind.TRANSPORT_FAILURE

    @property
    def reason(self) -> str:
        return self.cause

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "reason": self.cause}


@dataclass(frozen=True)
class AuthFailure:
    """The caller's signature or identity was not authorized."""
    reason: str = "identity not authorized"
    kind: ClassVar[OutcomeKind] = OutcomeKind.AUTH_FAILURE

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "reason": self.reason}


CallOutcome = Union[Success, RemoteRejected, TransportFailure, AuthFailure]


class InterfaceId(Enum):
    """DIP-721 optional interfaces a canister may advertise."""
    APPROVAL = "Approval"
    TRANSACTION_HISTORY = "TransactionHistory"
    MINT = "Mint"
    BURN = "Burn"
    TRANSFER_NOTIFICATION = "TransferNotification"


# =============================================================================
# TRANSPORT INTERFACE
# =============================================================================

class CallTransport(Protocol):
    """
    Protocol for ledger transports.

    Implementations must be safe to call from several worker threads.
    """

    def send(self, envelope: SignedEnvelope, timeout: Optional[float] = None) -> CallOutcome:
        """Send one signed call and classify the result."""
        ...

    def supported_interfaces(
        self,
        canister_id: str,
        timeout: Optional[float] = None,
    ) -> List[InterfaceId]:
        """Query the interfaces advertised by a canister."""
        ...


# =============================================================================
# REPLY CLASSIFICATION
# =============================================================================

def _err_name(err: Any) -> str:
    if isinstance(err, str):
        return err
    if isinstance(err, dict) and len(err) == 1:
        return str(next(iter(err)))
    return repr(err)


def classify_reply(body: Any, canister_id: str = "") -> CallOutcome:
    """Classify a decoded reply document."""
    if not isinstance(body, dict):
        return RemoteRejected(f"malformed reply: {body!r:.200}")

    if "reject_code" in body:
        try:
            code: Optional[int] = int(body["reject_code"])
        except (TypeError, ValueError):
            code = None
        message = str(body.get("reject_message") or "rejected")
        if code == REJECT_DESTINATION_INVALID:
            return RemoteRejected(
                f"canister {canister_id} does not support minting: {message}", code
            )
        return RemoteRejected(message, code)

    if "Err" in body:
        name = _err_name(body["Err"])
        if name == "Unauthorized":
            return AuthFailure("You aren't authorized as a custodian of that canister.")
        return RemoteRejected(f"mint error: {name}")

    if "Ok" in body:
        ok = body["Ok"]
        try:
            token_id = int(ok["token_id"])
            transaction_id = int(ok["id"]) if ok.get("id") is not None else None
        except (TypeError, ValueError, KeyError):
            return RemoteRejected(f"malformed reply: {body!r:.200}")
        return Success(token_id=token_id, transaction_id=transaction_id)

    return RemoteRejected(f"malformed reply: {body!r:.200}")


def classify_response(response: httpx.Response, canister_id: str = "") -> CallOutcome:
    """Classify an HTTP response from the ledger gateway."""
    status = response.status_code
    if status in AUTH_STATUS_CODES:
        return AuthFailure(f"HTTP {status}: {response.text[:200]}")
    if status in RETRYABLE_STATUS_CODES:
        return TransportFailure(f"HTTP {status} from ledger gateway")

    try:
        body = response.json()
    except ValueError:
        body = None

    if status >= 400:
        if isinstance(body, dict) and "reject_code" in body:
            return classify_reply(body, canister_id)
        return RemoteRejected(f"HTTP {status}: {response.text[:200]}")

    return classify_reply(body, canister_id)


# =============================================================================
# HTTP TRANSPORT
# =============================================================================

def resolve_network(network: str) -> str:
    """Map `local` / `ic` to their gateway URLs; anything else is a URL."""
    url = NETWORK_ALIASES.get(network, network)
    parsed = httpx.URL(url)
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ValueError(f"network must be 'ic', 'local', or an http(s) URL: {network!r}")
    return url.rstrip("/")


class HttpCallTransport:
    """
    JSON-over-HTTP transport for a ledger gateway.

    Envelopes are posted as JSON, so `network` must point at a gateway that
    accepts JSON call bodies (a local replica proxy or a self-hosted
    relay). The `ic` alias names the public boundary nodes, which expect
    CBOR bodies; reach mainnet by passing the relay URL instead.

    Example:
        with HttpCallTransport("local", timeout=30.0) as transport:
            outcome = transport.send(envelope)
    """

    def __init__(
        self,
        network: str,
        *,
        timeout: float = 30.0,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.base_url = resolve_network(network)
        self.timeout = timeout
        self._client = http_client or httpx.Client(timeout=timeout)
        self._owns_client = http_client is None

    def _url(self, canister_id: str, kind: str, method: str) -> str:
        return f"{self.base_url}/api/v2/canister/{canister_id}/{kind}/{method}"

    def send(self, envelope: SignedEnvelope, timeout: Optional[float] = None) -> CallOutcome:
        effective_timeout = timeout if timeout is not None else self.timeout
        url = self._url(envelope.canister_id, "call", envelope.method_name)
        start = time.monotonic()
        try:
            response = self._client.post(url, json=envelope.to_dict(), timeout=effective_timeout)
        except httpx.TimeoutException as ex:
            outcome: CallOutcome = TransportFailure(
                f"timed out after {effective_timeout}s: {type(ex).__name__}"
            )
        except httpx.DecodingError as ex:
            outcome = RemoteRejected(f"undecodable reply: {ex}")
        except httpx.RequestError as ex:
            outcome = TransportFailure(f"{type(ex).__name__}: {ex}")
        else:
            outcome = classify_response(response, envelope.canister_id)

        logger.operation(
            envelope.method_name,
            (time.monotonic() - start) * 1000,
            success=outcome.kind == OutcomeKind.SUCCESS,
            request_id=envelope.request_id,
            outcome=outcome.kind.value,
        )
        return outcome

    def supported_interfaces(
        self,
        canister_id: str,
        timeout: Optional[float] = None,
    ) -> List[InterfaceId]:
        effective_timeout = timeout if timeout is not None else self.timeout
        url = self._url(canister_id, "query", INTERFACE_QUERY_METHOD)
        content = {
            "request_type": "query",
            "canister_id": canister_id,
            "method_name": INTERFACE_QUERY_METHOD,
            "arg": {},
        }
        try:
            response = self._client.post(url, json={"content": content}, timeout=effective_timeout)
        except httpx.HTTPError as ex:
            raise InterfaceError(f"could not query {INTERFACE_QUERY_METHOD} on {canister_id}: {ex}") from ex

        try:
            body = response.json()
        except ValueError as ex:
            raise InterfaceError(f"malformed {INTERFACE_QUERY_METHOD} reply from {canister_id}") from ex

        if isinstance(body, dict) and "reject_code" in body:
            if str(body.get("reject_code")) == str(REJECT_DESTINATION_INVALID):
                raise InterfaceError(
                    f"canister {canister_id} does not appear to be a DIP-721 NFT canister"
                )
            raise InterfaceError(
                f"{INTERFACE_QUERY_METHOD} rejected by {canister_id}: {body.get('reject_message', '')}"
            )
        if response.status_code >= 400:
            raise InterfaceError(f"{INTERFACE_QUERY_METHOD} failed with HTTP {response.status_code}")

        raw = body.get("reply", body) if isinstance(body, dict) else body
        if not isinstance(raw, list):
            raise InterfaceError(f"malformed {INTERFACE_QUERY_METHOD} reply from {canister_id}")

        interfaces: List[InterfaceId] = []
        for item in raw:
            name = _err_name(item)
            try:
                interfaces.append(InterfaceId(name))
            except ValueError:
                logger.debug("Ignoring unknown interface", canister_id=canister_id, interface=name)
        return interfaces

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpCallTransport":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def check_mint_support(
    transport: CallTransport,
    canister_id: str,
    timeout: Optional[float] = None,
) -> List[InterfaceId]:
    """Raise InterfaceError unless the canister advertises the Mint interface."""
    interfaces = transport.supported_interfaces(canister_id, timeout=timeout)
    if InterfaceId.MINT not in interfaces:
        raise InterfaceError(f"canister {canister_id} does not support minting")
    return interfaces


__all__ = [
    "OutcomeKind",
    "Success",
    "RemoteRejected",
    "TransportFailure",
    "AuthFailure",
    "CallOutcome",
    "InterfaceId",
    "CallTransport",
    "HttpCallTransport",
    "classify_reply",
    "classify_response",
    "resolve_network",
    "check_mint_support",
]

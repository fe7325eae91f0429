"""
minter: DIP-721 batch minting

Mints one NFT per manifest entry on a DIP-721 ledger canister, with bounded
concurrency, retry of transient failures, and a durable progress ledger so
an interrupted batch can be resumed without minting anything twice.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │  cli.py            mint / status / keygen / principal / config          │
    │                                                                          │
    │  orchestrator.py   scheduler, per-entry state machine, abort, cancel    │
    │  retry.py          backoff decisions per CallOutcome                    │
    │  ledger.py         atomic JSON progress ledger                          │
    │                                                                          │
    │  manifest.py       manifest loading and schema validation               │
    │  builder.py        entry → MintRequest (metadata, location, hashes)     │
    │  identity.py       Ed25519 identity loading and request signing         │
    │  transport.py      HTTP calls and CallOutcome classification            │
    │                                                                          │
    │  principal.py      textual principal codec                              │
    │  config.py         layered configuration                                │
    │  observability.py  structured logging and audit chain                   │
    └─────────────────────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""

__version__ = "0.1.0"


# Lazy imports keep `python -m minter --help` fast.
def __getattr__(name):
    """Lazy import minter modules on first access."""

    if name in ("BatchOrchestrator", "BatchSummary", "EntryState", "EntryStatus",
                "RunOptions", "SystemClock", "plan_batch"):
        from minter import orchestrator
        return getattr(orchestrator, name)

    if name in ("Manifest", "ManifestEntry", "load_manifest", "parse_manifest"):
        from minter import manifest
        return getattr(manifest, name)

    if name in ("MintRequest", "MintRequestBuilder"):
        from minter import builder
        return getattr(builder, name)

    if name in ("IdentitySigner", "SignedEnvelope", "load_identity"):
        from minter import identity
        return getattr(identity, name)

    if name in ("CallOutcome", "Success", "RemoteRejected", "TransportFailure",
                "AuthFailure", "HttpCallTransport"):
        from minter import transport
        return getattr(transport, name)

    if name in ("ProgressLedger", "ProgressRecord"):
        from minter import ledger
        return getattr(ledger, name)

    if name in ("BackoffPolicy",):
        from minter import retry
        return getattr(retry, name)

    if name in ("Principal",):
        from minter import principal
        return getattr(principal, name)

    raise AttributeError(f"module 'minter' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Orchestrator
    "BatchOrchestrator",
    "BatchSummary",
    "EntryState",
    "EntryStatus",
    "RunOptions",
    "SystemClock",
    "plan_batch",
    # Inputs
    "Manifest",
    "ManifestEntry",
    "load_manifest",
    "parse_manifest",
    "MintRequest",
    "MintRequestBuilder",
    "IdentitySigner",
    "SignedEnvelope",
    "load_identity",
    # Transport
    "CallOutcome",
    "Success",
    "RemoteRejected",
    "TransportFailure",
    "AuthFailure",
    "HttpCallTransport",
    # Persistence and policy
    "ProgressLedger",
    "ProgressRecord",
    "BackoffPolicy",
    "Principal",
]

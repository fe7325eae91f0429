"""
Minter error taxonomy.

Entry-scoped failures (validation, remote rejection, transport failure) are
recorded on the entry's state and never cross the scheduler as exceptions.
The classes here are raised for local pre-flight failures and for the
run-level conditions that stop a batch before or during dispatch.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import Any


class MinterError(Exception):
    """Base class for all minter errors."""
    pass


class ValidationError(MinterError):
    """A manifest entry violates a constraint known to the engine."""

    def __init__(self, field: str, reason: str, value: Any = None):
        self.field = field
        self.reason = reason
        self.value = value
        super().__init__(f"{field}: {reason}")


class SigningError(MinterError):
    """Key material is corrupt or unusable; no request can be signed."""
    pass


class CredentialError(MinterError):
    """The operator identity could not be loaded."""
    pass


class ManifestError(MinterError):
    """The manifest is unreadable or structurally invalid."""
    pass


class LedgerError(MinterError):
    """The progress ledger cannot be opened or written."""
    pass


class ConfigError(MinterError):
    """Configuration error."""
    pass


class InterfaceError(MinterError):
    """The target canister does not support DIP-721 minting."""
    pass


__all__ = [
    "MinterError",
    "ValidationError",
    "SigningError",
    "CredentialError",
    "ManifestError",
    "LedgerError",
    "ConfigError",
    "InterfaceError",
]

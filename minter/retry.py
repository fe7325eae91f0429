"""
Retry/backoff policy.

Decides, from an entry's attempt count and its latest CallOutcome, whether
to try again and after how long. Only TransportFailure is ever retried.

    TransportFailure  → Retry(delay) while attempts < max_attempts
    RemoteRejected    → Abort(ENTRY)
    AuthFailure       → Abort(BATCH)
    Success           → Abort(ENTRY)

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from minter.transport import CallOutcome, OutcomeKind


class AbortScope(Enum):
    """How far a non-retry decision reaches."""
    ENTRY = "entry"
    BATCH = "batch"


@dataclass(frozen=True)
class Retry:
    """Try the entry again after `delay` seconds."""
    delay: float


@dataclass(frozen=True)
class Abort:
    """Stop retrying; `scope` says whether the whole batch stops too."""
    scope: AbortScope
    reason: str = ""


Decision = Union[Retry, Abort]


class BackoffPolicy:
    """
    Exponential backoff with jitter, capped at `max_backoff`.

    Pure apart from the injected random source, so tests can pin the jitter:

        policy = BackoffPolicy(max_attempts=3, rng=random.Random(7))
        policy.decide(1, TransportFailure("timeout"))   # Retry(delay=...)
    """

    def __init__(
        self,
        max_attempts: int = 5,
        base_backoff: float = 0.5,
        max_backoff: float = 30.0,
        multiplier: float = 2.0,
        jitter_factor: float = 0.5,
        rng: Optional[random.Random] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if base_backoff < 0 or max_backoff < 0:
            raise ValueError("backoff durations must be non-negative")
        if multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if not 0.0 <= jitter_factor <= 1.0:
            raise ValueError("jitter_factor must be between 0 and 1")
        self.max_attempts = max_attempts
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff
        self.multiplier = multiplier
        self.jitter_factor = jitter_factor
        self._rng = rng or random.Random()

    @classmethod
    def from_options(cls, options, rng: Optional[random.Random] = None) -> "BackoffPolicy":
        """Build from RunOptions (or anything with the same attributes)."""
        return cls(
            max_attempts=options.max_attempts,
            base_backoff=options.base_backoff,
            max_backoff=options.max_backoff,
            multiplier=options.backoff_multiplier,
            jitter_factor=options.jitter_factor,
            rng=rng,
        )

    def delay_for(self, attempt_count: int) -> float:
        """Backoff before the attempt following `attempt_count`."""
        exp_delay = self.base_backoff * (self.multiplier ** (max(attempt_count, 1) - 1))
        jitter = self._rng.uniform(0, self.jitter_factor * exp_delay) if self.jitter_factor else 0.0
        return min(exp_delay + jitter, self.max_backoff)

    def decide(self, attempt_count: int, outcome: CallOutcome) -> Decision:
        kind = outcome.kind
        if kind == OutcomeKind.TRANSPORT_FAILURE:
            if attempt_count < self.max_attempts:
                return Retry(self.delay_for(attempt_count))
            return Abort(AbortScope.ENTRY, f"gave up after {attempt_count} attempts")
        if kind == OutcomeKind.AUTH_FAILURE:
            return Abort(AbortScope.BATCH, outcome.reason)
        return Abort(AbortScope.ENTRY, outcome.reason)


__all__ = [
    "AbortScope",
    "Retry",
    "Abort",
    "Decision",
    "BackoffPolicy",
]

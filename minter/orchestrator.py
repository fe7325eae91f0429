"""
Batch Orchestrator

Drives every manifest entry to a terminal state with at most K mint calls in
flight. Retries are explicit state, not sleeping loops:

    PENDING ──dispatch──▶ IN_FLIGHT ──Success──────────▶ SUCCEEDED
       ▲                     │
       │                     ├──Retry(delay)──▶ AWAITING_RETRY
       │                     │                       │
       └────────due─────────────────────────────────┘
                             │
                             └──Abort / exhausted──▶ FAILED_TERMINAL

The scheduler runs on the calling thread. Each tick it promotes due retries,
fills free worker slots from PENDING in manifest order, then waits for the
first completion (or the tick) and applies outcomes. Only the scheduler
mutates EntryState; workers build, sign and send, and hand back a result.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import heapq
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field
from enum import Enum
from random import Random
from typing import Any, Dict, List, Optional, Protocol, Tuple

from minter.builder import MintRequestBuilder
from minter.config import MinterConfig
from minter.core import now_rfc3339
from minter.errors import LedgerError, ManifestError, MinterError, SigningError, ValidationError
from minter.identity import IdentitySigner
from minter.ledger import (
    STATUS_FAILED,
    STATUS_SUCCEEDED,
    ProgressLedger,
    ProgressRecord,
    default_ledger_path,
)
from minter.manifest import Manifest, ManifestEntry
from minter.observability import (
    AuditLogger,
    MintLayer,
    entry_id_var,
    generate_run_id,
    get_logger,
    run_id_var,
)
from minter.retry import Abort, AbortScope, BackoffPolicy, Retry
from minter.transport import CallOutcome, CallTransport, Success, check_mint_support

logger = get_logger("orchestrator", MintLayer.ORCHESTRATOR)

VALIDATION_FAILURE = "validation_error"
SIGNING_FAILURE = "signing_error"
INTERNAL_FAILURE = "internal_error"


# =============================================================================
# ENTRY STATE
# =============================================================================

class EntryStatus(Enum):
    """Per-entry lifecycle state."""
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    AWAITING_RETRY = "awaiting_retry"
    SUCCEEDED = "succeeded"
    FAILED_TERMINAL = "failed_terminal"
    SKIPPED = "skipped"

    def is_terminal(self) -> bool:
        return self in (
            EntryStatus.SUCCEEDED,
            EntryStatus.FAILED_TERMINAL,
            EntryStatus.SKIPPED,
        )


@dataclass
class EntryState:
    """Mutable progress of one entry within a run."""
    entry_id: str
    attempts: int = 0
    status: EntryStatus = EntryStatus.PENDING
    last_outcome: Optional[CallOutcome] = None
    failure_kind: Optional[str] = None
    failure_reason: Optional[str] = None
    token_id: Optional[int] = None
    transaction_id: Optional[int] = None
    next_attempt_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "token_id": self.token_id,
            "transaction_id": self.transaction_id,
            "failure_kind": self.failure_kind,
            "failure_reason": self.failure_reason,
            "last_outcome": self.last_outcome.to_dict() if self.last_outcome else None,
        }


@dataclass(frozen=True)
class BatchSummary:
    """Result of a run, one EntryState per manifest entry in manifest order."""
    run_id: str
    manifest_id: str
    entries: Tuple[EntryState, ...]
    started_at: str
    finished_at: str
    aborted_reason: Optional[str] = None
    cancelled: bool = False

    def _count(self, *statuses: EntryStatus) -> int:
        return sum(1 for e in self.entries if e.status in statuses)

    @property
    def succeeded(self) -> int:
        return self._count(EntryStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return self._count(EntryStatus.FAILED_TERMINAL)

    @property
    def skipped(self) -> int:
        return self._count(EntryStatus.SKIPPED)

    @property
    def pending(self) -> int:
        return self._count(EntryStatus.PENDING, EntryStatus.AWAITING_RETRY, EntryStatus.IN_FLIGHT)

    @property
    def ok(self) -> bool:
        return self.failed == 0 and self.pending == 0 and self.aborted_reason is None

    def entry(self, entry_id: str) -> EntryState:
        for state in self.entries:
            if state.entry_id == entry_id:
                return state
        raise KeyError(entry_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "manifest_id": self.manifest_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "pending": self.pending,
            "aborted_reason": self.aborted_reason,
            "cancelled": self.cancelled,
            "entries": [e.to_dict() for e in self.entries],
        }


# =============================================================================
# RUN OPTIONS
# =============================================================================

@dataclass(frozen=True)
class RunOptions:
    """Knobs for one run."""
    concurrency: int = 4
    max_attempts: int = 5
    base_backoff: float = 0.5
    max_backoff: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.5
    per_call_timeout: float = 30.0
    resume: bool = True
    tick_seconds: float = 0.05
    preflight: bool = True

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_backoff < 0 or self.max_backoff < 0:
            raise ValueError("backoff durations must be non-negative")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError("jitter_factor must be between 0 and 1")
        if self.per_call_timeout <= 0:
            raise ValueError("per_call_timeout must be positive")
        if self.tick_seconds <= 0:
            raise ValueError("tick_seconds must be positive")

    @classmethod
    def from_config(cls, config: MinterConfig, **overrides: Any) -> "RunOptions":
        """Snapshot configuration values; `None` overrides are ignored."""
        values = {
            "concurrency": config.orchestrator.concurrency.get(),
            "max_attempts": config.retry.max_attempts.get(),
            "base_backoff": config.retry.base_backoff.get(),
            "max_backoff": config.retry.max_backoff.get(),
            "backoff_multiplier": config.retry.backoff_multiplier.get(),
            "jitter_factor": config.retry.jitter_factor.get(),
            "per_call_timeout": config.transport.per_call_timeout.get(),
            "resume": config.orchestrator.resume.get(),
            "tick_seconds": config.orchestrator.tick_seconds.get(),
            "preflight": config.orchestrator.preflight.get(),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# CLOCK
# =============================================================================

class Clock(Protocol):
    """Time source for retry scheduling."""

    def now(self) -> float:
        ...

    def sleep(self, seconds: float, cancel_event: threading.Event) -> None:
        """Wait up to `seconds`, returning early once `cancel_event` is set."""
        ...


class SystemClock:
    """Monotonic wall clock."""

    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float, cancel_event: threading.Event) -> None:
        cancel_event.wait(max(seconds, 0.0))


# =============================================================================
# RUN CONTEXT
# =============================================================================

class InFlightCounter:
    """Counts transport calls currently in progress."""

    def __init__(self):
        self._lock = threading.Lock()
        self._current = 0
        self._max = 0

    def __enter__(self) -> "InFlightCounter":
        with self._lock:
            self._current += 1
            self._max = max(self._max, self._current)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        with self._lock:
            self._current -= 1

    @property
    def current(self) -> int:
        with self._lock:
            return self._current

    @property
    def max_observed(self) -> int:
        with self._lock:
            return self._max


@dataclass
class RunContext:
    """Everything a worker needs, built once per run and shared by reference."""
    run_id: str
    options: RunOptions
    signer: IdentitySigner
    builder: MintRequestBuilder
    transport: CallTransport
    ledger: ProgressLedger
    cancel_event: threading.Event = field(default_factory=threading.Event)
    in_flight: InFlightCounter = field(default_factory=InFlightCounter)


@dataclass
class _AttemptResult:
    entry_id: str
    outcome: Optional[CallOutcome] = None
    error: Optional[MinterError] = None
    unexpected: Optional[str] = None


def _unexpected(entry: ManifestEntry, stage: str, ex: Exception) -> _AttemptResult:
    logger.error(
        f"Unexpected error while {stage}",
        error_code=INTERNAL_FAILURE,
        exc_info=True,
        entry_id=entry.entry_id,
    )
    return _AttemptResult(entry.entry_id, unexpected=f"{type(ex).__name__}: {ex}")


def _attempt(ctx: RunContext, entry: ManifestEntry, attempt: int) -> _AttemptResult:
    """Worker body: build and sign a fresh request, then send it once."""
    entry_id_var.set(entry.entry_id)
    try:
        request = ctx.builder.build(entry, attempt=attempt)
        envelope = ctx.signer.sign(request)
    except (ValidationError, SigningError) as ex:
        return _AttemptResult(entry.entry_id, error=ex)
    except Exception as ex:
        return _unexpected(entry, "building the request", ex)

    with ctx.in_flight:
        try:
            outcome = ctx.transport.send(envelope, timeout=ctx.options.per_call_timeout)
        except Exception as ex:
            return _unexpected(entry, "sending the request", ex)
    return _AttemptResult(entry.entry_id, outcome=outcome)


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class BatchOrchestrator:
    """
    Runs one manifest to completion.

    Example:
        orchestrator = BatchOrchestrator(manifest, signer, transport, options=RunOptions(concurrency=8))
        summary = orchestrator.run()

    `cancel()` may be called from any thread (for instance a signal handler):
    dispatch stops, in-flight calls drain, and unfinished entries stay
    unrecorded so the next run picks them up.
    """

    def __init__(
        self,
        manifest: Manifest,
        signer: IdentitySigner,
        transport: CallTransport,
        options: Optional[RunOptions] = None,
        *,
        ledger: Optional[ProgressLedger] = None,
        canister_id: Optional[str] = None,
        builder: Optional[MintRequestBuilder] = None,
        policy: Optional[BackoffPolicy] = None,
        clock: Optional[Clock] = None,
        rng: Optional[Random] = None,
        run_id: Optional[str] = None,
    ):
        self.manifest = manifest
        self.options = options or RunOptions()
        self.clock: Clock = clock or SystemClock()
        self.policy = policy or BackoffPolicy.from_options(self.options, rng=rng)

        self.canister_id = canister_id or manifest.canister_id
        if builder is None:
            if not self.canister_id:
                raise ManifestError("no canister id: pass one or set canister_id in the manifest")
            builder = MintRequestBuilder(
                self.canister_id,
                signer.principal,
                manifest.manifest_id,
                base_dir=manifest.base_dir,
            )
        else:
            self.canister_id = builder.canister_id

        if ledger is None:
            if manifest.source is None:
                raise LedgerError("manifest has no source path; pass a ledger explicitly")
            ledger = ProgressLedger.open(
                default_ledger_path(manifest.source),
                manifest.manifest_id,
                resume=self.options.resume,
            )
        elif ledger.manifest_id != manifest.manifest_id:
            raise LedgerError(
                f"ledger belongs to manifest {ledger.manifest_id}, not {manifest.manifest_id}"
            )
        elif not self.options.resume and ledger.records:
            raise LedgerError("ledger already holds records; resume the run or move the ledger aside")

        self.ctx = RunContext(
            run_id=run_id or generate_run_id(),
            options=self.options,
            signer=signer,
            builder=builder,
            transport=transport,
            ledger=ledger,
        )
        self._audit = AuditLogger(logger)
        self._states: Dict[str, EntryState] = {}
        self._pending: List[int] = []
        self._retries: List[Tuple[float, int]] = []
        self._index = {entry.entry_id: i for i, entry in enumerate(manifest.entries)}
        self._abort_reason: Optional[str] = None
        self._abort_kind: Optional[str] = None
        self._abort_upstream = ""

    @property
    def run_id(self) -> str:
        return self.ctx.run_id

    @property
    def ledger(self) -> ProgressLedger:
        return self.ctx.ledger

    @property
    def max_in_flight_observed(self) -> int:
        return self.ctx.in_flight.max_observed

    @property
    def audit_head(self) -> str:
        """Hash of the latest audit event of this run."""
        return self._audit.last_hash

    def cancel(self) -> None:
        """Request a graceful stop."""
        self.ctx.cancel_event.set()

    def run(self) -> BatchSummary:
        token = run_id_var.set(self.ctx.run_id)
        try:
            return self._run()
        finally:
            run_id_var.reset(token)

    # -------------------------------------------------------------------------
    # Scheduler
    # -------------------------------------------------------------------------

    def _run(self) -> BatchSummary:
        started_at = now_rfc3339()
        ctx = self.ctx
        ctx.signer.self_check()

        done = ctx.ledger.succeeded_ids()
        for index, entry in enumerate(self.manifest.entries):
            state = EntryState(entry_id=entry.entry_id)
            if entry.entry_id in done:
                record = ctx.ledger.get(entry.entry_id)
                state.status = EntryStatus.SKIPPED
                state.attempts = record.attempts if record else 0
                state.token_id = record.token_id if record else None
                state.transaction_id = record.transaction_id if record else None
            else:
                self._pending.append(index)
            self._states[entry.entry_id] = state
        heapq.heapify(self._pending)

        logger.info(
            "Starting batch",
            manifest_id=self.manifest.manifest_id,
            canister_id=self.canister_id,
            entries=len(self.manifest),
            skipped=len(self.manifest) - len(self._pending),
            concurrency=self.options.concurrency,
        )

        if self.options.preflight and self._pending:
            check_mint_support(ctx.transport, self.canister_id, timeout=self.options.per_call_timeout)

        cancelled = False
        in_flight: Dict[Future, str] = {}
        with ThreadPoolExecutor(
            max_workers=self.options.concurrency,
            thread_name_prefix=f"minter-{ctx.run_id}",
        ) as pool:
            while True:
                if ctx.cancel_event.is_set() and self._abort_reason is None and not cancelled:
                    cancelled = True
                    logger.warning("Cancellation requested; draining in-flight calls", in_flight=len(in_flight))
                stop_dispatch = cancelled or self._abort_reason is not None

                if not stop_dispatch:
                    self._promote_due_retries()
                    while self._pending and len(in_flight) < self.options.concurrency:
                        entry = self.manifest.entries[heapq.heappop(self._pending)]
                        in_flight[self._dispatch(pool, entry)] = entry.entry_id

                if not in_flight:
                    if stop_dispatch or not (self._pending or self._retries):
                        break
                    if not self._pending:
                        delay = self._retries[0][0] - self.clock.now()
                        self.clock.sleep(delay, ctx.cancel_event)
                    continue

                completed, _ = wait(
                    list(in_flight),
                    timeout=self.options.tick_seconds,
                    return_when=FIRST_COMPLETED,
                )
                for future in completed:
                    in_flight.pop(future)
                    self._apply(future.result())

        if self._abort_reason is not None:
            self._fail_remaining()

        summary = BatchSummary(
            run_id=ctx.run_id,
            manifest_id=self.manifest.manifest_id,
            entries=tuple(self._states[e.entry_id] for e in self.manifest.entries),
            started_at=started_at,
            finished_at=now_rfc3339(),
            aborted_reason=self._abort_reason,
            cancelled=cancelled,
        )
        logger.info(
            "Batch finished",
            succeeded=summary.succeeded,
            failed=summary.failed,
            skipped=summary.skipped,
            pending=summary.pending,
            aborted=summary.aborted_reason is not None,
            cancelled=summary.cancelled,
            max_in_flight=self.max_in_flight_observed,
        )
        return summary

    def _promote_due_retries(self) -> None:
        now = self.clock.now()
        while self._retries and self._retries[0][0] <= now:
            _, index = heapq.heappop(self._retries)
            state = self._states[self.manifest.entries[index].entry_id]
            state.status = EntryStatus.PENDING
            state.next_attempt_at = None
            heapq.heappush(self._pending, index)

    def _dispatch(self, pool: ThreadPoolExecutor, entry: ManifestEntry) -> Future:
        state = self._states[entry.entry_id]
        state.status = EntryStatus.IN_FLIGHT
        state.attempts += 1
        logger.debug("Dispatching", entry_id=entry.entry_id, attempt=state.attempts)
        context = contextvars.copy_context()
        return pool.submit(
            context.run,
            _attempt,
            self.ctx,
            entry,
            state.attempts,
        )

    # -------------------------------------------------------------------------
    # Outcome handling
    # -------------------------------------------------------------------------

    def _apply(self, result: _AttemptResult) -> None:
        state = self._states[result.entry_id]

        if result.unexpected is not None:
            self._finalize_failed(state, INTERNAL_FAILURE, result.unexpected)
            return

        if result.error is not None:
            if isinstance(result.error, ValidationError):
                self._finalize_failed(state, VALIDATION_FAILURE, str(result.error))
            else:
                state.status = EntryStatus.PENDING
                self._begin_abort("SigningError", SIGNING_FAILURE, str(result.error))
            return

        outcome = result.outcome
        state.last_outcome = outcome
        decision = self.policy.decide(state.attempts, outcome)

        if isinstance(outcome, Success):
            self._finalize_succeeded(state, outcome)
        elif isinstance(decision, Retry):
            state.status = EntryStatus.AWAITING_RETRY
            state.next_attempt_at = self.clock.now() + decision.delay
            heapq.heappush(self._retries, (state.next_attempt_at, self._index[state.entry_id]))
            logger.info(
                "Retry scheduled",
                entry_id=state.entry_id,
                attempt=state.attempts,
                delay_seconds=round(decision.delay, 3),
                cause=outcome.reason,
            )
        elif isinstance(decision, Abort) and decision.scope == AbortScope.BATCH:
            self._finalize_failed(state, outcome.kind.value, outcome.reason)
            self._begin_abort("AuthFailure", outcome.kind.value, outcome.reason)
        else:
            self._finalize_failed(state, outcome.kind.value, outcome.reason)

    def _finalize_succeeded(self, state: EntryState, outcome: Success) -> None:
        state.status = EntryStatus.SUCCEEDED
        state.token_id = outcome.token_id
        state.transaction_id = outcome.transaction_id
        self.ctx.ledger.record(ProgressRecord(
            entry_id=state.entry_id,
            status=STATUS_SUCCEEDED,
            attempts=state.attempts,
            token_id=outcome.token_id,
            transaction_id=outcome.transaction_id,
        ))
        self._audit.log(
            actor=self.ctx.signer.principal.to_text(),
            action="mint",
            entry_id=state.entry_id,
            outcome=STATUS_SUCCEEDED,
            token_id=outcome.token_id,
            attempts=state.attempts,
        )

    def _finalize_failed(self, state: EntryState, kind: str, reason: str) -> None:
        state.status = EntryStatus.FAILED_TERMINAL
        state.failure_kind = kind
        state.failure_reason = reason
        state.next_attempt_at = None
        self.ctx.ledger.record(ProgressRecord(
            entry_id=state.entry_id,
            status=STATUS_FAILED,
            attempts=state.attempts,
            failure_kind=kind,
            failure_reason=reason,
        ))
        self._audit.log(
            actor=self.ctx.signer.principal.to_text(),
            action="mint",
            entry_id=state.entry_id,
            outcome=STATUS_FAILED,
            failure_kind=kind,
            attempts=state.attempts,
        )
        logger.warning(
            "Entry failed",
            entry_id=state.entry_id,
            failure_kind=kind,
            reason=reason,
            attempts=state.attempts,
        )

    def _begin_abort(self, label: str, kind: str, reason: str) -> None:
        if self._abort_reason is not None:
            return
        self._abort_reason = f"{label}: {reason}"
        self._abort_upstream = f"{label} upstream: {reason}"
        self._abort_kind = kind
        logger.error("Aborting batch", error_code=kind, reason=reason)

    def _fail_remaining(self) -> None:
        for entry in self.manifest.entries:
            state = self._states[entry.entry_id]
            if not state.status.is_terminal():
                self._finalize_failed(state, self._abort_kind or "aborted", self._abort_upstream)
        self._retries.clear()
        self._pending.clear()


# =============================================================================
# DRY RUN
# =============================================================================

@dataclass
class PlannedEntry:
    """A request that was built and signed but not sent."""
    entry_id: str
    ready: bool
    request_id: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "ready": self.ready,
            "request_id": self.request_id,
            "reason": self.reason,
        }


def plan_batch(
    manifest: Manifest,
    signer: IdentitySigner,
    builder: MintRequestBuilder,
) -> List[PlannedEntry]:
    """Validate, build and sign every entry without touching the network."""
    signer.self_check()
    planned: List[PlannedEntry] = []
    for entry in manifest.entries:
        try:
            envelope = signer.sign(builder.build(entry))
        except ValidationError as ex:
            planned.append(PlannedEntry(entry.entry_id, ready=False, reason=str(ex)))
            continue
        planned.append(PlannedEntry(entry.entry_id, ready=True, request_id=envelope.request_id))
    return planned


__all__ = [
    "EntryStatus",
    "EntryState",
    "BatchSummary",
    "RunOptions",
    "Clock",
    "SystemClock",
    "InFlightCounter",
    "RunContext",
    "BatchOrchestrator",
    "PlannedEntry",
    "plan_batch",
]

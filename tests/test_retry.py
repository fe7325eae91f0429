"""
Tests for the backoff policy.
"""

import random

import pytest


class TestDecide:
    """Decisions per outcome kind."""

    def test_transport_failure_retries_until_cap(self):
        from minter.retry import Abort, AbortScope, BackoffPolicy, Retry
        from minter.transport import TransportFailure

        policy = BackoffPolicy(max_attempts=3, jitter_factor=0.0)
        assert isinstance(policy.decide(1, TransportFailure("t")), Retry)
        assert isinstance(policy.decide(2, TransportFailure("t")), Retry)

        final = policy.decide(3, TransportFailure("t"))
        assert isinstance(final, Abort)
        assert final.scope == AbortScope.ENTRY

    def test_remote_rejected_is_terminal(self):
        from minter.retry import Abort, AbortScope, BackoffPolicy
        from minter.transport import RemoteRejected

        decision = BackoffPolicy(max_attempts=5).decide(1, RemoteRejected("bad metadata"))
        assert decision == Abort(AbortScope.ENTRY, "bad metadata")

    def test_auth_failure_aborts_batch(self):
        from minter.retry import AbortScope, BackoffPolicy
        from minter.transport import AuthFailure

        assert BackoffPolicy().decide(1, AuthFailure("nope")).scope == AbortScope.BATCH

    def test_success_stops(self):
        from minter.retry import Abort, AbortScope, BackoffPolicy
        from minter.transport import Success

        decision = BackoffPolicy().decide(1, Success(token_id=1))
        assert isinstance(decision, Abort)
        assert decision.scope == AbortScope.ENTRY


class TestDelays:
    """Backoff arithmetic."""

    def test_exponential_without_jitter(self):
        from minter.retry import BackoffPolicy

        policy = BackoffPolicy(base_backoff=0.5, multiplier=2.0, max_backoff=30.0, jitter_factor=0.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 4.0]

    def test_capped_at_max_backoff(self):
        from minter.retry import BackoffPolicy

        policy = BackoffPolicy(base_backoff=1.0, max_backoff=5.0, jitter_factor=0.5, max_attempts=50)
        assert all(policy.delay_for(n) <= 5.0 for n in range(1, 20))
        assert policy.delay_for(10) == 5.0

    def test_jitter_within_bounds_and_seeded(self):
        from minter.retry import BackoffPolicy

        a = BackoffPolicy(base_backoff=1.0, jitter_factor=0.5, rng=random.Random(42))
        b = BackoffPolicy(base_backoff=1.0, jitter_factor=0.5, rng=random.Random(42))
        delays = [a.delay_for(3) for _ in range(50)]

        assert delays == [b.delay_for(3) for _ in range(50)]
        assert all(4.0 <= d <= 6.0 for d in delays)

    def test_from_options(self):
        from minter.orchestrator import RunOptions
        from minter.retry import BackoffPolicy

        policy = BackoffPolicy.from_options(RunOptions(max_attempts=7, base_backoff=0.1))
        assert policy.max_attempts == 7
        assert policy.base_backoff == 0.1

    @pytest.mark.parametrize("kwargs", [
        {"max_attempts": 0},
        {"base_backoff": -1},
        {"multiplier": 0.5},
        {"jitter_factor": 2.0},
    ])
    def test_invalid_parameters(self, kwargs):
        from minter.retry import BackoffPolicy

        with pytest.raises(ValueError):
            BackoffPolicy(**kwargs)

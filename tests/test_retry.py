import pytest

from trento_fleet.services.retry import BackoffPolicy, RetryPhase, RetryState, advance


def _run(policy, outcomes):
    state = RetryState()
    delays = []
    for outcome in outcomes:
        state = advance(policy, state, outcome)
        if state.done:
            break
        delays.append(state.next_delay)
    return state, delays


class TestBackoffPolicy:
    def test_delays_double(self):
        policy = BackoffPolicy(max_retries=5, initial_wait=10, multiplier=2)
        assert [policy.delay_after(n) for n in range(1, 5)] == [10, 20, 40, 80]

    def test_no_delay_before_first_attempt(self):
        assert BackoffPolicy().delay_after(0) == 0

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_retries": 0}, {"initial_wait": -1}, {"multiplier": 0.5}],
    )
    def test_rejects_bad_values(self, kwargs):
        with pytest.raises(ValueError):
            BackoffPolicy(**kwargs)


class TestAdvance:
    def test_success_first_attempt(self):
        state, delays = _run(BackoffPolicy(), [True])
        assert state.phase is RetryPhase.SUCCESS
        assert state.attempts == 1
        assert delays == []

    def test_success_after_failures(self):
        state, delays = _run(BackoffPolicy(initial_wait=3), [False, False, True])
        assert state.phase is RetryPhase.SUCCESS
        assert state.attempts == 3
        assert delays == [3, 6]

    def test_exhausted(self):
        state, delays = _run(BackoffPolicy(max_retries=4, initial_wait=1), [False] * 10)
        assert state.phase is RetryPhase.EXHAUSTED
        assert state.attempts == 4
        assert delays == [1, 2, 4]

    def test_single_attempt_policy_never_waits(self):
        state, delays = _run(BackoffPolicy(max_retries=1), [False])
        assert state.phase is RetryPhase.EXHAUSTED
        assert delays == []

    def test_finished_state_cannot_advance(self):
        done = RetryState(phase=RetryPhase.SUCCESS, attempts=1)
        with pytest.raises(ValueError):
            advance(BackoffPolicy(), done, True)

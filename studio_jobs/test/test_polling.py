import pytest

from studio_jobs.services.polling import PollOutcomeKind, poll_until_terminal


class Recorder:
    def __init__(self, results):
        self.results = list(results)
        self.calls = 0
        self.sleeps = []

    async def poll(self):
        self.calls += 1
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]

    async def sleep(self, seconds):
        self.sleeps.append(seconds)


def classify(value):
    return value


@pytest.mark.asyncio
async def test_always_pending_times_out_after_exactly_max_attempts():
    """A poll that never finishes is invoked exactly N times, then times out"""
    rec = Recorder(["pending"])

    outcome = await poll_until_terminal(
        rec.poll, interval_seconds=5.0, max_attempts=7, classify=classify, sleep=rec.sleep
    )

    assert outcome.kind == PollOutcomeKind.timeout
    assert outcome.attempts == 7
    assert rec.calls == 7
    assert rec.sleeps == [5.0] * 7


@pytest.mark.asyncio
async def test_returns_first_terminal_result():
    """Stops polling on the first succeeded/failed answer"""
    rec = Recorder(["pending", "pending", "succeeded", "pending"])

    outcome = await poll_until_terminal(
        rec.poll, interval_seconds=0, max_attempts=10, classify=classify, sleep=rec.sleep
    )

    assert outcome.kind == PollOutcomeKind.succeeded
    assert outcome.attempts == 3
    assert outcome.status == "succeeded"
    assert rec.calls == 3


@pytest.mark.asyncio
async def test_failed_result_is_terminal():
    rec = Recorder(["failed"])

    outcome = await poll_until_terminal(
        rec.poll, interval_seconds=0, max_attempts=10, classify=classify, sleep=rec.sleep
    )

    assert outcome.kind == PollOutcomeKind.failed
    assert rec.calls == 1


@pytest.mark.asyncio
async def test_cancelled_before_first_poll_never_polls():
    """Cancellation observed up front returns without calling poll"""
    rec = Recorder(["pending"])

    async def cancelled():
        return True

    outcome = await poll_until_terminal(
        rec.poll, interval_seconds=0, max_attempts=10, classify=classify, is_cancelled=cancelled, sleep=rec.sleep
    )

    assert outcome.kind == PollOutcomeKind.cancelled
    assert outcome.attempts == 0
    assert rec.calls == 0


@pytest.mark.asyncio
async def test_cancellation_during_sleep_skips_the_pending_poll():
    """Cancel flag raised while sleeping is honored before the next poll"""
    rec = Recorder(["pending"])
    state = {"cancel": False}

    async def sleep(seconds):
        if rec.calls == 2:
            state["cancel"] = True

    async def cancelled():
        return state["cancel"]

    outcome = await poll_until_terminal(
        rec.poll, interval_seconds=0, max_attempts=10, classify=classify, is_cancelled=cancelled, sleep=sleep
    )

    assert outcome.kind == PollOutcomeKind.cancelled
    assert outcome.attempts == 2
    assert rec.calls == 2


@pytest.mark.asyncio
async def test_on_pending_sees_every_non_terminal_result():
    rec = Recorder(["pending", "pending", "succeeded"])
    seen = []

    async def on_pending(value, attempt):
        seen.append(attempt)

    await poll_until_terminal(
        rec.poll, interval_seconds=0, max_attempts=10, classify=classify, on_pending=on_pending, sleep=rec.sleep
    )

    assert seen == [1, 2]


@pytest.mark.asyncio
async def test_poll_exceptions_propagate():
    async def boom():
        raise RuntimeError("provider exploded")

    async def sleep(_):
        return None

    with pytest.raises(RuntimeError, match="provider exploded"):
        await poll_until_terminal(boom, interval_seconds=0, max_attempts=3, classify=classify, sleep=sleep)


@pytest.mark.asyncio
async def test_max_attempts_must_be_positive():
    rec = Recorder(["pending"])
    with pytest.raises(ValueError):
        await poll_until_terminal(rec.poll, interval_seconds=0, max_attempts=0, classify=classify, sleep=rec.sleep)

import asyncio

import pytest

from replicate_client.exceptions import RetryBudgetExhausted, StopPolling
from replicate_client.models import AnyPrediction, Status
from replicate_client.polling import wait_for_job
from replicate_client.retry import ConstantBackoff, RetryPolicy


def make_prediction(status: str, **fields) -> AnyPrediction:
    return AnyPrediction.model_validate(
        {
            "id": "ufawqhfynnddngldkgtslldrkq",
            "version": "5c7d5dc6dd8bf75c1acaa8565735e7986bc5b66206b55cca93cb72c9bf15ccaa",
            "status": status,
            "input": {"text": "Alice"},
            "created_at": "2022-04-26T22:13:06.224088Z",
            **fields,
        }
    )


class ScriptedFetch:
    """Returns the scripted records in order and counts the fetches."""

    def __init__(self, *records):
        self.records = list(records)
        self.calls = 0

    async def __call__(self, job_id: str):
        self.calls += 1
        return self.records.pop(0)


@pytest.fixture
def policy() -> RetryPolicy:
    """A fast polling policy with a generous budget."""
    return RetryPolicy(
        strategy=ConstantBackoff(duration=0.01), timeout=5.0, maximum_retries=10
    )


@pytest.mark.asyncio
async def test_terminal_job_returns_immediately(policy):
    """Waiting on a finished job performs no fetches and returns the same record."""
    job = make_prediction("succeeded", output=["Hello, Alice!"])
    fetch = ScriptedFetch()

    result = await wait_for_job(job, fetch, policy)

    assert result is job
    assert fetch.calls == 0


@pytest.mark.asyncio
async def test_returns_first_terminal_record(policy):
    """Polling stops at the first terminal record."""
    done = make_prediction("succeeded", output=["Hello, Alice!"])
    fetch = ScriptedFetch(
        make_prediction("processing"),
        make_prediction("processing"),
        done,
        make_prediction("failed"),
    )

    result = await wait_for_job(make_prediction("starting"), fetch, policy)

    assert result is done
    assert result.output.as_array()[0].as_string() == "Hello, Alice!"
    assert fetch.calls == 3


@pytest.mark.asyncio
async def test_failed_job_is_returned_not_raised(policy):
    fetch = ScriptedFetch(make_prediction("failed", error="CUDA out of memory"))

    result = await wait_for_job(make_prediction("starting"), fetch, policy)

    assert result.status == Status.failed
    assert result.error.detail == "CUDA out of memory"


@pytest.mark.asyncio
async def test_attempt_cap_exhausts_budget():
    """Once the retrier runs dry the wait fails after exactly that many fetches."""
    policy = RetryPolicy(strategy=ConstantBackoff(duration=0.0), maximum_retries=3)
    fetch = ScriptedFetch(*[make_prediction("processing") for _ in range(5)])

    with pytest.raises(RetryBudgetExhausted) as exc_info:
        await wait_for_job(make_prediction("starting"), fetch, policy)

    assert fetch.calls == 3
    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value, TimeoutError)


@pytest.mark.asyncio
async def test_deadline_cancels_in_flight_fetch():
    """The deadline wins the race against a slow fetch, which gets cancelled."""
    cancelled = asyncio.Event()

    async def slow_fetch(job_id):
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise
        return make_prediction("succeeded")

    policy = RetryPolicy(strategy=ConstantBackoff(duration=0.0), timeout=0.2)

    with pytest.raises(RetryBudgetExhausted):
        await asyncio.wait_for(
            wait_for_job(make_prediction("starting"), slow_fetch, policy), timeout=5
        )

    assert cancelled.is_set()


@pytest.mark.asyncio
async def test_deadline_bounds_long_delays():
    """A delay longer than the remaining budget ends at the deadline."""
    policy = RetryPolicy(strategy=ConstantBackoff(duration=30.0), timeout=0.1)
    fetch = ScriptedFetch(make_prediction("succeeded"))
    loop = asyncio.get_running_loop()
    started = loop.time()

    with pytest.raises(RetryBudgetExhausted):
        await wait_for_job(make_prediction("starting"), fetch, policy)

    assert loop.time() - started < 5
    assert fetch.calls == 0


@pytest.mark.asyncio
async def test_transport_errors_propagate_unchanged(policy):
    class TransportError(Exception):
        pass

    async def failing_fetch(job_id):
        raise TransportError("connection reset")

    with pytest.raises(TransportError):
        await wait_for_job(make_prediction("starting"), failing_fetch, policy)


@pytest.mark.asyncio
async def test_progress_callback_receives_non_terminal_records(policy):
    seen = []
    fetch = ScriptedFetch(
        make_prediction("processing", logs="1%"),
        make_prediction("processing", logs="50%"),
        make_prediction("succeeded"),
    )

    async def on_progress(job):
        seen.append(job.logs)

    result = await wait_for_job(make_prediction("starting"), fetch, policy, on_progress)

    assert result.status == Status.succeeded
    assert seen == ["1%", "50%"]


@pytest.mark.asyncio
async def test_stop_polling_returns_previous_record(policy):
    """Stopping from the callback returns the record held before the fetch."""
    original = make_prediction("starting")
    fetch = ScriptedFetch(make_prediction("processing"), make_prediction("succeeded"))

    def on_progress(job):
        raise StopPolling()

    result = await wait_for_job(original, fetch, policy, on_progress)

    assert result is original
    assert fetch.calls == 1


@pytest.mark.asyncio
async def test_other_callback_errors_propagate(policy):
    fetch = ScriptedFetch(make_prediction("processing"))

    def on_progress(job):
        raise RuntimeError("callback broke")

    with pytest.raises(RuntimeError, match="callback broke"):
        await wait_for_job(make_prediction("starting"), fetch, policy, on_progress)

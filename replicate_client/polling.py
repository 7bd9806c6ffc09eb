import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, TypeVar

from loguru import logger

from replicate_client.exceptions import RetryBudgetExhausted, StopPolling
from replicate_client.models import Job
from replicate_client.retry import Retrier, RetryPolicy

JobT = TypeVar("JobT", bound=Job)

FetchJob = Callable[[str], Awaitable[JobT]]
ProgressCallback = Callable[[JobT], Any]


async def _sleep_then_fetch(delay: float, job_id: str, fetch: FetchJob) -> Job:
    """Waits for the delay, then fetches the latest record of the job"""
    await asyncio.sleep(delay)
    return await fetch(job_id)


async def _race_deadline(poll: Awaitable[JobT], retrier: Retrier, job_id: str) -> JobT:
    """Runs the poll against the retrier's deadline; the loser is cancelled"""
    remaining = retrier.remaining()
    if remaining is None:
        return await poll

    poll_task = asyncio.ensure_future(poll)
    deadline_task = asyncio.ensure_future(asyncio.sleep(remaining))
    try:
        done, _ = await asyncio.wait(
            {poll_task, deadline_task}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for task in (poll_task, deadline_task):
            if not task.done():
                task.cancel()
        await asyncio.gather(poll_task, deadline_task, return_exceptions=True)

    if poll_task in done:
        return poll_task.result()

    logger.debug(f"Deadline reached while waiting for job {job_id}")
    raise RetryBudgetExhausted(job_id, retrier.retries)


async def _notify_progress(on_progress: ProgressCallback, job: Job) -> None:
    """Invokes the progress callback, awaiting it if it is a coroutine function"""
    result = on_progress(job)
    if inspect.isawaitable(result):
        await result


async def wait_for_job(
    job: JobT,
    fetch: FetchJob,
    policy: Optional[RetryPolicy] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> JobT:
    """
    Poll a job until it reaches a terminal status.

    Each iteration asks a fresh retrier for the next delay, sleeps, and
    fetches the job again by ID. Fetches are strictly sequential.

    Args:
        job: The last known record of the job.
        fetch: Coroutine function returning the current record for a job ID.
        policy: Spacing and budget of the polls; defaults to `RetryPolicy.default()`.
        on_progress: Called with every fetched record that is not terminal.
            Raising `StopPolling` from it ends the wait and returns the record
            held before that fetch. Any other exception propagates.

    Returns:
        The first terminal record received, or `job` itself if it is already
        terminal. A `failed` job is returned, not raised.

    Raises:
        RetryBudgetExhausted: The deadline passed or the attempt cap was hit.
    """
    retrier = (policy or RetryPolicy.default()).retrier()
    current = job

    while not current.status.terminated:
        delay = retrier.next_delay()
        if delay is None:
            logger.debug(f"Retry budget exhausted for job {current.id} after {retrier.retries} polls")
            raise RetryBudgetExhausted(current.id, retrier.retries)

        logger.debug(
            f"Job {current.id} is {current.status.value}, waiting {delay:.2f}s before next poll"
        )
        fetched = await _race_deadline(
            _sleep_then_fetch(delay, current.id, fetch), retrier, current.id
        )

        if fetched.status != current.status:
            logger.debug(f"Job {current.id} status changed to {fetched.status.value}")

        if on_progress is not None and not fetched.status.terminated:
            try:
                await _notify_progress(on_progress, fetched)
            except StopPolling:
                logger.debug(f"Progress callback stopped polling job {current.id}")
                return current

        current = fetched

    return current

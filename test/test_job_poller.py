import asyncio

import pytest

from platform_client.errors import (
    JobFailedError,
    JobNotFoundError,
    JobTimeoutError,
    TransientFetchError,
)
from platform_client.job_poller import JobPoller, wait_for_completion
from platform_client.models import (
    BackoffConfig,
    JobErrorDetail,
    JobPollingConfig,
    JobReference,
    JobStatus,
    NotFoundPolicy,
)

JOB = JobReference(id="job-1")


def scripted_fetch(*outcomes):
    """Build a fetch_status stub replaying `outcomes`; the last one repeats"""
    calls = []

    async def fetch(job):
        calls.append(job.id)
        outcome = outcomes[min(len(calls), len(outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, JobStatus):
            return JobReference(id=job.id, status=outcome)
        return outcome

    fetch.calls = calls
    return fetch


@pytest.fixture
def config() -> JobPollingConfig:
    """Backoff of 100ms doubling up to 5s, five minute deadline."""
    return JobPollingConfig(
        backoff=BackoffConfig(initial_delay=0.1, max_delay=5.0, max_elapsed=300.0)
    )


@pytest.fixture
def poller(config, clock) -> JobPoller:
    return JobPoller(config, clock=clock.time, sleep=clock.sleep)


@pytest.mark.asyncio
@pytest.mark.parametrize("k", [0, 1, 3, 6])
async def test_running_then_finished(poller, clock, k):
    """k RUNNING polls followed by FINISHED takes k+1 fetches with a sleep between each."""
    fetch = scripted_fetch(*([JobStatus.running] * k), JobStatus.finished)

    result = await poller.wait_for_completion(fetch, JOB)

    assert result.status == JobStatus.finished
    assert len(fetch.calls) == k + 1
    assert clock.sleeps == [min(0.1 * 2**n, 5.0) for n in range(k)]


@pytest.mark.asyncio
async def test_queued_running_finished_waits_sum_of_first_two_delays(poller, clock):
    fetch = scripted_fetch(JobStatus.queued, JobStatus.running, JobStatus.finished)

    await poller.wait_for_completion(fetch, JOB)

    assert len(fetch.calls) == 3
    assert clock.now == pytest.approx(0.3)


@pytest.mark.asyncio
async def test_failed_job_is_not_retried(poller, clock):
    failed = JobReference(
        id="job-1",
        status=JobStatus.failed,
        error_details=JobErrorDetail(code="X", description="Y", error_code="CF-Error"),
    )
    fetch = scripted_fetch(failed, JobStatus.finished)

    with pytest.raises(JobFailedError) as exc_info:
        await poller.wait_for_completion(fetch, JOB)

    assert exc_info.value.code == "X"
    assert exc_info.value.description == "Y"
    assert exc_info.value.error_code == "CF-Error"
    assert exc_info.value.job_id == "job-1"
    assert len(fetch.calls) == 1
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_failed_job_without_details(poller):
    fetch = scripted_fetch(JobStatus.failed)

    with pytest.raises(JobFailedError) as exc_info:
        await poller.wait_for_completion(fetch, JOB)

    assert exc_info.value.description == "unknown job failure"


@pytest.mark.asyncio
@pytest.mark.parametrize("deadline", [0, -5.0])
async def test_non_positive_deadline_times_out_without_fetching(poller, deadline):
    fetch = scripted_fetch(JobStatus.finished)

    with pytest.raises(JobTimeoutError):
        await poller.wait_for_completion(fetch, JOB, deadline=deadline)

    assert fetch.calls == []


@pytest.mark.asyncio
async def test_no_job_is_a_no_op(poller, clock):
    fetch = scripted_fetch(JobStatus.finished)

    assert await poller.wait_for_completion(fetch, None) is None
    assert fetch.calls == []
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_times_out_while_running(clock):
    config = JobPollingConfig(
        backoff=BackoffConfig(initial_delay=1.0, max_delay=4.0, max_elapsed=10.0)
    )
    poller = JobPoller(config, clock=clock.time, sleep=clock.sleep)
    fetch = scripted_fetch(JobStatus.running)

    with pytest.raises(JobTimeoutError) as exc_info:
        await poller.wait_for_completion(fetch, JOB)

    assert isinstance(exc_info.value, TimeoutError)
    assert exc_info.value.status == JobStatus.running
    assert len(fetch.calls) == 4
    assert clock.sleeps == [1.0, 2.0, 4.0, 3.0]
    assert clock.now == 10.0


@pytest.mark.asyncio
async def test_deadline_argument_overrides_config(clock):
    poller = JobPoller(
        JobPollingConfig(backoff=BackoffConfig(initial_delay=1.0, max_delay=15.0)),
        clock=clock.time,
        sleep=clock.sleep,
    )
    fetch = scripted_fetch(JobStatus.running)

    with pytest.raises(JobTimeoutError) as exc_info:
        await poller.wait_for_completion(fetch, JOB, deadline=1.5)

    assert exc_info.value.deadline == 1.5
    assert len(fetch.calls) == 2
    assert clock.sleeps == [1.0, 0.5]


@pytest.mark.asyncio
async def test_transient_errors_are_retried(poller, clock):
    fetch = scripted_fetch(
        TransientFetchError("connection reset"),
        TransientFetchError("503", status=503),
        JobStatus.running,
        JobStatus.finished,
    )

    result = await poller.wait_for_completion(fetch, JOB)

    assert result.status == JobStatus.finished
    assert len(fetch.calls) == 4
    assert clock.sleeps == [0.1, 0.2, 0.4]


@pytest.mark.asyncio
async def test_transient_errors_are_bounded_by_deadline(clock):
    config = JobPollingConfig(
        backoff=BackoffConfig(initial_delay=1.0, max_delay=1.0, max_elapsed=3.0)
    )
    poller = JobPoller(config, clock=clock.time, sleep=clock.sleep)
    fetch = scripted_fetch(TransientFetchError("unreachable"))

    with pytest.raises(JobTimeoutError) as exc_info:
        await poller.wait_for_completion(fetch, JOB)

    assert exc_info.value.status is None
    assert len(fetch.calls) == 3


@pytest.mark.asyncio
async def test_other_fetch_errors_propagate(poller):
    fetch = scripted_fetch(RuntimeError("bad payload"), JobStatus.finished)

    with pytest.raises(RuntimeError):
        await poller.wait_for_completion(fetch, JOB)

    assert len(fetch.calls) == 1


@pytest.mark.asyncio
async def test_not_found_fails_by_default(poller):
    fetch = scripted_fetch(JobNotFoundError("job-1"), JobStatus.finished)

    with pytest.raises(JobNotFoundError):
        await poller.wait_for_completion(fetch, JOB)

    assert len(fetch.calls) == 1


@pytest.mark.asyncio
async def test_not_found_retried_when_configured(clock):
    config = JobPollingConfig(
        backoff=BackoffConfig(initial_delay=0.1, max_delay=5.0),
        not_found=NotFoundPolicy.retry,
    )
    poller = JobPoller(config, clock=clock.time, sleep=clock.sleep)
    fetch = scripted_fetch(JobNotFoundError("job-1"), JobStatus.running, JobStatus.finished)

    result = await poller.wait_for_completion(fetch, JOB)

    assert result.status == JobStatus.finished
    assert len(fetch.calls) == 3


@pytest.mark.asyncio
async def test_status_change_callback(config, clock):
    changes = []

    async def on_change(job):
        changes.append(job.status)

    poller = JobPoller(config, on_status_change=on_change, clock=clock.time, sleep=clock.sleep)
    fetch = scripted_fetch(
        JobStatus.queued, JobStatus.running, JobStatus.running, JobStatus.finished
    )

    await poller.wait_for_completion(fetch, JOB)

    assert changes == [JobStatus.queued, JobStatus.running, JobStatus.finished]


@pytest.mark.asyncio
async def test_sync_status_change_callback(config, clock):
    changes = []
    poller = JobPoller(
        config, on_status_change=changes.append, clock=clock.time, sleep=clock.sleep
    )

    await poller.wait_for_completion(scripted_fetch(JobStatus.finished), JOB)

    assert [job.status for job in changes] == [JobStatus.finished]


@pytest.mark.asyncio
async def test_cancellation_during_backoff_stops_polling():
    config = JobPollingConfig(
        backoff=BackoffConfig(initial_delay=30.0, max_delay=30.0, max_elapsed=300.0)
    )
    polled = asyncio.Event()
    fetch = scripted_fetch(JobStatus.running)

    async def fetch_and_signal(job):
        result = await fetch(job)
        polled.set()
        return result

    task = asyncio.create_task(JobPoller(config).wait_for_completion(fetch_and_signal, JOB))
    await asyncio.wait_for(polled.wait(), timeout=1.0)
    await asyncio.sleep(0)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(fetch.calls) == 1


@pytest.mark.asyncio
async def test_module_level_wait_for_completion():
    fetch = scripted_fetch(JobStatus.running, JobStatus.finished)
    config = JobPollingConfig(
        backoff=BackoffConfig(initial_delay=0.01, max_delay=0.01, max_elapsed=5.0)
    )

    result = await wait_for_completion(fetch, JOB, config=config)

    assert result.status == JobStatus.finished
    assert len(fetch.calls) == 2

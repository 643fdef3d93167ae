import asyncio
from typing import Any, Awaitable, Callable, Optional

from loguru import logger
from platform_client.backoff import BackoffScheduler
from platform_client.errors import (
    JobFailedError,
    JobNotFoundError,
    JobTimeoutError,
    TransientFetchError,
)
from platform_client.models import (
    JobPollingConfig,
    JobReference,
    JobStatus,
    NotFoundPolicy,
)
from platform_client.utils import maybe_await

FetchStatus = Callable[[JobReference], Awaitable[JobReference]]


class JobPoller:
    def __init__(
        self,
        config: Optional[JobPollingConfig] = None,
        on_status_change: Optional[Callable[[JobReference], Any]] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.config = config or JobPollingConfig()
        self.scheduler = BackoffScheduler(self.config.backoff)
        self.on_status_change = on_status_change
        self.logger = logger
        self._clock = clock
        self._sleep = sleep or asyncio.sleep

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_event_loop().time()

    async def _handle_status_change(
        self, job: JobReference, last_status: Optional[JobStatus]
    ) -> None:
        """Invoke the status change callback if the status has changed"""
        if last_status != job.status and self.on_status_change is not None:
            self.logger.debug(f"Job {job.id} status changed to {job.status.value}")
            await maybe_await(self.on_status_change(job))

    async def _wait_before_retry(
        self, scheduler: BackoffScheduler, attempt: int, start: float, job_id: str
    ) -> None:
        """Waits for the backoff delay, never sleeping past the deadline"""
        delay = min(scheduler.next(attempt), scheduler.remaining(start, self._now()))
        self.logger.debug(
            f"Job {job_id} not finished, waiting {delay:.2f}s before attempt {attempt + 1}"
        )
        await self._sleep(delay)

    async def wait_for_completion(
        self,
        fetch_status: FetchStatus,
        job: Optional[JobReference],
        deadline: Optional[float] = None,
    ) -> Optional[JobReference]:
        """Poll `fetch_status` until the job finishes, fails or the deadline passes.

        Returns the final job reference, or None when no job was issued (the
        operation completed synchronously). Raises JobFailedError as soon as
        the server reports a failure and JobTimeoutError when the deadline
        elapses. Transient fetch errors are retried on the same schedule.
        """
        if job is None:
            self.logger.debug("No job issued, nothing to wait for")
            return None

        if deadline is not None and deadline <= 0:
            raise JobTimeoutError(job.id, deadline, None)

        scheduler = (
            self.scheduler
            if deadline is None
            else self.scheduler.with_max_elapsed(deadline)
        )
        start = self._now()
        attempt = 0
        last_status: Optional[JobStatus] = None

        while True:
            if scheduler.has_expired(start, self._now()):
                raise JobTimeoutError(job.id, scheduler.max_elapsed, last_status)

            try:
                current = await fetch_status(job)
            except TransientFetchError as e:
                self.logger.warning(f"Error polling job {job.id}: {e}")
            except JobNotFoundError:
                if self.config.not_found is NotFoundPolicy.fail:
                    raise
                self.logger.warning(f"Job {job.id} not visible yet, retrying")
            else:
                await self._handle_status_change(current, last_status)
                last_status = current.status

                if current.status is JobStatus.finished:
                    self.logger.debug(f"Job {job.id} finished after {attempt + 1} polls")
                    return current

                if current.status is JobStatus.failed:
                    details = current.error_details
                    self.logger.error(f"Job {job.id} failed: {details}")
                    raise JobFailedError(
                        job.id,
                        details.code if details else "",
                        details.description if details else "unknown job failure",
                        details.error_code if details else None,
                    )

            await self._wait_before_retry(scheduler, attempt, start, job.id)
            attempt += 1


async def wait_for_completion(
    fetch_status: FetchStatus,
    job: Optional[JobReference],
    deadline: Optional[float] = None,
    config: Optional[JobPollingConfig] = None,
) -> Optional[JobReference]:
    return await JobPoller(config).wait_for_completion(fetch_status, job, deadline)

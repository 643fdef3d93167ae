from typing import Optional

from platform_client.models import JobStatus


class PlatformClientError(Exception):
    """Base class for every error raised by platform_client"""


class JobError(PlatformClientError):
    def __init__(self, job_id: Optional[str], message: str):
        super().__init__(message)
        self.job_id = job_id


class JobFailedError(JobError):
    """The server reported the job as failed. Never retried."""

    def __init__(
        self,
        job_id: Optional[str],
        code: str,
        description: str,
        error_code: Optional[str] = None,
    ):
        super().__init__(job_id, f"{code}: {description}")
        self.code = code
        self.description = description
        self.error_code = error_code


class JobTimeoutError(JobError, TimeoutError):
    def __init__(
        self,
        job_id: Optional[str],
        deadline: float,
        status: Optional[JobStatus] = None,
    ):
        last = f" (last status: {status.value})" if status is not None else ""
        super().__init__(
            job_id, f"Job {job_id} did not complete within {deadline} seconds{last}"
        )
        self.deadline = deadline
        self.status = status


class JobNotFoundError(JobError):
    def __init__(self, job_id: Optional[str]):
        super().__init__(job_id, f"Job {job_id} does not exist")


class TransientFetchError(PlatformClientError):
    """A single status or page fetch failed at the transport level"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ResourceNotFoundError(PlatformClientError, LookupError):
    pass


class AmbiguousResourceError(PlatformClientError, ValueError):
    pass


class DelayTimeoutError(PlatformClientError, TimeoutError):
    pass

from enum import Enum
from typing import Any, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, model_validator

T = TypeVar("T")


class JobStatus(str, Enum):
    queued = "queued"
    running = "running"
    finished = "finished"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.finished, JobStatus.failed)

    @classmethod
    def parse(cls, value: str) -> "JobStatus":
        """Accepts both the v2 job vocabulary and the v3 job states"""
        normalized = str(value).strip().lower()
        if normalized in _V3_STATES:
            return _V3_STATES[normalized]
        return cls(normalized)


_V3_STATES = {
    "processing": JobStatus.running,
    "polling": JobStatus.running,
    "complete": JobStatus.finished,
}


class JobErrorDetail(BaseModel):
    code: str
    description: str
    error_code: Optional[str] = None


class JobReference(BaseModel):
    id: str
    status: JobStatus = JobStatus.queued
    error_details: Optional[JobErrorDetail] = None
    raw_response: Optional[dict] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "JobReference":
        """Builds a reference from either a v2 (metadata/entity) or a v3 job body"""
        if "entity" in payload:
            entity = payload["entity"]
            details = entity.get("error_details")
            return cls(
                id=payload["metadata"]["guid"],
                status=JobStatus.parse(entity["status"]),
                error_details=(
                    JobErrorDetail(
                        code=str(details.get("code", "")),
                        description=details.get("description", ""),
                        error_code=details.get("error_code"),
                    )
                    if details
                    else None
                ),
                raw_response=payload,
            )

        errors = payload.get("errors") or []
        first = errors[0] if errors else None
        return cls(
            id=payload["guid"],
            status=JobStatus.parse(payload["state"]),
            error_details=(
                JobErrorDetail(
                    code=str(first.get("code", "")),
                    description=first.get("detail", ""),
                    error_code=first.get("title"),
                )
                if first
                else None
            ),
            raw_response=payload,
        )


class Page(BaseModel, Generic[T]):
    resources: List[T] = Field(default_factory=list)
    next_cursor: Optional[Any] = None
    total_results: Optional[int] = None
    total_pages: Optional[int] = None

    @property
    def is_last(self) -> bool:
        return self.next_cursor is None


class BackoffConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    initial_delay: float = Field(default=1.0, gt=0)
    max_delay: float = Field(default=15.0, gt=0)
    max_elapsed: float = Field(default=300.0, gt=0)  # 5 minutes
    backoff_factor: float = Field(default=2.0, ge=1.0)

    @model_validator(mode="after")
    def validate_bounds(self) -> "BackoffConfig":
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be greater than or equal to initial_delay")
        return self


class NotFoundPolicy(str, Enum):
    fail = "fail"
    retry = "retry"


class JobPollingConfig(BaseModel):
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)
    not_found: NotFoundPolicy = NotFoundPolicy.fail


class ClientConfig(BaseModel):
    base_url: str
    token: Optional[str] = None
    request_timeout: float = Field(default=30.0, gt=0)
    results_per_page: int = Field(default=50, gt=0)
    jobs_path: str = "/v3/jobs"
    polling: JobPollingConfig = Field(default_factory=JobPollingConfig)

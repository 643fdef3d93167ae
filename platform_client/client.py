import asyncio
from typing import Any, Callable, Dict, Optional, Union

import aiohttp
from loguru import logger
from platform_client.errors import (
    JobNotFoundError,
    PlatformClientError,
    TransientFetchError,
)
from platform_client.job_poller import JobPoller
from platform_client.models import ClientConfig, JobReference, Page
from platform_client.pagination import PageCursor

# Failures while connecting or while reading a body
TRANSPORT_ERRORS = (
    aiohttp.ClientConnectionError,
    aiohttp.ClientPayloadError,
    asyncio.TimeoutError,
)


class PlatformClient:
    def __init__(
        self,
        config: ClientConfig,
        session: Optional[aiohttp.ClientSession] = None,
        on_status_change: Optional[Callable[[JobReference], Any]] = None,
    ):
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.logger = logger
        self.on_status_change = on_status_change
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "PlatformClient":
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout)
            )
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("PlatformClient must be used as an async context manager")
        return self._session

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.config.token:
            headers["Authorization"] = f"bearer {self.config.token}"
        return headers

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> aiohttp.ClientResponse:
        """Issues one request, mapping transport failures to TransientFetchError"""
        try:
            response = await self.session.request(
                method, url, params=params, headers=self._headers()
            )
        except TRANSPORT_ERRORS as e:
            self.logger.error(f"Connection error at {url}: {e}")
            raise TransientFetchError(f"{method} {url} failed: {e}") from e

        if response.status >= 500:
            try:
                text = await response.text()
            except TRANSPORT_ERRORS as e:
                text = f"<unreadable body: {e}>"
            finally:
                response.release()
            self.logger.error(f"HTTP error {response.status} at {url}: {text}")
            raise TransientFetchError(
                f"{method} {url} returned {response.status}", status=response.status
            )
        return response

    async def _read_json(self, response: aiohttp.ClientResponse) -> dict:
        try:
            response.raise_for_status()
            body = await response.read()
            if not body.strip():
                return {}
            return await response.json()
        except aiohttp.ClientResponseError as e:
            self.logger.error(f"HTTP error {e.status} at {response.url}: {e.message}")
            raise
        except TRANSPORT_ERRORS as e:
            self.logger.error(f"Error reading response from {response.url}: {e}")
            raise TransientFetchError(f"Reading {response.url} failed: {e}") from e
        finally:
            response.release()

    async def get_job(self, job: Union[JobReference, str]) -> JobReference:
        """Fetches the current state of a job"""
        job_id = job.id if isinstance(job, JobReference) else job
        url = self._url(f"{self.config.jobs_path}/{job_id}")

        response = await self._request("GET", url)
        if response.status == 404:
            response.release()
            raise JobNotFoundError(job_id)

        data = await self._read_json(response)
        current = JobReference.from_payload(data)
        self.logger.debug(f"Job {current.id} is {current.status.value}")
        return current

    async def get_page(
        self,
        path: str,
        cursor: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Page[dict]:
        """Fetches one page: the first from `path`, later ones from the next-page link"""
        if cursor is None:
            url = self._url(path)
            query = {"per_page": self.config.results_per_page, **(params or {})}
        else:
            url, query = self._url(cursor), None

        data = await self._read_json(await self._request("GET", url, params=query))
        pagination = data.get("pagination") or {}
        next_link = pagination.get("next") or {}
        return Page[dict](
            resources=data.get("resources", []),
            next_cursor=next_link.get("href"),
            total_results=pagination.get("total_results"),
            total_pages=pagination.get("total_pages"),
        )

    def list_resources(
        self, path: str, params: Optional[Dict[str, Any]] = None
    ) -> PageCursor[dict]:
        async def fetch_page(cursor: Optional[str]) -> Page[dict]:
            return await self.get_page(path, cursor, params)

        return PageCursor(fetch_page)

    async def delete(self, path: str, asynchronous: bool = True) -> Optional[JobReference]:
        """Deletes a resource, returning the job to wait for when one was issued"""
        url = self._url(path)
        params = {"async": str(asynchronous).lower()}
        response = await self._request("DELETE", url, params=params)

        if response.status == 204:
            response.release()
            return None

        # v3 answers with an empty body and the job URL in Location
        location = response.headers.get("Location")
        if response.status == 202 and location:
            response.release()
            return JobReference(id=location.rstrip("/").rsplit("/", 1)[-1])

        data = await self._read_json(response)
        if not data:
            raise PlatformClientError(
                f"DELETE {url} returned {response.status} without a job reference"
            )
        return JobReference.from_payload(data)

    async def wait_for_job(
        self, job: Optional[JobReference], deadline: Optional[float] = None
    ) -> Optional[JobReference]:
        poller = JobPoller(self.config.polling, on_status_change=self.on_status_change)
        return await poller.wait_for_completion(self.get_job, job, deadline)

    async def delete_and_wait(
        self, path: str, deadline: Optional[float] = None
    ) -> Optional[JobReference]:
        job = await self.delete(path)
        return await self.wait_for_job(job, deadline)

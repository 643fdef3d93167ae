import math
import random
import uuid
from typing import Dict, List, Optional

from aiohttp import web
from loguru import logger

DEFAULT_JOB_STATES = ["PROCESSING", "PROCESSING", "COMPLETE"]


class PlatformServer:
    """Local stand-in for the platform API: v3 jobs, deletes and paginated lists"""

    def __init__(
        self,
        resources: Optional[List[dict]] = None,
        job_states: Optional[List[str]] = None,
        error_rate: float = 0.0,
        unavailable_polls: int = 0,
        truncated_polls: int = 0,
        job_location: bool = True,
    ):
        self.resources = list(resources or [])
        self.job_states = job_states or DEFAULT_JOB_STATES
        self.error_rate = error_rate
        self.unavailable_polls = unavailable_polls
        self.truncated_polls = truncated_polls
        self.job_location = job_location
        self.jobs: Dict[str, List[str]] = {}
        self.job_errors: Dict[str, dict] = {}
        self.job_polls: Dict[str, int] = {}
        self.page_requests = 0
        self.runner = None
        self.app = web.Application()
        self.app.router.add_get("/v3/jobs/{guid}", self.handle_job)
        self.app.router.add_get("/v3/resources", self.handle_list)
        self.app.router.add_delete("/v3/resources/{guid}", self.handle_delete)
        self.logger = logger

    def add_job(
        self, states: List[str], error: Optional[dict] = None, guid: Optional[str] = None
    ) -> str:
        guid = guid or str(uuid.uuid4())
        self.jobs[guid] = list(states)
        self.job_polls[guid] = 0
        if error is not None:
            self.job_errors[guid] = error
        return guid

    async def handle_job(self, request):
        guid = request.match_info["guid"]
        if guid not in self.jobs:
            self.logger.info(f"Job {guid} not found")
            return web.json_response({"errors": [{"title": "NotFound"}]}, status=404)

        polls = self.job_polls[guid]
        self.job_polls[guid] = polls + 1

        if polls < self.unavailable_polls or random.random() < self.error_rate:
            self.logger.info(f"Returning unavailable for job {guid}")
            return web.json_response({"errors": []}, status=503)

        disrupted = self.unavailable_polls + self.truncated_polls
        if polls < disrupted:
            self.logger.info(f"Returning truncated body for job {guid}")
            return await self._truncated_response(request)

        states = self.jobs[guid]
        state = states[min(polls - disrupted, len(states) - 1)]
        errors = [self.job_errors[guid]] if state == "FAILED" and guid in self.job_errors else []
        self.logger.info(f"Returning {state} for job {guid}")
        return web.json_response({"guid": guid, "state": state, "errors": errors})

    async def handle_delete(self, request):
        guid = request.match_info["guid"]
        self.resources = [r for r in self.resources if r.get("guid") != guid]

        if request.query.get("async", "true") == "false":
            return web.Response(status=204)

        if not self.job_location:
            return web.Response(status=202)

        job_id = self.add_job(self.job_states)
        location = f"{request.url.origin()}/v3/jobs/{job_id}"
        return web.Response(status=202, headers={"Location": location})

    async def _truncated_response(self, request):
        """Promises a longer body than it sends, then drops the connection"""
        response = web.StreamResponse(headers={"Content-Type": "application/json"})
        response.content_length = 200
        await response.prepare(request)
        await response.write(b'{"guid": "partial"')
        request.transport.close()
        return response

    async def handle_list(self, request):
        self.page_requests += 1
        page = int(request.query.get("page", "1"))
        per_page = int(request.query.get("per_page", "50"))

        resources = self.resources
        if "names" in request.query:
            names = request.query["names"].split(",")
            resources = [r for r in resources if r.get("name") in names]

        total_pages = max(1, math.ceil(len(resources) / per_page))
        batch = resources[(page - 1) * per_page : page * per_page]
        next_link = None
        if page < total_pages:
            query = dict(request.query)
            query.update({"page": str(page + 1), "per_page": str(per_page)})
            next_link = {"href": str(request.url.with_query(query))}

        self.logger.info(f"Returning page {page}/{total_pages} ({len(batch)} resources)")
        return web.json_response(
            {
                "pagination": {
                    "total_results": len(resources),
                    "total_pages": total_pages,
                    "next": next_link,
                },
                "resources": batch,
            }
        )

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None

import asyncio

from platform_client.client import PlatformClient
from platform_client.errors import JobFailedError, JobTimeoutError
from platform_client.models import BackoffConfig, ClientConfig, JobPollingConfig
from platform_server import PlatformServer


async def status_changed(job):
    print(f"Job {job.id} status changed to: {job.status.value}")


async def main():
    PORT = 8000
    server = PlatformServer(
        resources=[{"guid": f"route-{i}", "name": f"route-{i}"} for i in range(7)],
        job_states=["PROCESSING", "PROCESSING", "PROCESSING", "COMPLETE"],
        error_rate=0.1,
    )
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    config = ClientConfig(
        base_url=f"http://localhost:{PORT}",
        results_per_page=3,
        polling=JobPollingConfig(
            backoff=BackoffConfig(initial_delay=0.5, max_delay=4.0, max_elapsed=60.0)
        ),
    )

    async with PlatformClient(config, on_status_change=status_changed) as client:
        routes = await client.list_resources("/v3/resources").to_list()
        print(f"Listed {len(routes)} routes over {server.page_requests} pages")

        target = await (
            client.list_resources("/v3/resources")
            .filter(lambda route: route["name"] == "route-4")
            .single()
        )
        print(f"Deleting {target['guid']}")

        try:
            final = await client.delete_and_wait(f"/v3/resources/{target['guid']}")
            print(f"Final status: {final.status.value}")
        except JobTimeoutError as e:
            print(f"Polling timed out: {e}")
        except JobFailedError as e:
            print(f"Job failed: {e}")


if __name__ == "__main__":
    asyncio.run(main())

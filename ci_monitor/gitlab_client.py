from __future__ import annotations

from typing import Any

import httpx

from .observability import get_logger
from .throttle import DEFAULT_PRIORITY, PRIORITY_HIGH, ApiThrottler

logger = get_logger("gitlab")


class GitLabApiError(RuntimeError):
    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"GitLab API error {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


def _detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(data, dict):
        for key in ("message", "error", "error_description"):
            if data.get(key):
                return str(data[key])
    return response.reason_phrase


class GitLabClient:
    """GitLab REST v4 client whose every call waits its turn in the throttler.

    Reads run at the default priority; user-triggered pipeline actions
    (retry, cancel) jump ahead with PRIORITY_HIGH.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None,
        throttler: ApiThrottler,
        http_client: httpx.AsyncClient,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.throttler = throttler
        self.http_client = http_client

    @property
    def api_url(self) -> str:
        return f"{self.base_url}/api/v4"

    def _headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"PRIVATE-TOKEN": self.token}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> Any:
        url = f"{self.api_url}{path}"

        async def execute() -> Any:
            response = await self.http_client.request(method, url, params=params, headers=self._headers())
            if not response.is_success:
                raise GitLabApiError(response.status_code, _detail(response))
            if not response.content:
                return None
            return response.json()

        logger.debug("gitlab request method=%s path=%s priority=%s", method, path, priority)
        return await self.throttler.throttle(execute, priority=priority)

    async def check_connection(self) -> dict[str, Any]:
        """Return the authenticated user; raises GitLabApiError on a bad token."""

        return await self._request("GET", "/user")

    async def list_projects(self, page: int = 1, per_page: int = 20) -> list[dict[str, Any]]:
        return await self._request(
            "GET",
            "/projects",
            params={
                "membership": "true",
                "order_by": "last_activity_at",
                "page": page,
                "per_page": per_page,
            },
        )

    async def get_project(self, project_id: int) -> dict[str, Any]:
        return await self._request("GET", f"/projects/{int(project_id)}")

    async def list_pipelines(self, project_id: int, page: int = 1, per_page: int = 20) -> list[dict[str, Any]]:
        return await self._request(
            "GET",
            f"/projects/{int(project_id)}/pipelines",
            params={"page": page, "per_page": per_page},
        )

    async def get_pipeline(self, project_id: int, pipeline_id: int) -> dict[str, Any]:
        return await self._request("GET", f"/projects/{int(project_id)}/pipelines/{int(pipeline_id)}")

    async def list_pipeline_jobs(self, project_id: int, pipeline_id: int) -> list[dict[str, Any]]:
        return await self._request("GET", f"/projects/{int(project_id)}/pipelines/{int(pipeline_id)}/jobs")

    async def retry_pipeline(self, project_id: int, pipeline_id: int) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/projects/{int(project_id)}/pipelines/{int(pipeline_id)}/retry",
            priority=PRIORITY_HIGH,
        )

    async def cancel_pipeline(self, project_id: int, pipeline_id: int) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/projects/{int(project_id)}/pipelines/{int(pipeline_id)}/cancel",
            priority=PRIORITY_HIGH,
        )

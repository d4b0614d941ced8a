"""
dfs_client.py — thin async wrapper around the DataForSEO v3 REST API.

Every DataForSEO response carries its own status envelope on top of the HTTP
status: 20000 means OK, 20100 means a task was queued, 20200 means it is still
being processed. This client only checks the top-level envelope; task-level
statuses are interpreted by the callers.

No retries happen here. Polling and retry policy belong to the caller.
"""

import logging
from typing import Optional

import httpx

from errors import ApiError

logger = logging.getLogger("site-audit")

DFS_BASE_URL = "https://api.dataforseo.com"

STATUS_OK = 20000
STATUS_QUEUED = 20100
STATUS_IN_PROGRESS = 20200
STATUS_LOCATION_UNKNOWN = 40501


def normalize_endpoint(endpoint: str) -> str:
    """'/v3/x' → 'v3/x', 'v3/x' → 'v3/x', 'x' → 'v3/x'"""
    if endpoint.startswith("/v3"):
        return endpoint[1:]
    if endpoint.startswith("v3"):
        return endpoint
    return f"v3/{endpoint}"


class DataForSEOClient:
    """
    Authenticated DataForSEO client. Construct one per audit run (or per
    process) and pass it to every pipeline step that needs it.

    `transport` lets tests plug in an httpx.MockTransport.
    """

    def __init__(
        self,
        login: str,
        password: str,
        base_url: str = DFS_BASE_URL,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.total_cost = 0.0
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            auth=httpx.BasicAuth(login, password),
            headers={"Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "DataForSEOClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------

    async def call(self, endpoint: str, body: list[dict]) -> dict:
        """POST a task array to `endpoint` and return the decoded envelope."""
        return await self._request("POST", endpoint, body)

    async def get(self, endpoint: str) -> dict:
        return await self._request("GET", endpoint)

    async def _request(self, method: str, endpoint: str, body: Optional[list] = None) -> dict:
        path = "/" + normalize_endpoint(endpoint)
        try:
            if method == "POST":
                resp = await self._http.post(path, json=body)
            else:
                resp = await self._http.get(path)
        except httpx.HTTPError as e:
            raise ApiError(f"Failed to reach DataForSEO: {e}") from e

        if resp.status_code < 200 or resp.status_code >= 300:
            try:
                message = resp.json().get("error") or f"API error {resp.status_code}"
            except Exception:
                message = f"API error {resp.status_code}"
            raise ApiError(message, resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise ApiError(f"Invalid JSON from {path}") from e

        self._track_cost(data)

        status_code = data.get("status_code")
        if status_code and status_code != STATUS_OK:
            raise ApiError(data.get("status_message") or "DataForSEO error", status_code)

        return data

    def _track_cost(self, data: dict) -> None:
        cost = sum((t.get("cost") or 0) for t in data.get("tasks") or [] if isinstance(t, dict))
        if cost:
            self.total_cost += cost

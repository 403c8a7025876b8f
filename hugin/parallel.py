import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx


@dataclass
class UpstreamReply:
    """Outcome of one bounded task API call.

    Timeouts and transport failures are ordinary values here (``timed_out`` /
    ``error``) so callers can branch on them without exception handling.
    """

    status_code: Optional[int] = None
    data: Any = None
    text: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300

    @property
    def transient(self) -> bool:
        return self.timed_out or self.status_code is None

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


class ParallelClient:
    def __init__(self, api_key: Optional[str], base_url: str = "https://api.parallel.ai"):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        # Long-poll result fetches can hold a connection for most of a request budget.
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(70.0, connect=10.0),
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _headers(self, json_body: bool = False) -> Dict[str, str]:
        headers = {"x-api-key": self.api_key or ""}
        if json_body:
            headers["content-type"] = "application/json"
        return headers

    def _run_url(self, run_id: str, suffix: str = "") -> str:
        return f"{self.base_url}/v1/tasks/runs/{quote(run_id, safe='')}{suffix}"

    async def create_run(self, payload: Dict[str, Any], deadline_s: Optional[float] = None) -> UpstreamReply:
        return await self._request(
            "POST", f"{self.base_url}/v1/tasks/runs", deadline_s, json=payload, headers=self._headers(True)
        )

    async def fetch_result(self, run_id: str, wait_s: int, deadline_s: float) -> UpstreamReply:
        """Fetch the final result, letting upstream block for up to ``wait_s`` seconds."""
        params = {"timeout": wait_s} if wait_s > 0 else None
        return await self._request(
            "GET", self._run_url(run_id, "/result"), deadline_s, params=params, headers=self._headers()
        )

    async def get_run(self, run_id: str, deadline_s: float) -> UpstreamReply:
        return await self._request("GET", self._run_url(run_id), deadline_s, headers=self._headers())

    async def search(self, payload: Dict[str, Any], deadline_s: Optional[float] = None) -> UpstreamReply:
        return await self._request(
            "POST", f"{self.base_url}/v1beta/search", deadline_s, json=payload, headers=self._headers(True)
        )

    async def _request(self, method: str, url: str, deadline_s: Optional[float], **kwargs: Any) -> UpstreamReply:
        """Shared request helper; the deadline cancels the in-flight call."""
        try:
            resp = await asyncio.wait_for(self.client.request(method, url, **kwargs), timeout=deadline_s)
        except asyncio.TimeoutError:
            return UpstreamReply(timed_out=True, error=f"deadline of {deadline_s}s exceeded")
        except httpx.TimeoutException as exc:
            return UpstreamReply(timed_out=True, error=str(exc) or "timeout")
        except httpx.RequestError as exc:
            return UpstreamReply(error=str(exc) or exc.__class__.__name__)
        data: Any = None
        try:
            data = resp.json()
        except ValueError:
            data = None
        return UpstreamReply(
            status_code=resp.status_code,
            data=data,
            text=resp.text,
            headers={k.lower(): v for k, v in resp.headers.items()},
        )

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()

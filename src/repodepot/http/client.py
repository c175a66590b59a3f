"""Thin HTTP client for the orchestration API, used by the CLI and by agents."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
LONG_POLL_SLACK_SECONDS = 10.0


class ApiClientError(RuntimeError):
    """API call failed: transport error or non-2xx response."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class ApiClient:
    """JSON client for ``/api`` endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            headers={"Content-Type": "application/json"},
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> ApiClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    # -- progress -------------------------------------------------------------

    def create_plan(self, task_id: str, steps: Sequence[str]) -> dict[str, Any]:
        return self._request("POST", f"/api/progress/{task_id}/plan", json={"steps": list(steps)})

    def update_step(
        self,
        task_id: str,
        index: int,
        *,
        status: str,
        note: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"status": status}
        if note is not None:
            body["note"] = note
        return self._request("PUT", f"/api/progress/{task_id}/step/{index}", json=body)

    def add_step(self, task_id: str, description: str, *, after_index: int) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/api/progress/{task_id}/step",
            json={"description": description, "afterIndex": after_index},
        )

    def ask(
        self,
        task_id: str,
        question: str,
        *,
        choices: Sequence[str] | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"question": question}
        if choices:
            body["choices"] = list(choices)
        return self._request("POST", f"/api/progress/{task_id}/ask", json=body)

    def wait_for_answer(self, task_id: str, *, timeout_ms: int) -> dict[str, Any]:
        return self._request(
            "GET",
            f"/api/progress/{task_id}/answer",
            params={"timeout": timeout_ms},
            timeout=timeout_ms / 1000.0 + LONG_POLL_SLACK_SECONDS,
        )

    def answer(self, task_id: str, answer: str) -> dict[str, Any]:
        return self._request("POST", f"/api/progress/{task_id}/answer", json={"answer": answer})

    def get_progress(self, task_id: str) -> dict[str, Any]:
        return self._request("GET", f"/api/progress/{task_id}")

    # -- agents ---------------------------------------------------------------

    def start_agent(self, repo_id: int, *, work_dir: str | None = None) -> dict[str, Any]:
        body = {"workDir": work_dir} if work_dir else {}
        return self._request("POST", f"/api/agent/start/{repo_id}", json=body)

    def stop_agent(self, repo_id: int) -> dict[str, Any]:
        return self._request("POST", f"/api/agent/stop/{repo_id}")

    def agent_status(self, repo_id: int) -> dict[str, Any]:
        return self._request("GET", f"/api/agent/status/{repo_id}")

    def running_agents(self) -> dict[str, Any]:
        return self._request("GET", "/api/agent/running")

    def start_all(self) -> dict[str, Any]:
        return self._request("POST", "/api/agent/start-all")

    def stop_all(self) -> dict[str, Any]:
        return self._request("POST", "/api/agent/stop-all")

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        extra: dict[str, Any] = {}
        if timeout is not None:
            extra["timeout"] = httpx.Timeout(timeout, connect=5.0)
        try:
            response = self._client.request(method, url, json=json, params=params, **extra)
        except httpx.HTTPError as exc:
            logger.debug("Request %s %s failed: %s", method, url, exc)
            raise ApiClientError(f"Cannot reach {self.base_url}: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {"data": payload}
        if not response.is_success:
            message = (
                payload.get("error") or payload.get("detail") or f"HTTP {response.status_code}"
            )
            raise ApiClientError(
                str(message),
                status_code=response.status_code,
                code=payload.get("code"),
            )
        return payload

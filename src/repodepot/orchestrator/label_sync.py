"""Best-effort mirroring of agent status onto GitHub issue labels."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Protocol
from urllib.parse import quote

import httpx

from repodepot.orchestrator.errors import ExternalSyncError
from repodepot.orchestrator.models import AgentStatus, StatusTransition

logger = logging.getLogger(__name__)

DEFAULT_LABEL_PREFIX = "claude-code-"
DEFAULT_GITHUB_API_URL = "https://api.github.com"


def agent_label(status: AgentStatus, *, prefix: str = DEFAULT_LABEL_PREFIX) -> str:
    """Label name for an agent status, e.g. ``claude-code-in-progress``."""

    return f"{prefix}{status.value.replace('_', '-')}"


class LabelSync(Protocol):
    def submit(
        self,
        transition: StatusTransition,
        *,
        repo_full_name: str,
    ) -> Future[None] | None: ...

    def close(self) -> None: ...


class NullLabelSync:
    """Used when no GitHub token is configured."""

    def submit(self, transition: StatusTransition, *, repo_full_name: str) -> None:
        logger.debug(
            "Label sync disabled; skipping %s -> %s for task %s",
            transition.previous.value,
            transition.current.value,
            transition.task.id,
        )

    def close(self) -> None:
        return None


class GitHubLabelSync:
    """Swap the agent-status label on the task's issue after each committed transition.

    Requests run on a single background thread so callers never wait on GitHub.
    Failures are logged and dropped; local state stays authoritative.
    """

    def __init__(
        self,
        *,
        token: str,
        api_url: str = DEFAULT_GITHUB_API_URL,
        timeout_seconds: float = 10.0,
        label_prefix: str = DEFAULT_LABEL_PREFIX,
        client: httpx.Client | None = None,
    ) -> None:
        self.label_prefix = label_prefix
        self._client = client or httpx.Client(
            base_url=api_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "User-Agent": "repodepot-label-sync",
            },
        )
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="label-sync")

    def submit(self, transition: StatusTransition, *, repo_full_name: str) -> Future[None] | None:
        if transition.task.github_issue_number is None:
            return None
        return self._executor.submit(self._sync_safely, transition, repo_full_name)

    def apply(self, transition: StatusTransition, *, repo_full_name: str) -> None:
        """Remove the previous status label and add the current one."""

        number = transition.task.github_issue_number
        if number is None:
            return
        issue_path = f"/repos/{repo_full_name}/issues/{number}/labels"
        if transition.previous != transition.current:
            old_label = agent_label(transition.previous, prefix=self.label_prefix)
            response = self._client.delete(f"{issue_path}/{quote(old_label, safe='')}")
            # 404: the label was never applied.
            if not response.is_success and response.status_code != httpx.codes.NOT_FOUND:
                raise ExternalSyncError(
                    f"Removing label {old_label} from {repo_full_name}#{number} "
                    f"failed: HTTP {response.status_code}",
                )
        new_label = agent_label(transition.current, prefix=self.label_prefix)
        response = self._client.post(issue_path, json={"labels": [new_label]})
        if not response.is_success:
            raise ExternalSyncError(
                f"Adding label {new_label} to {repo_full_name}#{number} "
                f"failed: HTTP {response.status_code}",
            )

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self._client.close()

    def _sync_safely(self, transition: StatusTransition, repo_full_name: str) -> None:
        try:
            self.apply(transition, repo_full_name=repo_full_name)
        except (ExternalSyncError, httpx.HTTPError) as exc:
            logger.warning(
                "Label sync failed for task %s (%s -> %s): %s",
                transition.task.id,
                transition.previous.value,
                transition.current.value,
                exc,
            )

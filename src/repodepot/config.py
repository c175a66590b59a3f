"""Runtime configuration for the orchestration server, agents and CLI client."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from repodepot.orchestrator.label_sync import DEFAULT_GITHUB_API_URL, DEFAULT_LABEL_PREFIX
from repodepot.orchestrator.supervisor import DEFAULT_AGENT_COMMAND

LOG_LEVELS = ("critical", "error", "warning", "info", "debug")


@dataclass(slots=True)
class ServerSettings:
    """HTTP server settings."""

    host: str = "127.0.0.1"
    port: int = 3001
    api_url: str = "http://localhost:3001"
    log_level: str = "info"


@dataclass(slots=True)
class AgentSettings:
    """Worker agent process settings."""

    command_template: str = DEFAULT_AGENT_COMMAND
    log_dir: Path = Path("agent-logs")
    log_buffer_lines: int = 100
    status_log_lines: int = 20
    stop_grace_seconds: float = 5.0


@dataclass(slots=True)
class ClarificationSettings:
    """Long-poll settings for waiting on human answers."""

    poll_interval_ms: int = 500
    max_wait_ms: int = 30_000
    max_waiters: int = 200


@dataclass(slots=True)
class GitHubSettings:
    """Issue label mirroring; disabled without a token."""

    token: str | None = None
    api_url: str = DEFAULT_GITHUB_API_URL
    timeout_seconds: float = 10.0
    label_prefix: str = DEFAULT_LABEL_PREFIX

    @property
    def enabled(self) -> bool:
        return bool(self.token)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".repodepot.db")
    sqlite_busy_timeout_ms: int = 5_000
    server: ServerSettings = field(default_factory=ServerSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    clarification: ClarificationSettings = field(default_factory=ClarificationSettings)
    github: GitHubSettings = field(default_factory=GitHubSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        port = int(os.getenv("REPODEPOT_PORT", "3001"))
        return cls(
            db_path=db_path or Path(os.getenv("REPODEPOT_DB_PATH", ".repodepot.db")),
            sqlite_busy_timeout_ms=int(os.getenv("REPODEPOT_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            server=ServerSettings(
                host=os.getenv("REPODEPOT_HOST", "127.0.0.1"),
                port=port,
                api_url=os.getenv("REPODEPOT_API_URL", f"http://localhost:{port}").rstrip("/"),
                log_level=os.getenv("REPODEPOT_LOG_LEVEL", "info").strip().lower(),
            ),
            agent=AgentSettings(
                command_template=os.getenv("REPODEPOT_AGENT_COMMAND", DEFAULT_AGENT_COMMAND),
                log_dir=Path(os.getenv("REPODEPOT_AGENT_LOG_DIR", "agent-logs")),
                log_buffer_lines=int(os.getenv("REPODEPOT_AGENT_LOG_BUFFER_LINES", "100")),
                status_log_lines=int(os.getenv("REPODEPOT_AGENT_STATUS_LOG_LINES", "20")),
                stop_grace_seconds=float(os.getenv("REPODEPOT_AGENT_STOP_GRACE_SECONDS", "5")),
            ),
            clarification=ClarificationSettings(
                poll_interval_ms=int(os.getenv("REPODEPOT_ANSWER_POLL_INTERVAL_MS", "500")),
                max_wait_ms=int(os.getenv("REPODEPOT_ANSWER_MAX_WAIT_MS", "30000")),
                max_waiters=int(os.getenv("REPODEPOT_ANSWER_MAX_WAITERS", "200")),
            ),
            github=GitHubSettings(
                token=os.getenv("REPODEPOT_GITHUB_TOKEN") or None,
                api_url=os.getenv("REPODEPOT_GITHUB_API_URL", DEFAULT_GITHUB_API_URL),
                timeout_seconds=float(os.getenv("REPODEPOT_GITHUB_TIMEOUT_SECONDS", "10")),
                label_prefix=os.getenv("REPODEPOT_LABEL_PREFIX", DEFAULT_LABEL_PREFIX),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the server cannot run with."""

        if not 0 < self.server.port < 65_536:
            raise ValueError("REPODEPOT_PORT must be between 1 and 65535.")
        _validate_http_url("REPODEPOT_API_URL", self.server.api_url)
        if self.server.log_level not in LOG_LEVELS:
            raise ValueError(
                f"REPODEPOT_LOG_LEVEL must be one of: {', '.join(LOG_LEVELS)}.",
            )
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("REPODEPOT_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if "{prompt}" not in self.agent.command_template:
            raise ValueError("REPODEPOT_AGENT_COMMAND must include the {prompt} placeholder.")
        if self.agent.log_buffer_lines <= 0:
            raise ValueError("REPODEPOT_AGENT_LOG_BUFFER_LINES must be > 0.")
        if self.agent.status_log_lines < 0:
            raise ValueError("REPODEPOT_AGENT_STATUS_LOG_LINES must be >= 0.")
        if self.agent.stop_grace_seconds < 0:
            raise ValueError("REPODEPOT_AGENT_STOP_GRACE_SECONDS must be >= 0.")
        if self.clarification.poll_interval_ms <= 0:
            raise ValueError("REPODEPOT_ANSWER_POLL_INTERVAL_MS must be > 0.")
        if self.clarification.max_wait_ms < 0:
            raise ValueError("REPODEPOT_ANSWER_MAX_WAIT_MS must be >= 0.")
        if self.clarification.max_waiters <= 0:
            raise ValueError("REPODEPOT_ANSWER_MAX_WAITERS must be > 0.")
        if self.github.enabled:
            _validate_http_url("REPODEPOT_GITHUB_API_URL", self.github.api_url)
            if self.github.timeout_seconds <= 0:
                raise ValueError("REPODEPOT_GITHUB_TIMEOUT_SECONDS must be > 0.")


def _validate_http_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )

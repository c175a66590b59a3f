"""Supervisor for one worker-agent OS process per repository."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import IO

from repodepot.orchestrator.errors import (
    AlreadyRunningError,
    NotRunningError,
    NoWorkDirError,
    SpawnFailedError,
)
from repodepot.orchestrator.models import (
    AgentStatusView,
    RepositoryView,
    RunningAgent,
    StopAllReport,
)
from repodepot.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_AGENT_COMMAND = "claude -p {prompt} --dangerously-skip-permissions --verbose"
LOG_SEPARATOR = "=" * 50
ERROR_PREFIX = "[ERROR] "


@dataclass(slots=True, eq=False)
class _TrackedProcess:
    repo_id: int
    process: subprocess.Popen[str]
    started_at: datetime
    log_path: Path
    log_handle: IO[str]
    buffer: deque[str]
    write_lock: threading.Lock = field(default_factory=threading.Lock)
    readers: list[threading.Thread] = field(default_factory=list)
    reaper: threading.Thread | None = None

    def record(self, line: str) -> None:
        with self.write_lock:
            self.buffer.append(line)
            if not self.log_handle.closed:
                self.log_handle.write(line + "\n")
                self.log_handle.flush()

    def snapshot(self, limit: int) -> list[str]:
        with self.write_lock:
            lines = list(self.buffer)
        return lines[-limit:] if limit > 0 else []


class ProcessSupervisor:
    """Spawns, tracks and terminates worker agents keyed by repository id.

    The process table is the only in-memory state of the service. Each entry is
    removed when its process exits, when it is stopped, or when spawning fails.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        command_template: str = DEFAULT_AGENT_COMMAND,
        log_dir: Path,
        api_url: str,
        buffer_lines: int = 100,
        status_lines: int = 20,
        stop_grace_seconds: float = 5.0,
    ) -> None:
        self.command_template = command_template
        self.log_dir = log_dir
        self.api_url = api_url
        self.buffer_lines = max(1, buffer_lines)
        self.status_lines = max(0, status_lines)
        self.stop_grace_seconds = max(0.0, stop_grace_seconds)
        self._lock = threading.Lock()
        self._table: dict[int, _TrackedProcess] = {}
        self._starting: dict[int, datetime] = {}
        self._live: set[_TrackedProcess] = set()

    def start(
        self,
        repository: RepositoryView,
        *,
        work_dir: str | None = None,
        prompt: str | None = None,
    ) -> RunningAgent:
        """Spawn the agent for a repository; at most one per repository id.

        The slot is reserved under the table lock and the process is spawned outside
        it, so a slow spawn does not hold up status queries or the reapers.
        """

        repo_id = repository.id
        resolved_dir = work_dir or repository.local_path
        started_at = utc_now()
        with self._lock:
            existing = self._table.get(repo_id)
            if existing is not None:
                raise AlreadyRunningError(repo_id, existing.started_at)
            if repo_id in self._starting:
                raise AlreadyRunningError(repo_id, self._starting[repo_id])
            if not resolved_dir:
                raise NoWorkDirError(repo_id)
            self._starting[repo_id] = started_at

        try:
            entry = self._spawn(repository, resolved_dir, started_at, prompt)
        except BaseException:
            with self._lock:
                self._starting.pop(repo_id, None)
            raise

        with self._lock:
            self._starting.pop(repo_id, None)
            self._table[repo_id] = entry
            self._live.add(entry)
            self._start_threads(entry)

        logger.info(
            "Started agent for repository %s (pid=%s, log=%s)",
            repo_id,
            entry.process.pid,
            entry.log_path,
        )
        return _to_running_agent(entry)

    def _spawn(
        self,
        repository: RepositoryView,
        work_dir: str,
        started_at: datetime,
        prompt: str | None,
    ) -> _TrackedProcess:
        repo_id = repository.id
        run_args = build_run_args(
            command_template=self.command_template,
            prompt=prompt or build_agent_prompt(repository, api_url=self.api_url),
        )
        log_path = self.log_dir / f"agent-{repo_id}-{int(started_at.timestamp() * 1000)}.log"
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            log_handle = log_path.open("a", encoding="utf-8")
        except OSError as error:
            raise SpawnFailedError(f"Cannot open agent log file {log_path}: {error}") from error
        log_handle.write(
            f"=== Agent started at {started_at.isoformat()} ===\n"
            f"Repository: {repository.full_name}\n"
            f"Working directory: {work_dir}\n"
            f"Log file: {log_path}\n"
            f"{LOG_SEPARATOR}\n\n",
        )
        log_handle.flush()

        env = os.environ.copy()
        env["REPODEPOT_API_URL"] = self.api_url
        env["REPODEPOT_REPO_ID"] = str(repo_id)
        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=work_dir,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as error:
            log_handle.write(f"[FATAL] Failed to start: {error}\n")
            log_handle.close()
            logger.error("Agent for repository %s failed to start: %s", repo_id, error)
            raise SpawnFailedError(
                f"Failed to start agent for repository {repo_id}: {error}",
            ) from error

        return _TrackedProcess(
            repo_id=repo_id,
            process=process,
            started_at=started_at,
            log_path=log_path,
            log_handle=log_handle,
            buffer=deque(maxlen=self.buffer_lines),
        )

    def stop(self, repo_id: int) -> RunningAgent:
        """Send SIGTERM and forget the process; the reaper still records its exit."""

        with self._lock:
            entry = self._table.pop(repo_id, None)
        if entry is None:
            raise NotRunningError(repo_id)
        _terminate(entry)
        logger.info("Stopped agent for repository %s (pid=%s)", repo_id, entry.process.pid)
        return _to_running_agent(entry)

    def is_running(self, repo_id: int) -> bool:
        with self._lock:
            return repo_id in self._table or repo_id in self._starting

    def status(self, repo_id: int) -> AgentStatusView:
        with self._lock:
            entry = self._table.get(repo_id)
        if entry is None:
            return AgentStatusView(repo_id=repo_id, running=False)
        return AgentStatusView(
            repo_id=repo_id,
            running=True,
            started_at=entry.started_at,
            pid=entry.process.pid,
            log_file=str(entry.log_path),
            recent_logs=entry.snapshot(self.status_lines),
        )

    def list_running(self) -> list[RunningAgent]:
        with self._lock:
            entries = sorted(self._table.values(), key=lambda item: item.repo_id)
        return [_to_running_agent(entry) for entry in entries]

    def stop_all(self) -> StopAllReport:
        with self._lock:
            entries = list(self._table.values())
            self._table.clear()
        for entry in entries:
            _terminate(entry)
        stopped = sorted(entry.repo_id for entry in entries)
        if stopped:
            logger.info("Stopped %s agent(s): %s", len(stopped), stopped)
        return StopAllReport(stopped_count=len(stopped), stopped_repos=stopped)

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop every agent and wait for their exits to be recorded."""

        self.stop_all()
        grace = self.stop_grace_seconds if timeout is None else max(0.0, timeout)
        with self._lock:
            live = list(self._live)
        for entry in live:
            try:
                entry.process.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                logger.warning(
                    "Agent for repository %s ignored SIGTERM; killing pid %s",
                    entry.repo_id,
                    entry.process.pid,
                )
                try:
                    entry.process.kill()
                except ProcessLookupError:
                    pass
            if entry.reaper is not None:
                entry.reaper.join(timeout=grace + 1.0)

    def _start_threads(self, entry: _TrackedProcess) -> None:
        streams: list[tuple[IO[str] | None, str]] = [
            (entry.process.stdout, ""),
            (entry.process.stderr, ERROR_PREFIX),
        ]
        for stream, prefix in streams:
            if stream is None:
                continue
            reader = threading.Thread(
                target=_pump_stream,
                args=(entry, stream, prefix),
                name=f"agent-{entry.repo_id}-{'stderr' if prefix else 'stdout'}",
                daemon=True,
            )
            entry.readers.append(reader)
            reader.start()
        entry.reaper = threading.Thread(
            target=self._reap,
            args=(entry,),
            name=f"agent-{entry.repo_id}-reaper",
            daemon=True,
        )
        entry.reaper.start()

    def _reap(self, entry: _TrackedProcess) -> None:
        returncode = entry.process.wait()
        for reader in entry.readers:
            reader.join()
        footer = f"\n=== Agent exited with code {returncode} at {utc_now().isoformat()} ==="
        with entry.write_lock:
            entry.buffer.append(footer.strip())
            entry.log_handle.write(footer + "\n")
            entry.log_handle.close()
        with self._lock:
            if self._table.get(entry.repo_id) is entry:
                del self._table[entry.repo_id]
            self._live.discard(entry)
        logger.info(
            "Agent for repository %s exited with code %s (pid=%s)",
            entry.repo_id,
            returncode,
            entry.process.pid,
        )


def build_run_args(*, command_template: str, prompt: str) -> list[str]:
    """Render the agent command template into argv; ``{prompt}`` is shell-quoted."""

    stripped = command_template.strip()
    if not stripped:
        raise SpawnFailedError("Agent command template is empty.")
    if "{prompt}" not in stripped:
        raise SpawnFailedError("Agent command template must include {prompt}.")
    try:
        rendered = stripped.format(prompt=shlex.quote(prompt))
    except (KeyError, IndexError) as error:
        raise SpawnFailedError(
            f"Unsupported command template placeholder: {error}",
        ) from error
    argv = shlex.split(rendered)
    if not argv:
        raise SpawnFailedError("Agent command template rendered empty command.")
    return argv


def build_agent_prompt(repository: RepositoryView, *, api_url: str) -> str:
    """Instructions handed to the worker agent on start."""

    base = api_url.rstrip("/")
    return (
        f'You are an autonomous coding agent working on repository "{repository.full_name}".\n'
        f"\n"
        f"IMPORTANT - Progress Reporting:\n"
        f"Before starting work on any task, declare your plan using the CLI:\n"
        f'  repodepot progress plan --task <taskId> "Step 1" "Step 2" "Step 3" ...\n'
        f"\n"
        f"As you complete each step, update progress:\n"
        f"  repodepot progress update --task <taskId> --step <index> --status done\n"
        f"\n"
        f"If you need clarification from the user:\n"
        f'  repodepot progress ask --task <taskId> "Your question" '
        f'--choices "Option A" "Option B"\n'
        f"  # Then wait for the response:\n"
        f"  repodepot progress wait --task <taskId> --timeout 3600\n"
        f"\n"
        f"If you discover additional steps needed:\n"
        f'  repodepot progress add --task <taskId> --after <index> "New step description"\n'
        f"\n"
        f"Your workflow:\n"
        f"1. Fetch pending tasks: curl {base}/api/tasks/{repository.id}\n"
        f"2. Claim a task: curl -X POST {base}/api/tasks/{{taskId}}/claim\n"
        f"3. Create your plan with repodepot progress plan\n"
        f"4. Work through each step, reporting progress\n"
        f"5. Ask for clarification if requirements are ambiguous\n"
        f"6. Commit with message referencing the GitHub issue\n"
        f"7. Mark complete: curl -X POST {base}/api/tasks/{{taskId}}/complete "
        f'-H "Content-Type: application/json" -d \'{{"summary": "your summary"}}\'\n'
        f"\n"
        f"Work autonomously and complete the task."
    )


def _pump_stream(entry: _TrackedProcess, stream: IO[str], prefix: str) -> None:
    try:
        for raw_line in iter(stream.readline, ""):
            entry.record(prefix + raw_line.rstrip("\r\n"))
    except (OSError, ValueError):
        logger.exception("Reading output of agent for repository %s failed", entry.repo_id)
    finally:
        stream.close()


def _terminate(entry: _TrackedProcess) -> None:
    try:
        entry.process.terminate()
    except ProcessLookupError:
        logger.debug("Agent for repository %s already exited", entry.repo_id)


def _to_running_agent(entry: _TrackedProcess) -> RunningAgent:
    return RunningAgent(
        repo_id=entry.repo_id,
        started_at=entry.started_at,
        pid=entry.process.pid,
        log_file=str(entry.log_path),
    )

"""Subprocess-based executor speaking line-delimited JSON over stdio."""

from __future__ import annotations

import json
import logging
import os
import queue
import shlex
import subprocess
import threading
import time
from concurrent.futures import Future, InvalidStateError
from typing import Any
from uuid import uuid4

from queue_agent.orchestrator.executor.base import ExecutorClosedError, ExecutorError
from queue_agent.orchestrator.models import ExecutorOutcome, Job

logger = logging.getLogger(__name__)

MSG_PING = "PING"
MSG_PONG = "PONG"
MSG_START_JOB = "START_JOB"
MSG_ACK = "ACK"
MSG_JOB_SUCCESS = "JOB_SUCCESS"
MSG_JOB_FAILED = "JOB_FAILED"

_CLOSED = object()
_MALFORMED = object()


class SubprocessExecutor:
    """One child process per job instance.

    A reader thread routes replies (PONG/ACK) to the pending request and
    resolves ``outcome`` on JOB_SUCCESS/JOB_FAILED. EOF on stdout without an
    outcome resolves ``outcome`` as CRASHED.
    """

    def __init__(
        self,
        *,
        run_args: list[str],
        env: dict[str, str] | None = None,
        close_grace_seconds: float = 2.0,
    ) -> None:
        self.executor_id = f"exec-{uuid4().hex[:12]}"
        self.outcome: Future[ExecutorOutcome] = Future()
        self._close_grace_seconds = close_grace_seconds
        self._replies: queue.Queue[Any] = queue.Queue()
        self._write_lock = threading.Lock()
        self._closed = threading.Event()
        try:
            self._process = subprocess.Popen(  # noqa: S603
                run_args,
                env=env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError as error:
            raise ExecutorError(f"Executor command not found: {run_args[0]}") from error
        except OSError as error:
            raise ExecutorError(f"Executor failed to start: {error}") from error

        self._reader = threading.Thread(
            target=self._read_stdout,
            daemon=True,
            name=f"{self.executor_id}-stdout",
        )
        self._stderr_reader = threading.Thread(
            target=self._drain_stderr,
            daemon=True,
            name=f"{self.executor_id}-stderr",
        )
        self._reader.start()
        self._stderr_reader.start()

    @property
    def pid(self) -> int:
        return self._process.pid

    def ping(self, *, timeout_seconds: float) -> bool:
        reply = self._request({"type": MSG_PING}, expected=MSG_PONG, timeout_seconds=timeout_seconds)
        return reply.get("ready") is True

    def start(self, job: Job, *, timeout_seconds: float) -> bool:
        reply = self._request(
            {"type": MSG_START_JOB, "job": job.to_payload()},
            expected=MSG_ACK,
            timeout_seconds=timeout_seconds,
        )
        received = reply.get("received")
        if not isinstance(received, bool):
            raise ExecutorError(f"Malformed acknowledgment: {reply!r}")
        return received

    def close(self) -> None:
        """Close stdin and give the child a short grace period to exit."""

        self._close_stdin()
        try:
            self._process.wait(timeout=self._close_grace_seconds)
        except subprocess.TimeoutExpired:
            _terminate_process(self._process)

    def terminate(self) -> None:
        self._close_stdin()
        _terminate_process(self._process)

    def _request(
        self,
        message: dict[str, Any],
        *,
        expected: str,
        timeout_seconds: float,
    ) -> dict[str, Any]:
        if self._closed.is_set():
            raise ExecutorClosedError(f"Executor {self.executor_id} is closed.")
        line = json.dumps(message) + "\n"
        try:
            with self._write_lock:
                assert self._process.stdin is not None
                self._process.stdin.write(line)
                self._process.stdin.flush()
        except (BrokenPipeError, ValueError, OSError) as error:
            raise ExecutorClosedError(f"Executor {self.executor_id} is closed.") from error

        deadline = time.monotonic() + timeout_seconds
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ExecutorError(f"No {expected} from executor within {timeout_seconds:g}s.")
            try:
                reply = self._replies.get(timeout=remaining)
            except queue.Empty as error:
                raise ExecutorError(
                    f"No {expected} from executor within {timeout_seconds:g}s.",
                ) from error
            if reply is _CLOSED:
                raise ExecutorClosedError(f"Executor {self.executor_id} closed during request.")
            if reply is _MALFORMED:
                raise ExecutorError(f"Malformed reply while waiting for {expected}.")
            if reply.get("type") == expected:
                return reply
            # late reply to an earlier request that already timed out
            logger.debug("Executor %s: skipping stale reply %r", self.executor_id, reply)

    def _read_stdout(self) -> None:
        assert self._process.stdout is not None
        for raw_line in self._process.stdout:
            line = raw_line.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Executor %s: malformed line %r", self.executor_id, line[:200])
                self._replies.put(_MALFORMED)
                continue
            if not isinstance(message, dict):
                self._replies.put(_MALFORMED)
                continue

            message_type = message.get("type")
            if message_type == MSG_JOB_SUCCESS:
                self._resolve(ExecutorOutcome.succeeded(job_id=message.get("jobId")))
            elif message_type == MSG_JOB_FAILED:
                self._resolve(
                    ExecutorOutcome.failed(
                        str(message.get("error") or "executor reported failure"),
                        job_id=message.get("jobId"),
                    ),
                )
            else:
                self._replies.put(message)

        self._closed.set()
        self._replies.put(_CLOSED)
        returncode = self._process.wait()
        self._resolve(ExecutorOutcome.crashed(reason=f"executor exited with code {returncode}"))

    def _drain_stderr(self) -> None:
        assert self._process.stderr is not None
        for raw_line in self._process.stderr:
            logger.debug("Executor %s stderr: %s", self.executor_id, raw_line.rstrip())

    def _resolve(self, outcome: ExecutorOutcome) -> None:
        # first terminal signal wins; later ones (including EOF) are dropped
        if self.outcome.done():
            return
        try:
            self.outcome.set_result(outcome)
        except InvalidStateError:
            return

    def _close_stdin(self) -> None:
        with self._write_lock:
            stdin = self._process.stdin
            if stdin is None or stdin.closed:
                return
            try:
                stdin.close()
            except OSError:
                return


class SubprocessExecutorFactory:
    """Spawns executors from a command template.

    Supported placeholders: ``{url}`` and ``{job_id}``.
    """

    def __init__(self, command_template: str, *, close_grace_seconds: float = 2.0) -> None:
        self.command_template = command_template
        self.close_grace_seconds = close_grace_seconds

    def create(self, job: Job) -> SubprocessExecutor:
        run_args = build_run_args(
            command_template=self.command_template,
            url=job.target_url,
            job_id=job.id,
        )
        env = os.environ.copy()
        env["QUEUE_AGENT_JOB_ID"] = job.id
        env["QUEUE_AGENT_TARGET_URL"] = job.target_url
        executor = SubprocessExecutor(
            run_args=run_args,
            env=env,
            close_grace_seconds=self.close_grace_seconds,
        )
        logger.debug(
            "Spawned executor %s (pid=%s) for job %s",
            executor.executor_id,
            executor.pid,
            job.id,
        )
        return executor


def build_run_args(*, command_template: str, url: str, job_id: str) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ExecutorError("Executor command template is empty.")
    try:
        rendered = stripped.format(url=shlex.quote(url), job_id=shlex.quote(job_id))
    except (KeyError, IndexError) as error:
        raise ExecutorError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise ExecutorError("Executor command template rendered empty command.")
    return argv


def _terminate_process(process: subprocess.Popen[str]) -> None:
    if process.poll() is not None:
        return
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        try:
            process.wait(timeout=2)
        except subprocess.TimeoutExpired:
            logger.warning("Executor process %s did not exit after kill", process.pid)

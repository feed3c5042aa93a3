"""Runtime configuration for the queue agent."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_API_URL = "http://localhost:3000"


@dataclass(slots=True)
class ApiSettings:
    """Queue backend connection settings."""

    base_url: str = DEFAULT_API_URL
    api_key: str | None = None
    request_timeout_seconds: float = 30.0
    connect_timeout_seconds: float = 10.0


@dataclass(slots=True)
class OrchestratorSettings:
    """Job lifecycle limits."""

    job_timeout_seconds: float = 120.0
    max_local_retries: int = 3
    crash_retry_delay_seconds: float = 2.0
    readiness_attempts: int = 10
    readiness_interval_seconds: float = 1.0
    max_retry_delay_seconds: float = 30.0
    ping_timeout_seconds: float = 5.0
    ack_timeout_seconds: float = 10.0
    history_capacity: int = 50
    persist_local_retries: bool = False


@dataclass(slots=True)
class SchedulerSettings:
    """Poll scheduler settings."""

    poll_interval_seconds: float = 60.0


@dataclass(slots=True)
class ExecutorSettings:
    """How executor contexts are spawned."""

    command_template: str = ""
    close_grace_seconds: float = 2.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".queue_agent.db")
    api: ApiSettings = field(default_factory=ApiSettings)
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("QUEUE_AGENT_DB_PATH", ".queue_agent.db")),
            api=ApiSettings(
                base_url=os.getenv("QUEUE_AGENT_API_URL", DEFAULT_API_URL).strip(),
                api_key=os.getenv("QUEUE_AGENT_API_KEY") or None,
                request_timeout_seconds=float(
                    os.getenv("QUEUE_AGENT_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
                connect_timeout_seconds=float(
                    os.getenv("QUEUE_AGENT_CONNECT_TIMEOUT_SECONDS", "10.0"),
                ),
            ),
            orchestrator=OrchestratorSettings(
                job_timeout_seconds=float(os.getenv("QUEUE_AGENT_JOB_TIMEOUT_SECONDS", "120")),
                max_local_retries=int(os.getenv("QUEUE_AGENT_MAX_LOCAL_RETRIES", "3")),
                crash_retry_delay_seconds=float(
                    os.getenv("QUEUE_AGENT_CRASH_RETRY_DELAY_SECONDS", "2.0"),
                ),
                readiness_attempts=int(os.getenv("QUEUE_AGENT_RETRY_ATTEMPTS", "10")),
                readiness_interval_seconds=float(
                    os.getenv("QUEUE_AGENT_READINESS_INTERVAL_SECONDS", "1.0"),
                ),
                max_retry_delay_seconds=float(
                    os.getenv("QUEUE_AGENT_MAX_RETRY_DELAY_SECONDS", "30.0"),
                ),
                ping_timeout_seconds=float(os.getenv("QUEUE_AGENT_PING_TIMEOUT_SECONDS", "5.0")),
                ack_timeout_seconds=float(os.getenv("QUEUE_AGENT_ACK_TIMEOUT_SECONDS", "10.0")),
                history_capacity=int(os.getenv("QUEUE_AGENT_HISTORY_CAPACITY", "50")),
                persist_local_retries=_env_bool(
                    "QUEUE_AGENT_PERSIST_LOCAL_RETRIES",
                    default=False,
                ),
            ),
            scheduler=SchedulerSettings(
                poll_interval_seconds=float(os.getenv("QUEUE_AGENT_POLL_INTERVAL_SECONDS", "60")),
            ),
            executor=ExecutorSettings(
                command_template=os.getenv("QUEUE_AGENT_EXECUTOR_COMMAND", ""),
                close_grace_seconds=float(
                    os.getenv("QUEUE_AGENT_EXECUTOR_CLOSE_GRACE_SECONDS", "2.0"),
                ),
            ),
        )

    def validate_for_api(self) -> None:
        """Raise configuration error if the backend URL is unusable."""

        _validate_api_url(self.api.base_url)
        if self.api.request_timeout_seconds <= 0:
            raise ValueError("QUEUE_AGENT_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.api.connect_timeout_seconds <= 0:
            raise ValueError("QUEUE_AGENT_CONNECT_TIMEOUT_SECONDS must be > 0.")

    def validate_for_run(self) -> None:
        """Raise configuration error if the agent cannot poll with these settings."""

        self.validate_for_api()
        if not self.api.api_key:
            raise ValueError(
                "API key is not configured. Set QUEUE_AGENT_API_KEY.",
            )
        orchestrator = self.orchestrator
        if orchestrator.job_timeout_seconds <= 0:
            raise ValueError("QUEUE_AGENT_JOB_TIMEOUT_SECONDS must be > 0.")
        if orchestrator.max_local_retries < 0:
            raise ValueError("QUEUE_AGENT_MAX_LOCAL_RETRIES must be >= 0.")
        if orchestrator.crash_retry_delay_seconds < 0:
            raise ValueError("QUEUE_AGENT_CRASH_RETRY_DELAY_SECONDS must be >= 0.")
        if orchestrator.readiness_attempts < 1:
            raise ValueError("QUEUE_AGENT_RETRY_ATTEMPTS must be >= 1.")
        if orchestrator.history_capacity < 1:
            raise ValueError("QUEUE_AGENT_HISTORY_CAPACITY must be >= 1.")
        if self.scheduler.poll_interval_seconds < 1:
            raise ValueError("QUEUE_AGENT_POLL_INTERVAL_SECONDS must be >= 1.")
        template = self.executor.command_template.strip()
        if not template:
            raise ValueError(
                "Executor command is not configured. Set QUEUE_AGENT_EXECUTOR_COMMAND.",
            )
        if "{url}" not in template:
            raise ValueError("QUEUE_AGENT_EXECUTOR_COMMAND must include {url}.")


def _validate_api_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid API URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")

"""CLI entrypoint for queue-agent."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from queue_agent import __version__
from queue_agent.http.queue_client import QueueClientError
from queue_agent.orchestrator.controllers import (
    AgentCliController,
    AgentDbCommand,
    AgentHistoryCommand,
    AgentRunCommand,
    AgentSettingsCommand,
)

click.rich_click.USE_MARKDOWN = True
AGENT_CONTROLLER = AgentCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite state DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="queue-agent")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging level.",
)
def queue_agent(log_level: str) -> None:
    """Queue agent CLI.

    Polls the job queue, hands each job to an executor process and reports
    the outcome back to the backend.
    """

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@queue_agent.command("run")
@db_path_option
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run a single poll tick and wait for the job, or poll until stopped.",
)
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for poll ticks in loop mode.",
)
def run(db_path: Path | None, once: bool, max_ticks: int | None) -> None:
    """Enable polling and run the scheduler loop (Ctrl+C to stop)."""

    _invoke(
        lambda: AGENT_CONTROLLER.run(
            AgentRunCommand(db_path=db_path, once=once, max_ticks=max_ticks),
        ),
    )


@queue_agent.command("start")
@db_path_option
def start(db_path: Path | None) -> None:
    """Check backend health and enable polling."""

    _invoke(lambda: AGENT_CONTROLLER.start(AgentDbCommand(db_path=db_path)))


@queue_agent.command("stop")
@db_path_option
def stop(db_path: Path | None) -> None:
    """Disable polling; jobs in flight still finish."""

    _invoke(lambda: AGENT_CONTROLLER.stop(AgentDbCommand(db_path=db_path)))


@queue_agent.command("status")
@db_path_option
def status(db_path: Path | None) -> None:
    """Show polling state, stats and settings."""

    _invoke(lambda: AGENT_CONTROLLER.status(AgentDbCommand(db_path=db_path)))


@queue_agent.command("history")
@db_path_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max history entries to print.",
)
def history(db_path: Path | None, limit: int) -> None:
    """List recent jobs, newest first."""

    _invoke(
        lambda: AGENT_CONTROLLER.history(AgentHistoryCommand(db_path=db_path, limit=limit)),
    )


@queue_agent.command("health")
@db_path_option
def health(db_path: Path | None) -> None:
    """Call the backend health endpoint."""

    _invoke(lambda: AGENT_CONTROLLER.health(AgentDbCommand(db_path=db_path)))


@queue_agent.command("reset-stuck")
@db_path_option
@click.confirmation_option(
    prompt='Reset all jobs stuck in "processing" back to "pending"?',
)
def reset_stuck(db_path: Path | None) -> None:
    """Move backend items stuck in processing back to pending."""

    _invoke(lambda: AGENT_CONTROLLER.reset_stuck(AgentDbCommand(db_path=db_path)))


@queue_agent.command("cancel-pending")
@db_path_option
@click.confirmation_option(prompt="Cancel all pending jobs? This cannot be undone.")
def cancel_pending(db_path: Path | None) -> None:
    """Delete every pending backend item."""

    _invoke(lambda: AGENT_CONTROLLER.cancel_pending(AgentDbCommand(db_path=db_path)))


@queue_agent.command("reset-stats")
@db_path_option
def reset_stats(db_path: Path | None) -> None:
    """Zero local counters and clear job history."""

    _invoke(lambda: AGENT_CONTROLLER.reset_stats(AgentDbCommand(db_path=db_path)))


@queue_agent.command("settings")
@db_path_option
@click.option(
    "--retry-attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Readiness handshake attempts per dispatch.",
)
@click.option(
    "--max-retry-delay",
    "max_retry_delay_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Cap for the handshake backoff delay, in seconds.",
)
@click.option(
    "--poll-interval",
    "poll_interval_seconds",
    type=click.FloatRange(min=1),
    default=None,
    help="Seconds between poll ticks.",
)
def settings(
    db_path: Path | None,
    retry_attempts: int | None,
    max_retry_delay_seconds: float | None,
    poll_interval_seconds: float | None,
) -> None:
    """Show or update persisted settings."""

    _invoke(
        lambda: AGENT_CONTROLLER.update_settings(
            AgentSettingsCommand(
                db_path=db_path,
                retry_attempts=retry_attempts,
                max_retry_delay_seconds=max_retry_delay_seconds,
                poll_interval_seconds=poll_interval_seconds,
            ),
        ),
    )


def _invoke(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (QueueClientError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    queue_agent()

"""
Command-line entry point for the Ticket Auto-Reply Pipeline.

Runs the complete pipeline against a local ticket fixture:
1. Load auto-reply options and the ticket fixture
2. Post the given message as a customer reply
3. Dispatch the auto-reply job and drain the job lane
4. Print the replies the pipeline delivered
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import click
import yaml

from .config import AppConfig, AutoReplyConfig, ConfigError, get_config, load_plugin_config
from .dispatcher import Dispatcher
from .engine import DecisionEngine
from .jobs import AutoReplyLane, JobRunner, build_broker
from .memory_store import InMemoryTicketStore
from .models import WorkItem
from .notifier import TelegramNotifier


def setup_logging(level: str) -> None:
    """
    Configure application logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR).
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("dramatiq").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Error during pipeline execution."""
    pass


def validate_config(config: AppConfig) -> None:
    """
    Validate configuration before running.

    Args:
        config: Application configuration.

    Raises:
        PipelineError: If configuration is invalid.
    """
    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        raise PipelineError(
            f"Configuration validation failed with {len(errors)} error(s)"
        )


def load_fixture(path: Path) -> InMemoryTicketStore:
    """
    Load a YAML ticket fixture into an in-memory store.

    Raises:
        PipelineError: If the fixture cannot be read or parsed.
    """
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise PipelineError(f"Fixture {path} must contain a mapping")
        return InMemoryTicketStore.from_fixture(data)
    except (OSError, yaml.YAMLError) as e:
        raise PipelineError(f"Cannot load fixture {path}: {e}") from e
    except (KeyError, TypeError, ValueError) as e:
        raise PipelineError(f"Invalid fixture {path}: {e}") from e


def run_pipeline(
    config: AppConfig,
    options: AutoReplyConfig,
    store: InMemoryTicketStore,
    ticket_id: int,
    message: str,
) -> list[str]:
    """
    Post a customer message and run the auto-reply pipeline for it.

    Args:
        config: Application configuration.
        options: Resolved auto-reply options.
        store: Ticket store holding the ticket.
        ticket_id: Ticket to reply on.
        message: Customer message text.

    Returns:
        Replies delivered by the pipeline for this message.

    Raises:
        PipelineError: If the ticket does not exist.
    """
    ticket = store.get_ticket(ticket_id)
    if ticket is None:
        raise PipelineError(f"Ticket {ticket_id} not found in fixture")

    replies_before = len(store.system_replies(ticket_id))
    store.add_message(ticket_id, ticket.user_id, message)

    notifier = TelegramNotifier(config.telegram) if config.telegram.is_enabled else None

    def report_failure(item: WorkItem) -> None:
        click.echo(
            f"Auto-reply failed for ticket {item.ticket_id} after {item.attempt} attempt(s)",
            err=True,
        )

    runner = JobRunner(
        store=store,
        engine=DecisionEngine(store),
        delivery=store,
        notifier=notifier,
        on_failure=report_failure,
    )
    lane = AutoReplyLane(
        build_broker(),
        runner,
        queue_name=config.worker.queue_name,
        max_attempts=config.worker.max_attempts,
        retry_delay=config.worker.retry_delay,
        attempt_timeout=config.worker.attempt_timeout,
    )
    dispatcher = Dispatcher(store, lane, options.model_dump())
    if dispatcher.handle_user_replied(ticket) is None:
        logger.warning("No auto-reply job was dispatched")
        return []

    lane.drain(concurrency=config.worker.concurrency)

    return store.system_replies(ticket_id)[replies_before:]


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML or JSON file with auto-reply options",
)
@click.option(
    "--fixture",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML file with tickets, messages and accounts",
)
@click.option("--ticket-id", type=int, default=1, show_default=True, help="Ticket to reply on")
@click.option("--message", "-m", type=str, help="Customer message to answer")
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug logging",
)
@click.option(
    "--validate-only",
    is_flag=True,
    default=False,
    help="Only validate configuration without running the pipeline",
)
def main(
    config_path: Optional[Path],
    fixture: Optional[Path],
    ticket_id: int,
    message: Optional[str],
    debug: bool,
    validate_only: bool,
) -> None:
    """
    Ticket Auto-Reply Pipeline.

    Decides whether a customer message is escalated, answered from keyword
    rules or answered by an LLM, and delivers the reply.
    """
    try:
        config = get_config()
        setup_logging("DEBUG" if debug else config.log_level)

        config_path = config_path or config.plugin_config_path
        options = load_plugin_config(config_path) if config_path else AutoReplyConfig()

        if validate_only:
            logger.info("Validating configuration...")
            validate_config(config)
            logger.info("Configuration is valid!")
            return

        if not fixture or not message:
            raise click.UsageError("--fixture and --message are required unless --validate-only is set")

        store = load_fixture(fixture)
        replies = run_pipeline(config, options, store, ticket_id, message)

        if not replies:
            click.echo("No auto-reply sent.")
        for reply in replies:
            click.echo(reply)

    except (PipelineError, ConfigError) as e:
        click.echo(f"Pipeline failed: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nOperation cancelled by user", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()

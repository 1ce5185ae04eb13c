"""CLI entrypoint for mdclaw."""

import logging
import os
from pathlib import Path

import rich_click as click

from mdclaw import __version__
from mdclaw.orchestrator.controllers import (
    GroupRegisterCommand,
    GroupsListCommand,
    OrchestratorCliController,
    QuarantineListCommand,
    RunCommand,
    SendMessageCommand,
    TasksListCommand,
)

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="mdclaw")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Override MDCLAW_LOG_LEVEL.",
)
def mdclaw(log_level: str | None) -> None:
    """Chat-driven agent orchestrator CLI."""

    _configure_logging(log_level)


@mdclaw.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def run(db_path: Path | None) -> None:
    """Run the orchestrator until SIGINT/SIGTERM."""

    try:
        exit_code = ORCHESTRATOR_CONTROLLER.run(RunCommand(db_path=db_path))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    if exit_code != 0:
        raise SystemExit(exit_code)


@mdclaw.group()
def groups() -> None:
    """Registered group commands."""


@groups.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def groups_list(db_path: Path | None) -> None:
    """List registered groups."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.list_groups(GroupsListCommand(db_path=db_path)))


@groups.command("register")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Display name of the group.")
@click.option("--folder", required=True, help="Workspace folder name (unique).")
@click.option("--jid", "chat_jid", required=True, help="Conversation identifier.")
@click.option("--trigger", default=None, help="Trigger word; defaults to @<assistant name>.")
@click.option(
    "--requires-trigger/--no-requires-trigger",
    default=True,
    show_default=True,
    help="Only react to messages that mention the trigger.",
)
def groups_register(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    folder: str,
    chat_jid: str,
    trigger: str | None,
    requires_trigger: bool,
) -> None:
    """Register a conversation as a group and create its workspace."""

    try:
        lines = ORCHESTRATOR_CONTROLLER.register_group(
            GroupRegisterCommand(
                db_path=db_path,
                name=name,
                folder=folder,
                chat_jid=chat_jid,
                trigger=trigger,
                requires_trigger=requires_trigger,
            ),
        )
    except (ValueError, RuntimeError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@mdclaw.group()
def tasks() -> None:
    """Scheduled task commands."""


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--group", "group_folder", default=None, help="Only tasks owned by this folder.")
@click.option(
    "--all",
    "include_finished",
    is_flag=True,
    default=False,
    help="Include completed and canceled tasks.",
)
def tasks_list(db_path: Path | None, group_folder: str | None, include_finished: bool) -> None:
    """List scheduled tasks."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.list_tasks(
            TasksListCommand(
                db_path=db_path,
                group_folder=group_folder,
                include_finished=include_finished,
            ),
        ),
    )


@mdclaw.group()
def ipc() -> None:
    """Command bus inspection."""


@ipc.command("quarantine")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def ipc_quarantine(db_path: Path | None) -> None:
    """List quarantined command files with their rejection reason."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.list_quarantine(QuarantineListCommand(db_path=db_path)))


@mdclaw.command("send")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--jid", "chat_jid", required=True, help="Conversation identifier.")
@click.option("--sender", default="local-user", show_default=True, help="Sender id.")
@click.option("--sender-name", default=None, help="Sender display name.")
@click.argument("text")
def send(
    db_path: Path | None,
    chat_jid: str,
    sender: str,
    sender_name: str | None,
    text: str,
) -> None:
    """Store an inbound message as if it arrived from a channel."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.send(
            SendMessageCommand(
                db_path=db_path,
                chat_jid=chat_jid,
                sender=sender,
                sender_name=sender_name,
                text=text,
            ),
        ),
    )


def _configure_logging(log_level: str | None) -> None:
    level_name = (log_level or os.getenv("MDCLAW_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    mdclaw()

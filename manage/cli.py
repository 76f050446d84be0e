"""
Commands for inspecting and editing the env file by hand. The pipeline itself never goes through these; it
calls EnvStore directly.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import click
from algolib.config import AlgoDBWorkspace
from algolib.errors import AlgoDBError

from util.log import ALGODB_OUTPUT_LOGGER_NAME


@click.group(name="env")
def manage_group() -> None:
    pass


@manage_group.command("get")
@click.pass_obj
@click.argument("key", type=str)
@click.option(
    "--default",
    type=str,
    default="",
    help="What to print if the key (or the whole env file) doesn't exist.",
)
def manage_get(algodb_workspace: AlgoDBWorkspace, key: str, default: str) -> None:
    value = algodb_workspace.env_store.get(key, default)
    logging.getLogger(ALGODB_OUTPUT_LOGGER_NAME).info(value)


@manage_group.command("set")
@click.pass_obj
@click.argument("key", type=str)
@click.argument("value", type=str)
def manage_set(algodb_workspace: AlgoDBWorkspace, key: str, value: str) -> None:
    try:
        algodb_workspace.env_store.set(key, value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e
    except AlgoDBError as e:
        raise click.ClickException(str(e)) from e


@manage_group.command("unset")
@click.pass_obj
@click.argument("key", type=str)
def manage_unset(algodb_workspace: AlgoDBWorkspace, key: str) -> None:
    try:
        removed = algodb_workspace.env_store.remove(key)
    except AlgoDBError as e:
        raise click.ClickException(str(e)) from e
    if not removed:
        logging.info(f"{key} was not set in {algodb_workspace.env_store.path}")


@manage_group.command("has", help="Exit with status 0 if KEY is set and 1 otherwise.")
@click.pass_obj
@click.argument("key", type=str)
def manage_has(algodb_workspace: AlgoDBWorkspace, key: str) -> None:
    sys.exit(0 if algodb_workspace.env_store.has(key) else 1)


@manage_group.command("comment")
@click.pass_obj
@click.argument("text", type=str)
def manage_comment(algodb_workspace: AlgoDBWorkspace, text: str) -> None:
    try:
        algodb_workspace.env_store.comment(text)
    except AlgoDBError as e:
        raise click.ClickException(str(e)) from e


@manage_group.command("list", help="Print every entry and any lines that were skipped while parsing.")
@click.pass_obj
def manage_list(algodb_workspace: AlgoDBWorkspace) -> None:
    output_logger = logging.getLogger(ALGODB_OUTPUT_LOGGER_NAME)
    result = algodb_workspace.env_store.load()
    if result.file_missing:
        output_logger.info(f"{algodb_workspace.env_store.path} does not exist.")
        return
    for key, value in result.entries.items():
        output_logger.info(f"{key}={value}")
    for warning in result.warnings:
        output_logger.info(f"warning: {warning}")


@manage_group.command("backup")
@click.pass_obj
@click.option(
    "--backup-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Where to put the backup. The default is backup_dir from the config.",
)
def manage_backup(
    algodb_workspace: AlgoDBWorkspace, backup_dir: Optional[Path]
) -> None:
    if backup_dir is None:
        backup_dir = algodb_workspace.config.backup_path
    try:
        backup_path = algodb_workspace.env_store.backup(backup_dir)
    except AlgoDBError as e:
        raise click.ClickException(str(e)) from e
    logging.getLogger(ALGODB_OUTPUT_LOGGER_NAME).info(
        f"Backed up {algodb_workspace.env_store.path} to {backup_path}"
    )


@manage_group.command("restore", help="Restore the env file from its most recent backup.")
@click.pass_obj
@click.option(
    "--backup-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Where to look for backups. The default is backup_dir from the config.",
)
def manage_restore(
    algodb_workspace: AlgoDBWorkspace, backup_dir: Optional[Path]
) -> None:
    if backup_dir is None:
        backup_dir = algodb_workspace.config.backup_path
    try:
        backup_path = algodb_workspace.env_store.restore(backup_dir)
    except AlgoDBError as e:
        raise click.ClickException(str(e)) from e
    logging.getLogger(ALGODB_OUTPUT_LOGGER_NAME).info(
        f"Restored {algodb_workspace.env_store.path} from {backup_path}"
    )

"""
At a high level, this file's goal is to (1) size PostgreSQL's settings for this host and (2) install the
resulting postgresql.conf/pg_hba.conf into the data directory.

The flow is probe -> compute -> persist -> render -> write -> restart. Everything up to and including render
happens before we touch any file in the data directory, so a bad template or a missing value stops the
pipeline before PostgreSQL ever sees a half-written config.
"""

import logging
import os
import shutil
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import click
from algolib.atomic import atomic_write_text
from algolib.config import AlgoDBWorkspace
from algolib.envstore import EnvStore
from algolib.errors import (
    AlgoDBError,
    ConfigWriteError,
    DataDirNotFoundError,
    ServiceRestartError,
)
from algolib.hardware import HardwareProfile, check_requirements, probe
from algolib.template import load_template, render
from algolib.tuning import TuningProfile, compute

from util.log import ALGODB_OUTPUT_LOGGER_NAME
from util.shell import ShellCommandError, subprocess_run

SHIPPED_TEMPLATES_PATH = Path(__file__).parent / "templates"
POSTGRESQL_CONF_TEMPLATE_NAME = "postgresql.conf.template"
PG_HBA_CONF_TEMPLATE_NAME = "pg_hba.conf.template"
POSTGRESQL_CONF_NAME = "postgresql.conf"
PG_HBA_CONF_NAME = "pg_hba.conf"

# Every line of postgresql.conf.template that contains this marker is only kept if TimescaleDB is installed.
TIMESCALEDB_FEATURE = "timescaledb"

PG_VERSION_KEY = "PG_VERSION"
PG_SERVICE_KEY = "PG_SERVICE"
PG_DATA_DIR_KEY = "PG_DATA_DIR"
TIMESCALEDB_INSTALLED_KEY = "TIMESCALEDB_INSTALLED"

CONFIG_FILE_MODE = 0o600
POSTGRES_OS_USER = "postgres"
DEFAULT_RESTART_WAIT_SECONDS = 5.0


@dataclass
class ConfigureResult:
    data_dir: Path
    service: str
    hardware: HardwareProfile
    tuning: TuningProfile
    written_paths: list[Path]
    backup_paths: list[Path]
    restarted: bool


@click.group(name="postgres")
@click.pass_obj
def postgres_group(algodb_workspace: AlgoDBWorkspace) -> None:
    pass


@postgres_group.command(
    name="bootstrap",
    help="Detect the host's hardware and record it (plus the installation date and hostname) in the env file.",
)
@click.pass_obj
def postgres_bootstrap(algodb_workspace: AlgoDBWorkspace) -> None:
    try:
        hardware = bootstrap_environment(algodb_workspace)
    except AlgoDBError as e:
        raise click.ClickException(str(e)) from e
    logging.getLogger(ALGODB_OUTPUT_LOGGER_NAME).info(
        f"Detected hardware: {hardware.cpu_cores} cores, {hardware.total_mem_gb}GB RAM, {hardware.storage_size} storage"
    )


@postgres_group.command(
    name="tune",
    help="Print the settings that would be used for this host (or for the given hardware). Does not write anything.",
)
@click.pass_obj
@click.option(
    "--cores",
    type=click.IntRange(min=1),
    default=None,
    help="Size for this many cores instead of detecting them.",
)
@click.option(
    "--mem-kb",
    type=click.IntRange(min=1),
    default=None,
    help="Size for this much memory (in kB) instead of detecting it.",
)
def postgres_tune(
    algodb_workspace: AlgoDBWorkspace, cores: Optional[int], mem_kb: Optional[int]
) -> None:
    hardware = probe()
    if cores is not None or mem_kb is not None:
        hardware = HardwareProfile(
            cpu_cores=cores if cores is not None else hardware.cpu_cores,
            total_mem_kb=mem_kb if mem_kb is not None else hardware.total_mem_kb,
            storage_size=hardware.storage_size,
            cpu_model=hardware.cpu_model,
            os_version=hardware.os_version,
        )
    tuning = compute(hardware)
    output_logger = logging.getLogger(ALGODB_OUTPUT_LOGGER_NAME)
    output_logger.info(
        f"# {hardware.cpu_cores} cores, {hardware.total_mem_kb} kB RAM"
    )
    for name, value in tuning.to_substitutions().items():
        output_logger.info(f"{name.lower()} = {value}")


@postgres_group.command(
    name="render",
    help="Render a template using the values in the env file and the settings computed for this host.",
)
@click.pass_obj
@click.argument("template_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the result here instead of printing it.",
)
@click.option(
    "--gate",
    "gates",
    multiple=True,
    help="A feature marker this template gates. Lines containing it are dropped unless the feature is enabled with --feature.",
)
@click.option(
    "--feature",
    "features",
    multiple=True,
    help="Enable a gated feature.",
)
def postgres_render(
    algodb_workspace: AlgoDBWorkspace,
    template_path: Path,
    output: Optional[Path],
    gates: tuple[str, ...],
    features: tuple[str, ...],
) -> None:
    hardware = probe()
    substitutions = build_substitutions(
        algodb_workspace.env_store,
        hardware,
        compute(hardware),
        resolve_pg_version(algodb_workspace),
    )
    try:
        rendered = render(
            load_template(template_path, gates), substitutions, frozenset(features)
        )
        if output is None:
            logging.getLogger(ALGODB_OUTPUT_LOGGER_NAME).info(rendered)
        else:
            write_config_file(output, rendered)
    except AlgoDBError as e:
        raise click.ClickException(str(e)) from e


@postgres_group.command(
    name="configure",
    help="Tune PostgreSQL for this host: compute settings, write postgresql.conf and pg_hba.conf, and restart the service.",
)
@click.pass_obj
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="The PostgreSQL data directory. The default is PG_DATA_DIR from the env file, then the standard locations.",
)
@click.option(
    "--no-restart",
    is_flag=True,
    help="Write the configuration but don't restart the service.",
)
def postgres_configure(
    algodb_workspace: AlgoDBWorkspace, data_dir: Optional[Path], no_restart: bool
) -> None:
    try:
        result = configure_postgres(
            algodb_workspace, data_dir=data_dir, restart=not no_restart
        )
    except AlgoDBError as e:
        raise click.ClickException(str(e)) from e

    output_logger = logging.getLogger(ALGODB_OUTPUT_LOGGER_NAME)
    for written_path in result.written_paths:
        output_logger.info(f"Wrote {written_path}")
    if result.restarted:
        output_logger.info(
            f"PostgreSQL ({result.service}) has been configured and restarted."
        )
    else:
        output_logger.info(
            f"Configuration ready. Restart {result.service} to apply it."
        )


def bootstrap_environment(
    algodb_workspace: AlgoDBWorkspace, hardware: Optional[HardwareProfile] = None
) -> HardwareProfile:
    """
    The hardware is always re-detected. What we write to the env file is a cache for diagnostics, never an input.
    """
    if hardware is None:
        hardware = probe()
    for warning in check_requirements(hardware):
        logging.warning(warning)

    env_store = algodb_workspace.env_store
    for key, value in hardware.to_env().items():
        env_store.set(key, value)
    if not env_store.has("INSTALLATION_DATE"):
        env_store.set("INSTALLATION_DATE", datetime.now().strftime("%Y-%m-%d"))
    env_store.set("HOSTNAME", os.uname().nodename)
    if not env_store.has(PG_VERSION_KEY):
        env_store.set(PG_VERSION_KEY, algodb_workspace.config.default_pg_version)

    logging.info(
        f"Detected hardware: {hardware.cpu_cores} cores, {hardware.total_mem_gb}GB RAM"
    )
    return hardware


def configure_postgres(
    algodb_workspace: AlgoDBWorkspace,
    data_dir: Optional[Path] = None,
    restart: bool = True,
    hardware: Optional[HardwareProfile] = None,
    restart_wait_seconds: float = DEFAULT_RESTART_WAIT_SECONDS,
) -> ConfigureResult:
    env_store = algodb_workspace.env_store
    env_store.load()

    pg_version = resolve_pg_version(algodb_workspace)
    logging.info(f"Configuring PostgreSQL {pg_version}")
    service = resolve_service_name(env_store, pg_version)
    env_store.set(PG_SERVICE_KEY, service)
    data_dir = resolve_data_dir(algodb_workspace, pg_version, data_dir)
    env_store.set(PG_DATA_DIR_KEY, str(data_dir))

    if hardware is None:
        hardware = probe()
    tuning = compute(hardware)
    for key, value in tuning.to_env().items():
        env_store.set(key, value)

    timescaledb_installed = (
        env_store.get(TIMESCALEDB_INSTALLED_KEY, "false") or "false"
    ).lower() == "true"
    if timescaledb_installed:
        logging.info("TimescaleDB is installed. Including TimescaleDB configuration.")
    else:
        logging.info("TimescaleDB is not installed. Skipping TimescaleDB configuration.")
    enabled_features = (
        frozenset({TIMESCALEDB_FEATURE}) if timescaledb_installed else frozenset()
    )

    # Render everything before writing anything.
    substitutions = build_substitutions(env_store, hardware, tuning, pg_version)
    templates_path = get_templates_path(algodb_workspace)
    rendered_files = {
        data_dir / POSTGRESQL_CONF_NAME: render(
            load_template(
                templates_path / POSTGRESQL_CONF_TEMPLATE_NAME, [TIMESCALEDB_FEATURE]
            ),
            substitutions,
            enabled_features,
        ),
        data_dir / PG_HBA_CONF_NAME: render(
            load_template(templates_path / PG_HBA_CONF_TEMPLATE_NAME),
            substitutions,
        ),
    }

    backup_paths = {
        config_path: backup_config_file(config_path) for config_path in rendered_files
    }
    write_config_files(rendered_files, backup_paths)

    if restart:
        restart_postgres_service(service, restart_wait_seconds)

    return ConfigureResult(
        data_dir=data_dir,
        service=service,
        hardware=hardware,
        tuning=tuning,
        written_paths=list(rendered_files),
        backup_paths=[
            backup_path for backup_path in backup_paths.values() if backup_path is not None
        ],
        restarted=restart,
    )


def get_templates_path(algodb_workspace: AlgoDBWorkspace) -> Path:
    if algodb_workspace.config.templates_path is not None:
        return algodb_workspace.config.templates_path
    return SHIPPED_TEMPLATES_PATH


def resolve_pg_version(algodb_workspace: AlgoDBWorkspace) -> str:
    pg_version = algodb_workspace.env_store.get(
        PG_VERSION_KEY, algodb_workspace.config.default_pg_version
    )
    assert pg_version is not None
    return pg_version


def build_substitutions(
    env_store: EnvStore,
    hardware: HardwareProfile,
    tuning: TuningProfile,
    pg_version: str,
) -> dict[str, str]:
    """
    The env file provides the base values so that templates can refer to anything recorded there. The freshly
    computed values are layered on top since the hardware is re-detected on every run.
    """
    substitutions = dict(env_store.load().entries)
    substitutions.update(tuning.to_substitutions())
    substitutions.update(
        {
            "PG_VERSION": pg_version,
            "CPU_CORES": str(hardware.cpu_cores),
            "TOTAL_MEM_GB": str(hardware.total_mem_gb),
            "GENERATION_DATE": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        }
    )
    return substitutions


def resolve_service_name(env_store: EnvStore, pg_version: str) -> str:
    """
    Use PG_SERVICE if it's recorded. Otherwise, ask systemd which PostgreSQL unit exists. If systemd can't tell
    us (e.g. in a container), fall back to the name the PGDG packages use.
    """
    default_service = f"postgresql-{pg_version}"
    stored_service = env_store.get(PG_SERVICE_KEY)
    if stored_service:
        return stored_service

    returncode, output = subprocess_run(
        "systemctl list-unit-files --type=service --no-legend",
        check_returncode=False,
        verbose=False,
    )
    if returncode != 0:
        logging.warning(
            f"Could not list systemd units, using default service name {default_service}"
        )
        return default_service

    unit_names = [line.split()[0] for line in output.splitlines() if line.strip()]
    for preferred in [f"{default_service}.service", "postgresql.service"]:
        if preferred in unit_names:
            return preferred.removesuffix(".service")
    for unit_name in unit_names:
        if "postgresql" in unit_name.lower():
            return unit_name.removesuffix(".service")

    logging.warning(
        f"Could not determine PostgreSQL service name. Using default: {default_service}"
    )
    return default_service


def resolve_data_dir(
    algodb_workspace: AlgoDBWorkspace,
    pg_version: str,
    data_dir: Optional[Path] = None,
) -> Path:
    """
    An explicitly passed data_dir must exist. Otherwise we try PG_DATA_DIR from the env file, then the
    candidates from the config, then the standard RHEL and Debian locations.
    """
    if data_dir is not None:
        if not data_dir.is_dir():
            raise DataDirNotFoundError([data_dir])
        return data_dir

    candidates: list[Path] = []
    stored_data_dir = algodb_workspace.env_store.get(PG_DATA_DIR_KEY)
    if stored_data_dir:
        candidates.append(Path(stored_data_dir))
    candidates.extend(algodb_workspace.config.data_dir_candidates)
    candidates.extend(
        [
            Path(f"/var/lib/pgsql/{pg_version}/data"),
            Path(f"/var/lib/postgresql/{pg_version}/data"),
        ]
    )

    for candidate in candidates:
        if candidate.is_dir():
            return candidate
    raise DataDirNotFoundError(candidates)


def backup_config_file(path: Path) -> Optional[Path]:
    """
    Copy `path` to `<path>.backup.<timestamp>` next to it. Returns None if there is nothing to back up.
    """
    if not path.exists():
        return None
    backup_path = path.with_name(
        f"{path.name}.backup.{datetime.now().strftime('%Y%m%d%H%M%S')}"
    )
    try:
        shutil.copy2(path, backup_path)
    except OSError as e:
        raise ConfigWriteError(backup_path, e) from e
    logging.info(f"Backed up {path} to {backup_path}")
    return backup_path


def write_config_file(path: Path, text: str) -> None:
    try:
        atomic_write_text(path, text, mode=CONFIG_FILE_MODE)
    except OSError as e:
        raise ConfigWriteError(path, e) from e
    _chown_to_postgres(path)


def write_config_files(
    rendered_files: dict[Path, str], backup_paths: dict[Path, Optional[Path]]
) -> None:
    """
    Write every file or none of them. If a write fails, the files already written are put back the way they
    were (from their backup, or deleted if they didn't exist before) and the ConfigWriteError is re-raised.
    """
    written_paths: list[Path] = []
    try:
        for config_path, rendered in rendered_files.items():
            write_config_file(config_path, rendered)
            written_paths.append(config_path)
    except ConfigWriteError:
        for written_path in written_paths:
            _roll_back_config_file(written_path, backup_paths.get(written_path))
        raise


def _roll_back_config_file(path: Path, backup_path: Optional[Path]) -> None:
    try:
        if backup_path is None:
            path.unlink()
        else:
            atomic_write_text(
                path, backup_path.read_text(encoding="utf-8"), mode=CONFIG_FILE_MODE
            )
            _chown_to_postgres(path)
    except OSError as e:
        logging.error(f"Could not roll back {path}, it holds the new configuration: {e}")
        return
    logging.warning(f"Rolled back {path} after a failed write")


def _chown_to_postgres(path: Path) -> None:
    # Only root can give a file away, and the postgres user only exists once PostgreSQL is installed.
    if os.geteuid() != 0:
        return
    try:
        shutil.chown(path, POSTGRES_OS_USER, POSTGRES_OS_USER)
    except LookupError:
        logging.warning(f"No {POSTGRES_OS_USER} user, leaving {path} owned by root")


def restart_postgres_service(
    service: str, wait_seconds: float = DEFAULT_RESTART_WAIT_SECONDS
) -> None:
    logging.info(f"Restarting {service} to apply changes")
    try:
        subprocess_run(f"systemctl restart {service}")
    except ShellCommandError as e:
        raise ServiceRestartError(service, e.output.strip() or str(e)) from e

    # The unit can report "activating" for a few seconds after a restart, so give it some time before checking.
    time.sleep(wait_seconds)
    returncode, _ = subprocess_run(
        f"systemctl is-active --quiet {service}", check_returncode=False
    )
    if returncode != 0:
        _, status = subprocess_run(
            f"systemctl status {service} --no-pager", check_returncode=False
        )
        raise ServiceRestartError(service, f"service is not active\n{status}")

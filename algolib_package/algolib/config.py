"""
This file contains everything needed to configure the toolkit itself (not PostgreSQL): where the env file
lives, where backups and logs go, and which templates to render.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from algolib.envstore import DEFAULT_ENV_FILE_PATH, EnvStore

ALGODB_CONFIG_PATH_ENVVAR = "ALGODB_CONFIG_PATH"
DEFAULT_ALGODB_CONFIG_PATH = Path("algodb_config.yaml")

DEFAULT_BACKUP_PATH = Path("/var/backups/algodb")
DEFAULT_LOG_PATH = Path("algodb_logs")
DEFAULT_PG_VERSION = "15"


@dataclass
class AlgoDBConfig:
    env_file_path: Path = DEFAULT_ENV_FILE_PATH
    backup_path: Path = DEFAULT_BACKUP_PATH
    log_path: Path = DEFAULT_LOG_PATH
    # None means the templates that ship with dbms/postgres/.
    templates_path: Optional[Path] = None
    default_pg_version: str = DEFAULT_PG_VERSION
    # Extra data directories to look in before the standard ones.
    data_dir_candidates: list[Path] = field(default_factory=list)


# Maps the keys of the yaml file to the fields of AlgoDBConfig. The yaml file uses shorter, dir-style names.
_YAML_KEY_TO_FIELD = {
    "env_file_path": "env_file_path",
    "backup_dir": "backup_path",
    "log_dir": "log_path",
    "templates_path": "templates_path",
    "default_pg_version": "default_pg_version",
    "data_dir_candidates": "data_dir_candidates",
}


def load_config(config_path: Path) -> AlgoDBConfig:
    """
    Reads the yaml config. A missing file means "use every default". Unknown keys are an error so that typos
    don't silently fall back to defaults.
    """
    if not config_path.exists():
        return AlgoDBConfig()

    with open(config_path) as f:
        raw: Optional[dict[str, Any]] = yaml.safe_load(f)
    if raw is None:
        return AlgoDBConfig()
    assert isinstance(
        raw, dict
    ), f"{config_path} should contain a mapping, not {type(raw).__name__}"

    unknown_keys = raw.keys() - _YAML_KEY_TO_FIELD.keys()
    if len(unknown_keys) > 0:
        raise ValueError(
            f"Unknown key(s) in {config_path}: {', '.join(sorted(unknown_keys))}"
        )

    kwargs: dict[str, Any] = {}
    path_fields = {
        f.name for f in fields(AlgoDBConfig) if f.name.endswith("_path")
    }
    for yaml_key, value in raw.items():
        field_name = _YAML_KEY_TO_FIELD[yaml_key]
        if field_name in path_fields:
            kwargs[field_name] = Path(value).expanduser()
        elif field_name == "data_dir_candidates":
            kwargs[field_name] = [Path(candidate).expanduser() for candidate in value]
        else:
            kwargs[field_name] = str(value)
    return AlgoDBConfig(**kwargs)


def get_config_path_from_env() -> Path:
    return Path(os.getenv(ALGODB_CONFIG_PATH_ENVVAR, str(DEFAULT_ALGODB_CONFIG_PATH)))


class AlgoDBWorkspace:
    """
    Everything a command needs: the toolkit config plus the env store built from it. One of these is created
    per invocation and handed to every command through the click context.
    """

    def __init__(self, config: AlgoDBConfig, env_store: Optional[EnvStore] = None):
        self.config = config
        self.env_store = (
            env_store if env_store is not None else EnvStore(config.env_file_path)
        )


def make_standard_algodb_workspace() -> AlgoDBWorkspace:
    """
    The "standard" way to make an AlgoDBWorkspace using the ALGODB_CONFIG_PATH envvar and the default path of
    algodb_config.yaml.
    """
    return AlgoDBWorkspace(load_config(get_config_path_from_env()))

import os
import shutil
import unittest
from pathlib import Path
from unittest.mock import patch

from algolib.config import (
    ALGODB_CONFIG_PATH_ENVVAR,
    AlgoDBConfig,
    AlgoDBWorkspace,
    load_config,
    make_standard_algodb_workspace,
)
from algolib.envstore import DEFAULT_ENV_FILE_PATH


class ConfigTests(unittest.TestCase):
    scratchspace_path: Path = Path()

    @classmethod
    def setUpClass(cls) -> None:
        cls.scratchspace_path = Path(__file__).parent / "test_config_scratchspace"

    def setUp(self) -> None:
        if self.scratchspace_path.exists():
            shutil.rmtree(self.scratchspace_path)
        self.scratchspace_path.mkdir(parents=True)
        self.config_path = self.scratchspace_path / "algodb_config.yaml"

    def tearDown(self) -> None:
        if self.scratchspace_path.exists():
            shutil.rmtree(self.scratchspace_path)

    def test_missing_config_means_defaults(self) -> None:
        config = load_config(self.config_path)
        self.assertEqual(config, AlgoDBConfig())
        self.assertEqual(config.env_file_path, DEFAULT_ENV_FILE_PATH)
        self.assertIsNone(config.templates_path)

    def test_empty_config_means_defaults(self) -> None:
        self.config_path.write_text("")
        self.assertEqual(load_config(self.config_path), AlgoDBConfig())

    def test_load_config(self) -> None:
        self.config_path.write_text(
            "env_file_path: /tmp/algodb/.env\n"
            "backup_dir: /tmp/algodb/backups\n"
            "log_dir: logs\n"
            "default_pg_version: 16\n"
            "data_dir_candidates:\n"
            "  - /srv/pgdata\n"
        )
        config = load_config(self.config_path)
        self.assertEqual(config.env_file_path, Path("/tmp/algodb/.env"))
        self.assertEqual(config.backup_path, Path("/tmp/algodb/backups"))
        self.assertEqual(config.log_path, Path("logs"))
        # yaml reads 16 as an int but versions are strings everywhere else.
        self.assertEqual(config.default_pg_version, "16")
        self.assertEqual(config.data_dir_candidates, [Path("/srv/pgdata")])

    def test_unknown_key(self) -> None:
        self.config_path.write_text("env_file: /tmp/.env\n")
        with self.assertRaises(ValueError):
            load_config(self.config_path)

    def test_make_standard_workspace(self) -> None:
        env_path = self.scratchspace_path / ".env"
        self.config_path.write_text(f"env_file_path: {env_path}\n")
        with patch.dict(os.environ, {ALGODB_CONFIG_PATH_ENVVAR: str(self.config_path)}):
            workspace = make_standard_algodb_workspace()
        self.assertIsInstance(workspace, AlgoDBWorkspace)
        self.assertEqual(workspace.env_store.path, env_path)


if __name__ == "__main__":
    unittest.main()

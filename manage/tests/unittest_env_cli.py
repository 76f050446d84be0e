import shutil
import unittest
from pathlib import Path

from algolib.config import AlgoDBConfig, AlgoDBWorkspace
from click.testing import CliRunner

from manage.cli import manage_group
from util.log import ALGODB_OUTPUT_LOGGER_NAME


class EnvCliTests(unittest.TestCase):
    scratchspace_path: Path = Path()

    @classmethod
    def setUpClass(cls) -> None:
        cls.scratchspace_path = Path(__file__).parent / "test_env_cli_scratchspace"

    def setUp(self) -> None:
        if self.scratchspace_path.exists():
            shutil.rmtree(self.scratchspace_path)
        self.scratchspace_path.mkdir(parents=True)
        self.env_path = self.scratchspace_path / ".env"
        self.backup_path = self.scratchspace_path / "backups"
        self.workspace = AlgoDBWorkspace(
            AlgoDBConfig(env_file_path=self.env_path, backup_path=self.backup_path)
        )

    def tearDown(self) -> None:
        if self.scratchspace_path.exists():
            shutil.rmtree(self.scratchspace_path)

    def invoke(self, *args: str) -> int:
        result = CliRunner().invoke(manage_group, list(args), obj=self.workspace)
        return result.exit_code

    def test_set_then_get(self) -> None:
        self.assertEqual(self.invoke("set", "PG_VERSION", "16"), 0)
        with self.assertLogs(ALGODB_OUTPUT_LOGGER_NAME, level="INFO") as cm:
            self.assertEqual(self.invoke("get", "PG_VERSION"), 0)
        self.assertEqual(cm.records[-1].getMessage(), "16")
        self.assertIn("PG_VERSION=16\n", self.env_path.read_text())

    def test_get_default(self) -> None:
        with self.assertLogs(ALGODB_OUTPUT_LOGGER_NAME, level="INFO") as cm:
            self.assertEqual(self.invoke("get", "MISSING", "--default", "none"), 0)
        self.assertEqual(cm.records[-1].getMessage(), "none")

    def test_set_invalid_key(self) -> None:
        self.assertEqual(self.invoke("set", "1BAD", "x"), 2)
        self.assertFalse(self.env_path.exists())

    def test_has(self) -> None:
        self.assertEqual(self.invoke("has", "A"), 1)
        self.invoke("set", "A", "1")
        self.assertEqual(self.invoke("has", "A"), 0)

    def test_unset(self) -> None:
        self.invoke("set", "A", "1")
        self.invoke("set", "B", "2")
        self.assertEqual(self.invoke("unset", "A"), 0)
        self.assertEqual(self.invoke("has", "A"), 1)
        self.assertEqual(self.invoke("has", "B"), 0)
        # Removing a key that isn't there is not an error.
        self.assertEqual(self.invoke("unset", "A"), 0)

    def test_comment(self) -> None:
        self.invoke("set", "A", "1")
        self.assertEqual(self.invoke("comment", "Tuned settings"), 0)
        self.assertTrue(self.env_path.read_text().endswith("# Tuned settings\n"))

    def test_list_reports_malformed_lines(self) -> None:
        self.env_path.write_text("A=1\nnot a setting\n")
        with self.assertLogs(ALGODB_OUTPUT_LOGGER_NAME, level="INFO") as cm:
            self.assertEqual(self.invoke("list"), 0)
        messages = [record.getMessage() for record in cm.records]
        self.assertIn("A=1", messages)
        self.assertTrue(any(message.startswith("warning: line 2") for message in messages))

    def test_backup_and_restore(self) -> None:
        self.invoke("set", "A", "1")
        self.assertEqual(self.invoke("backup"), 0)
        self.assertEqual(len(list(self.backup_path.iterdir())), 1)
        self.invoke("set", "A", "2")
        self.assertEqual(self.invoke("restore"), 0)
        self.assertEqual(self.workspace.env_store.get("A"), "1")

    def test_backup_missing_env_file(self) -> None:
        self.assertEqual(self.invoke("backup"), 1)

    def test_restore_without_backups(self) -> None:
        self.assertEqual(self.invoke("restore"), 1)


if __name__ == "__main__":
    unittest.main()

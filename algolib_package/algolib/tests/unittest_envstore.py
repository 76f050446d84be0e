import logging
import shutil
import threading
import unittest
from pathlib import Path

from algolib.envstore import (
    ENV_FILE_HEADER_TITLE,
    EnvStore,
    encode_value,
    parse_env_lines,
    unquote_value,
)
from algolib.errors import EnvFileNotFoundError, EnvStoreWriteError

# We use the root logger for unit tests to keep it separate from the standard logging subsystem which
#   uses the algodb.* loggers. Make it DEBUG to see the store's logs.
logging.basicConfig(level=logging.CRITICAL)


class EnvStoreTests(unittest.TestCase):
    scratchspace_path: Path = Path()

    @classmethod
    def setUpClass(cls) -> None:
        cls.scratchspace_path = Path(__file__).parent / "test_envstore_scratchspace"

    def setUp(self) -> None:
        if self.scratchspace_path.exists():
            shutil.rmtree(self.scratchspace_path)
        self.scratchspace_path.mkdir(parents=True)
        self.env_path = self.scratchspace_path / "config" / ".env"
        self.store = EnvStore(self.env_path)

    def tearDown(self) -> None:
        # You can comment this out if you want to inspect the scratchspace after a test (often used for debugging).
        if self.scratchspace_path.exists():
            shutil.rmtree(self.scratchspace_path)

    def write_env_file(self, text: str) -> None:
        self.env_path.parent.mkdir(parents=True, exist_ok=True)
        self.env_path.write_text(text)

    def test_get_missing_file_returns_default(self) -> None:
        self.assertEqual(self.store.get("PG_VERSION", "15"), "15")
        self.assertIsNone(self.store.get("PG_VERSION"))
        self.assertFalse(self.env_path.exists())

    def test_get_missing_key_returns_default(self) -> None:
        self.write_env_file("OTHER=1\n")
        self.assertEqual(self.store.get("PG_VERSION", "15"), "15")

    def test_get_unreadable_file_returns_default(self) -> None:
        # A directory where the file should be makes reading fail with an OSError.
        self.env_path.mkdir(parents=True)
        self.assertEqual(self.store.get("PG_VERSION", "15"), "15")
        self.assertFalse(self.store.has("PG_VERSION"))

    def test_load_missing_file(self) -> None:
        result = self.store.load()
        self.assertTrue(result.file_missing)
        self.assertEqual(result.entries, {})

    def test_set_creates_file_with_header(self) -> None:
        self.store.set("PG_VERSION", "16")
        lines = self.env_path.read_text().splitlines()
        self.assertEqual(lines[0], f"# {ENV_FILE_HEADER_TITLE}")
        self.assertTrue(lines[1].startswith("# Created on "))
        self.assertEqual(lines[2], "")
        self.assertEqual(lines[3], "PG_VERSION=16")
        self.assertEqual(self.store.get("PG_VERSION"), "16")

    def test_set_then_get_round_trips(self) -> None:
        values = [
            "plain",
            "",
            "with spaces",
            "a=b=c",
            "'single'",
            '"double"',
            "'mismatched\"",
            "'",
            "#not a comment",
            "trailing space ",
        ]
        for i, value in enumerate(values):
            key = f"KEY_{i}"
            self.store.set(key, value)
            self.assertEqual(self.store.get(key, "default"), value, value)

    def test_set_updates_in_place(self) -> None:
        self.write_env_file("# header\nA=1\nB=2\nC=3\n")
        self.store.set("B", "20")
        self.assertEqual(
            self.env_path.read_text().splitlines(), ["# header", "A=1", "B=20", "C=3"]
        )

    def test_set_dedupes_existing_duplicates(self) -> None:
        self.write_env_file("A=1\nB=2\nA=3\n# keep me\nA=4\n")
        self.store.set("A", "5")
        self.assertEqual(
            self.env_path.read_text().splitlines(), ["A=5", "B=2", "# keep me"]
        )
        self.assertEqual(self.store.get("A"), "5")

    def test_set_does_not_match_key_prefix(self) -> None:
        self.write_env_file("PG_VERSION_OLD=14\n")
        self.store.set("PG_VERSION", "16")
        self.assertEqual(self.store.get("PG_VERSION_OLD"), "14")
        self.assertEqual(self.store.get("PG_VERSION"), "16")

    def test_set_rejects_invalid_key_and_newline(self) -> None:
        with self.assertRaises(ValueError):
            self.store.set("1BAD", "x")
        with self.assertRaises(ValueError):
            self.store.set("BAD-KEY", "x")
        with self.assertRaises(ValueError):
            self.store.set("GOOD", "two\nlines")
        self.assertFalse(self.env_path.exists())

    def test_set_updates_context(self) -> None:
        self.store.set("PG_VERSION", "16")
        self.assertEqual(self.store.context["PG_VERSION"], "16")
        # A second store on the same file hasn't loaded or set anything.
        self.assertNotIn("PG_VERSION", EnvStore(self.env_path).context)

    def test_context_is_read_only(self) -> None:
        self.store.set("PG_VERSION", "16")
        with self.assertRaises(TypeError):
            self.store.context["PG_VERSION"] = "17"  # type: ignore[index]

    def test_load_populates_context(self) -> None:
        self.write_env_file("A=1\nB='2'\n")
        self.store.load()
        self.assertEqual(dict(self.store.context), {"A": "1", "B": "2"})

    def test_remove(self) -> None:
        self.write_env_file("A=1\nB=2\nA=3\n")
        self.assertTrue(self.store.remove("A"))
        self.assertEqual(self.env_path.read_text().splitlines(), ["B=2"])
        self.assertFalse(self.store.has("A"))

    def test_remove_is_idempotent(self) -> None:
        self.write_env_file("A=1\nB=2\n")
        self.store.remove("A")
        after_first = self.env_path.read_text()
        self.assertFalse(self.store.remove("A"))
        self.assertEqual(self.env_path.read_text(), after_first)

    def test_remove_missing_file(self) -> None:
        self.assertFalse(self.store.remove("A"))
        self.assertFalse(self.env_path.exists())

    def test_remove_updates_context(self) -> None:
        self.store.set("A", "1")
        self.store.remove("A")
        self.assertNotIn("A", self.store.context)

    def test_has(self) -> None:
        self.assertFalse(self.store.has("A"))
        self.write_env_file("A=\n# B=1\n")
        self.assertTrue(self.store.has("A"))
        self.assertFalse(self.store.has("B"))

    def test_comment(self) -> None:
        self.write_env_file("A=1\n")
        self.store.comment("PostgreSQL settings")
        self.assertEqual(
            self.env_path.read_text().splitlines(),
            ["A=1", "", "# PostgreSQL settings"],
        )
        self.assertEqual(self.store.items(), {"A": "1"})

    def test_comment_creates_file(self) -> None:
        self.store.comment("first\nsecond")
        lines = self.env_path.read_text().splitlines()
        self.assertEqual(lines[0], f"# {ENV_FILE_HEADER_TITLE}")
        self.assertEqual(lines[-2:], ["# first", "# second"])
        self.assertEqual(self.store.items(), {})

    def test_empty_comment(self) -> None:
        self.write_env_file("A=1\n")
        self.store.comment("")
        self.assertEqual(self.env_path.read_text(), "A=1\n\n#\n")

    def test_values_with_unicode_line_breaks_round_trip(self) -> None:
        for value in ["a\x0cb", "a\u2028b", "a\x85b", "a\x0bb\x1cc"]:
            self.store.set("K", value)
            self.assertEqual(self.store.get("K"), value)
        self.assertEqual(self.store.items(), {"K": "a\x0bb\x1cc"})

    def test_value_cannot_inject_an_entry(self) -> None:
        self.store.set("K", "a\x0cX=1")
        self.assertFalse(self.store.has("X"))
        self.assertEqual(self.store.items(), {"K": "a\x0cX=1"})

    def test_rewrite_keeps_lines_with_unicode_line_breaks(self) -> None:
        self.write_env_file("# note\x0cmore\nA=1\n")
        self.store.set("B", "2")
        self.assertEqual(self.env_path.read_text(), "# note\x0cmore\nA=1\nB=2\n")
        self.assertTrue(self.store.remove("B"))
        self.assertEqual(self.env_path.read_text(), "# note\x0cmore\nA=1\n")

    def test_restore_keeps_unicode_line_breaks(self) -> None:
        backup_dir = self.scratchspace_path / "backups"
        self.store.set("K", "a\u2029b")
        self.store.backup(backup_dir)
        self.store.set("K", "other")
        self.store.restore(backup_dir)
        self.assertEqual(self.store.context["K"], "a\u2029b")
        self.assertEqual(self.store.get("K"), "a\u2029b")

    def test_backup_missing_file(self) -> None:
        with self.assertRaises(EnvFileNotFoundError):
            self.store.backup(self.scratchspace_path / "backups")

    def test_backup_and_restore(self) -> None:
        backup_dir = self.scratchspace_path / "backups"
        self.store.set("A", "1")
        first_backup_path = self.store.backup(backup_dir)
        self.store.set("A", "2")
        second_backup_path = self.store.backup(backup_dir)
        self.assertNotEqual(first_backup_path, second_backup_path)
        self.assertEqual(
            self.store.list_backups(backup_dir), [first_backup_path, second_backup_path]
        )

        self.store.set("A", "3")
        self.store.set("B", "only after backup")
        self.assertEqual(self.store.restore(backup_dir), second_backup_path)
        self.assertEqual(self.store.get("A"), "2")
        self.assertFalse(self.store.has("B"))
        self.assertNotIn("B", self.store.context)

    def test_restore_without_backup(self) -> None:
        self.store.set("A", "1")
        with self.assertRaises(EnvFileNotFoundError):
            self.store.restore(self.scratchspace_path / "backups")

    def test_write_failure_leaves_file_intact(self) -> None:
        self.store.set("A", "1")
        original = self.env_path.read_text()
        # A read-only directory makes creating the temp file fail.
        self.env_path.parent.chmod(0o500)
        try:
            if _can_write_to(self.env_path.parent):
                self.skipTest("running as root, permissions are not enforced")
            with self.assertRaises(EnvStoreWriteError):
                self.store.set("A", "2")
        finally:
            self.env_path.parent.chmod(0o700)
        self.assertEqual(self.env_path.read_text(), original)

    def test_concurrent_sets_are_not_lost(self) -> None:
        num_threads = 8
        num_keys_per_thread = 10

        def set_keys(thread_i: int) -> None:
            store = EnvStore(self.env_path)
            for key_i in range(num_keys_per_thread):
                store.set(f"T{thread_i}_K{key_i}", str(key_i))

        threads = [
            threading.Thread(target=set_keys, args=(thread_i,))
            for thread_i in range(num_threads)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(
            len(self.store.items()), num_threads * num_keys_per_thread
        )


def _can_write_to(dir_path: Path) -> bool:
    probe_path = dir_path / ".write_probe"
    try:
        probe_path.touch()
    except OSError:
        return False
    probe_path.unlink()
    return True


class ParseEnvLinesTests(unittest.TestCase):
    def test_lenient_parsing(self) -> None:
        result = parse_env_lines(
            [
                "# comment",
                "",
                "   ",
                "A=1",
                "export B=2",
                "not an entry",
                "C = 3",
                "D='4'",
                "  # indented comment",
            ]
        )
        self.assertEqual(result.entries, {"A": "1", "D": "4"})
        self.assertEqual(len(result.warnings), 3)
        self.assertTrue(result.warnings[0].startswith("line 5:"))

    def test_duplicate_key_last_wins_with_warning(self) -> None:
        result = parse_env_lines(["A=1", "A=2"])
        self.assertEqual(result.entries, {"A": "2"})
        self.assertEqual(len(result.warnings), 1)
        self.assertIn("duplicate key A", result.warnings[0])

    def test_unquote_is_not_recursive(self) -> None:
        self.assertEqual(unquote_value("\"'x'\""), "'x'")
        self.assertEqual(unquote_value("'\"x\"'"), '"x"')
        self.assertEqual(unquote_value("'x'"), "x")
        self.assertEqual(unquote_value('"x"'), "x")

    def test_unquote_requires_matching_pair(self) -> None:
        self.assertEqual(unquote_value("'x\""), "'x\"")
        self.assertEqual(unquote_value("'x"), "'x")
        self.assertEqual(unquote_value("'"), "'")
        self.assertEqual(unquote_value("''"), "")

    def test_encode_value(self) -> None:
        self.assertEqual(encode_value("x"), "x")
        self.assertEqual(encode_value("'x'"), "\"'x'\"")
        self.assertEqual(unquote_value(encode_value('"x"')), '"x"')


if __name__ == "__main__":
    unittest.main()

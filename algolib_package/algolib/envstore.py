"""
The env store: a persisted mapping of setting name -> string value, backed by a flat KEY=VALUE text file.

Every other part of the pipeline reads its settings from an EnvStore object that is passed to it explicitly.
Nothing here touches os.environ. Settings written with set() during a run are also kept in EnvStore.context
so that later steps of the same run can see them without re-parsing the file.

File format (UTF-8):
    # comment
    KEY=value
    OTHER_KEY="quoted value"

Reads are lenient: a line that is neither blank, a comment, nor KEY=VALUE is skipped and reported in
EnvLoadResult.warnings instead of raising. Writes always go through parse -> edit the line list -> serialize,
under an exclusive lock, and replace the file atomically.
"""

import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional

from algolib.atomic import atomic_write_text, exclusive_lock
from algolib.errors import EnvFileNotFoundError, EnvStoreWriteError

DEFAULT_ENV_FILE_PATH = Path("/opt/.env")
ENV_FILE_HEADER_TITLE = "AlgoDB Environment Configuration"

KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
ENTRY_LINE_PATTERN = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)=(.*)$")
QUOTE_CHARS = ("'", '"')

BACKUP_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


@dataclass
class EnvLoadResult:
    entries: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    file_missing: bool = False


def is_valid_key(key: str) -> bool:
    return KEY_PATTERN.match(key) is not None


def unquote_value(value: str) -> str:
    """
    Strip exactly one matching pair of surrounding quotes. `"'x'"` becomes `'x'`, not `x`.
    """
    if len(value) >= 2 and value[0] == value[-1] and value[0] in QUOTE_CHARS:
        return value[1:-1]
    return value


def encode_value(value: str) -> str:
    """
    The inverse of unquote_value(), so that set() followed by get() returns exactly what was set.

    Values that unquote_value() would leave alone are written as-is. Values that already look quoted get an
    extra layer of double quotes so the outer layer is the one that gets stripped on read.
    """
    if unquote_value(value) != value:
        return f'"{value}"'
    return value


def parse_env_lines(lines: list[str]) -> EnvLoadResult:
    result = EnvLoadResult()
    for lineno, line in enumerate(lines, start=1):
        if line.strip() == "" or line.lstrip().startswith("#"):
            continue
        match = ENTRY_LINE_PATTERN.match(line)
        if match is None:
            result.warnings.append(f"line {lineno}: skipped malformed line: {line!r}")
            continue
        key, raw_value = match.group(1), match.group(2)
        if key in result.entries:
            # The last occurrence wins, which matches the order in which a shell would export them.
            result.warnings.append(
                f"line {lineno}: duplicate key {key} overrides an earlier value"
            )
        result.entries[key] = unquote_value(raw_value)
    return result


def split_env_lines(text: str) -> list[str]:
    """
    Split on line feeds only. str.splitlines() also breaks on form feeds, NEL and the Unicode line and
    paragraph separators, all of which may appear inside a value or a comment.
    """
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return lines


def _line_key(line: str) -> Optional[str]:
    match = ENTRY_LINE_PATTERN.match(line)
    return match.group(1) if match is not None else None


class EnvStore:
    def __init__(self, path: Path = DEFAULT_ENV_FILE_PATH) -> None:
        self.path = path
        self._context: dict[str, str] = {}

    @property
    def context(self) -> Mapping[str, str]:
        """
        The settings this run has loaded or set so far. This replaces exporting settings into the process
        environment: instead of mutating global state, whoever needs a setting is handed this store.
        """
        return MappingProxyType(self._context)

    def load(self) -> EnvLoadResult:
        """
        Parse the file. A missing file is not an error: you get an empty mapping with file_missing=True.
        """
        lines = self._read_lines()
        if lines is None:
            logging.warning(f"Environment file not found at {self.path}")
            return EnvLoadResult(file_missing=True)
        result = parse_env_lines(lines)
        for warning in result.warnings:
            logging.warning(f"{self.path}: {warning}")
        self._context.update(result.entries)
        return result

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        # Read errors degrade to the default.
        try:
            lines = self._read_lines()
        except (OSError, UnicodeDecodeError) as e:
            logging.warning(f"Could not read {self.path}, using default for {key}: {e}")
            return default
        if lines is None:
            return default
        return parse_env_lines(lines).entries.get(key, default)

    def has(self, key: str) -> bool:
        try:
            lines = self._read_lines()
        except (OSError, UnicodeDecodeError) as e:
            logging.warning(f"Could not read {self.path} while checking for {key}: {e}")
            return False
        if lines is None:
            return False
        return any(_line_key(line) == key for line in lines)

    def items(self) -> dict[str, str]:
        return dict(self.load().entries)

    def set(self, key: str, value: str) -> None:
        """
        Upsert `key`. The first existing KEY= line is rewritten in place and any later KEY= lines are dropped,
        so the file never holds more than one line per key after a set().
        """
        if not is_valid_key(key):
            raise ValueError(f"invalid env key {key!r}")
        if "\n" in value or "\r" in value:
            raise ValueError(f"value for {key} must not contain a newline")

        new_line = f"{key}={encode_value(value)}"
        with exclusive_lock(self.path):
            lines = self._read_lines()
            if lines is None:
                lines = self._header_lines()

            new_lines: list[str] = []
            replaced = False
            for line in lines:
                if _line_key(line) == key:
                    if not replaced:
                        new_lines.append(new_line)
                        replaced = True
                    continue
                new_lines.append(line)
            if not replaced:
                new_lines.append(new_line)

            self._write_lines(new_lines)
        self._context[key] = value

    def remove(self, key: str) -> bool:
        """
        Delete every KEY= line. Removing a key that isn't there (or from a file that isn't there) is a no-op.
        Returns whether anything was removed.
        """
        if not self.path.exists():
            self._context.pop(key, None)
            return False
        with exclusive_lock(self.path):
            lines = self._read_lines()
            removed = False
            if lines is not None:
                new_lines = [line for line in lines if _line_key(line) != key]
                removed = len(new_lines) != len(lines)
                if removed:
                    self._write_lines(new_lines)
        self._context.pop(key, None)
        return removed

    def comment(self, text: str) -> None:
        with exclusive_lock(self.path):
            lines = self._read_lines()
            if lines is None:
                lines = self._header_lines()
            comment_lines = split_env_lines(
                text.replace("\r\n", "\n").replace("\r", "\n")
            )
            # An empty comment still gets its "#" line.
            if len(comment_lines) == 0:
                comment_lines = [""]
            lines.append("")
            lines.extend(
                f"# {comment_line}" if comment_line != "" else "#"
                for comment_line in comment_lines
            )
            self._write_lines(lines)

    def backup(self, backup_dir: Optional[Path] = None) -> Path:
        """
        Copy the env file to <backup_dir>/<name>.<timestamp>.bak and return the path of the copy.
        backup_dir defaults to the directory the env file is in.
        """
        if not self.path.exists():
            raise EnvFileNotFoundError(self.path)
        if backup_dir is None:
            backup_dir = self.path.parent
        backup_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime(BACKUP_TIMESTAMP_FORMAT)
        backup_path = backup_dir / f"{self.path.name}.{timestamp}.bak"
        # Two backups within the same second get a counter so the first one isn't overwritten.
        counter = 1
        while backup_path.exists():
            backup_path = backup_dir / f"{self.path.name}.{timestamp}_{counter}.bak"
            counter += 1

        shutil.copyfile(self.path, backup_path)
        logging.info(f"Backed up {self.path} to {backup_path}")
        return backup_path

    def list_backups(self, backup_dir: Optional[Path] = None) -> list[Path]:
        """
        Oldest first.
        """
        if backup_dir is None:
            backup_dir = self.path.parent
        if not backup_dir.is_dir():
            return []
        backup_name_pattern = re.compile(
            rf"^{re.escape(self.path.name)}\.(\d{{14}})(?:_(\d+))?\.bak$"
        )
        found: list[tuple[str, int, Path]] = []
        for candidate in backup_dir.iterdir():
            match = backup_name_pattern.match(candidate.name)
            if match is not None and candidate.is_file():
                found.append((match.group(1), int(match.group(2) or 0), candidate))
        found.sort()
        return [backup_path for _, _, backup_path in found]

    def restore(self, backup_dir: Optional[Path] = None) -> Path:
        """
        Replace the env file with its most recent backup and return the backup that was used.
        """
        backups = self.list_backups(backup_dir)
        if len(backups) == 0:
            raise EnvFileNotFoundError(self.path, "no backup found for")
        latest_backup_path = backups[-1]

        with exclusive_lock(self.path):
            text = latest_backup_path.read_text(encoding="utf-8")
            try:
                atomic_write_text(self.path, text)
            except OSError as e:
                raise EnvStoreWriteError(self.path, e) from e

        # Settings set earlier in this run may no longer be in the file.
        self._context.clear()
        self._context.update(parse_env_lines(split_env_lines(text)).entries)
        logging.info(f"Restored {self.path} from {latest_backup_path}")
        return latest_backup_path

    def _read_lines(self) -> Optional[list[str]]:
        """
        Returns None if the file does not exist. Other read errors propagate.
        """
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return split_env_lines(text)

    def _write_lines(self, lines: list[str]) -> None:
        try:
            atomic_write_text(self.path, "\n".join(lines) + "\n")
        except OSError as e:
            raise EnvStoreWriteError(self.path, e) from e

    def _header_lines(self) -> list[str]:
        logging.info(f"Creating environment file at {self.path}")
        return [
            f"# {ENV_FILE_HEADER_TITLE}",
            f"# Created on {datetime.now().strftime('%Y-%m-%d')}",
            "",
        ]

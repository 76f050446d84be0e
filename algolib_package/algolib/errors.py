"""
Exceptions raised by algolib.

Soft failures (a missing env file on read, a failed hardware probe, a malformed line in the env file) are
never raised. They degrade to defaults and are logged or reported as warnings. Everything in this file is a
hard failure that should stop the pipeline before a collaborator sees incomplete data.
"""

from pathlib import Path
from typing import Iterable


class AlgoDBError(Exception):
    pass


class EnvFileNotFoundError(AlgoDBError):
    def __init__(self, path: Path, message: str = "env file does not exist") -> None:
        self.path = path
        super().__init__(f"{message}: {path}")


class EnvStoreWriteError(AlgoDBError):
    def __init__(self, path: Path, cause: OSError) -> None:
        self.path = path
        self.cause = cause
        super().__init__(f"could not write env file {path}: {cause}")


class ConfigWriteError(AlgoDBError):
    def __init__(self, path: Path, cause: OSError) -> None:
        self.path = path
        self.cause = cause
        super().__init__(f"could not write config file {path}: {cause}")


class MissingPlaceholderError(AlgoDBError):
    """
    A template references a placeholder that the caller did not provide a value for.

    `names` holds every unresolved placeholder (sorted, without duplicates) so that a caller can fix all of
    them at once instead of one per run.
    """

    def __init__(self, names: Iterable[str]) -> None:
        self.names = sorted(set(names))
        super().__init__(
            f"no substitution provided for placeholder(s): {', '.join(self.names)}"
        )


class DataDirNotFoundError(AlgoDBError):
    def __init__(self, candidates: list[Path]) -> None:
        self.candidates = candidates
        candidates_str = ", ".join(str(candidate) for candidate in candidates)
        super().__init__(
            f"could not determine the PostgreSQL data directory (tried: {candidates_str})"
        )


class ServiceRestartError(AlgoDBError):
    def __init__(self, service: str, detail: str) -> None:
        self.service = service
        super().__init__(f"failed to restart service {service}: {detail}")

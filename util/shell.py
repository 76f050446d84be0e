import logging
import os
import subprocess
from pathlib import Path
from typing import Optional

from util.log import ALGODB_LOGGER_NAME


class ShellCommandError(RuntimeError):
    def __init__(self, command: str, returncode: int, output: str) -> None:
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(f"Non-zero returncode {returncode} for: {command}")


def subprocess_run(
    c: str,
    cwd: Optional[Path] = None,
    check_returncode: bool = True,
    verbose: bool = True,
) -> tuple[int, str]:
    """
    Run `c` in a shell, streaming its combined stdout/stderr into the log as it arrives.

    Returns (returncode, output). Raises ShellCommandError on a non-zero returncode unless check_returncode is
    False, which is how callers ask yes/no questions like `systemctl is-active`.
    """
    logger = logging.getLogger(ALGODB_LOGGER_NAME)
    cwd_msg = f"(cwd: {cwd if cwd is not None else os.getcwd()})"

    if verbose:
        logger.info(f"Running {cwd_msg}: {c}")

    output_lines: list[str] = []
    with subprocess.Popen(
        c,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        shell=True,
        cwd=cwd,
        text=True,
        bufsize=0,
    ) as proc:
        while True:
            loop = proc.poll() is None
            assert proc.stdout is not None
            for line in proc.stdout:
                output_lines.append(line)
                if verbose:
                    logger.info(line.rstrip("\n"))
            if not loop:
                break
        proc.wait()

    output = "".join(output_lines)
    if check_returncode and proc.returncode != 0:
        raise ShellCommandError(c, proc.returncode, output)
    return proc.returncode, output

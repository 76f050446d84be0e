import logging
import warnings
from logging import Logger
from pathlib import Path
from typing import Any, Optional

ALGODB_LOGGER_NAME = "algodb"
ALGODB_OUTPUT_LOGGER_NAME = f"{ALGODB_LOGGER_NAME}.output"


def set_up_loggers(log_path: Path) -> None:
    """
    Set up everything related to the logging library.

    If a command needs to provide output, use the output logger (info level). If you want to log things, use the
    algodb logger (or the root logging functions from inside algolib, which knows nothing about these loggers).
    """
    log_path.mkdir(parents=True, exist_ok=True)

    # The algodb logger is set up globally here. Do not reconfigure the algodb logger anywhere else.
    log_format = "%(levelname)s:%(asctime)s [%(filename)s:%(lineno)s]  %(message)s"
    algodb_logger = logging.getLogger(ALGODB_LOGGER_NAME)
    _set_up_logger(
        algodb_logger,
        log_format,
        log_path / f"{ALGODB_LOGGER_NAME}.log",
    )
    # algolib logs through the root logger. Route it into the same handlers so that the env store's
    # warnings and the hardware probe's fallbacks end up in algodb.log too.
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    for handler in algodb_logger.handlers:
        root_logger.addHandler(handler)
    # Without this, every algodb.* record would be handled twice (once by algodb, once by root).
    algodb_logger.propagate = False

    # The output logger is meant to output things to the console. We use it instead of using print to indicate
    # that something is not a debugging print but rather is actual output of the program.
    # We pass it None so that it doesn't write to its own file. Unlike the algodb logger it keeps propagating,
    # so everything logged to it is also written to algodb.log.
    output_format = "%(message)s"
    _set_up_logger(
        logging.getLogger(ALGODB_OUTPUT_LOGGER_NAME),
        output_format,
        None,
        console_level=logging.DEBUG,
    )


def _set_up_logger(
    logger: Logger,
    format: str,
    output_log_path: Optional[Path],
    console_level: int = logging.ERROR,
    file_level: int = logging.DEBUG,
) -> None:
    # Set this so that the logger captures everything.
    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(format)

    # Only make it output errors or higher to the console.
    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Let it output everything to the output file.
    if output_log_path is not None:
        file_handler = logging.FileHandler(output_log_path)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(file_level)
        logger.addHandler(file_handler)


def set_up_warnings(log_path: Path) -> None:
    """
    Some libraries (like psutil and yaml) use warnings instead of logging for warnings. I want to redirect these
    too to avoid cluttering the console.
    """
    warnings_path = log_path / "warnings.log"

    def write_warning_to_file(
        message: Any,
        category: Any,
        filename: Any,
        lineno: Any,
        file: Optional[Any] = None,
        line: Optional[Any] = None,
    ) -> None:
        with open(warnings_path, "a") as f:
            f.write(f"{filename}:{lineno}: {category.__name__}: {message}\n")

    warnings.showwarning = write_warning_to_file

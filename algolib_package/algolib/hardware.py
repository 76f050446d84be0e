"""
Detects the hardware facts the tuning calculator needs.

Hardware detection must never abort the pipeline. Every fact is detected independently and, if detection
fails for any reason, replaced by a conservative fallback (4 cores, 8 GiB, "Unknown" storage) after logging a
warning.
"""

import logging
import math
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import psutil

FALLBACK_CPU_CORES = 4
FALLBACK_TOTAL_MEM_KB = 8 * 1024 * 1024
FALLBACK_STORAGE_SIZE = "Unknown"
FALLBACK_CPU_MODEL = "Unknown CPU"
FALLBACK_OS_VERSION = "Unknown"

RECOMMENDED_MIN_CPU_CORES = 4
RECOMMENDED_MIN_MEM_GB = 8

DEFAULT_DISK_PATH = Path("/")
DEFAULT_CPUINFO_PATH = Path("/proc/cpuinfo")
DEFAULT_OS_RELEASE_PATH = Path("/etc/os-release")


@dataclass(frozen=True)
class HardwareProfile:
    cpu_cores: int
    total_mem_kb: int
    storage_size: str = FALLBACK_STORAGE_SIZE
    cpu_model: str = FALLBACK_CPU_MODEL
    os_version: str = FALLBACK_OS_VERSION

    def __post_init__(self) -> None:
        assert self.cpu_cores >= 1, f"cpu_cores ({self.cpu_cores}) must be at least 1"
        assert (
            self.total_mem_kb >= 1
        ), f"total_mem_kb ({self.total_mem_kb}) must be at least 1"

    @property
    def total_mem_mb(self) -> int:
        return self.total_mem_kb // 1024

    @property
    def total_mem_gb(self) -> int:
        return self.total_mem_mb // 1024

    def to_env(self) -> dict[str, str]:
        """
        The entries we cache in the env store for diagnostics. The env store is never the source of truth for
        these: they are re-detected on every run.
        """
        return {
            "CPU_CORES": str(self.cpu_cores),
            "CPU_MODEL": self.cpu_model,
            "TOTAL_MEM_KB": str(self.total_mem_kb),
            "TOTAL_MEM_MB": str(self.total_mem_mb),
            "TOTAL_MEM_GB": str(self.total_mem_gb),
            "STORAGE_SIZE": self.storage_size,
            "OS_VERSION": self.os_version,
        }


def probe(
    disk_path: Path = DEFAULT_DISK_PATH,
    cpuinfo_path: Path = DEFAULT_CPUINFO_PATH,
    os_release_path: Path = DEFAULT_OS_RELEASE_PATH,
) -> HardwareProfile:
    return HardwareProfile(
        cpu_cores=detect_cpu_cores(),
        total_mem_kb=detect_total_mem_kb(),
        storage_size=detect_storage_size(disk_path),
        cpu_model=detect_cpu_model(cpuinfo_path),
        os_version=detect_os_version(os_release_path),
    )


def detect_cpu_cores() -> int:
    try:
        cpu_cores: Optional[int] = psutil.cpu_count(logical=True)
    except Exception as e:
        logging.warning(
            f"CPU core detection failed ({e}), assuming {FALLBACK_CPU_CORES} cores"
        )
        return FALLBACK_CPU_CORES
    if cpu_cores is None or cpu_cores < 1:
        logging.warning(
            f"CPU core detection returned {cpu_cores}, assuming {FALLBACK_CPU_CORES} cores"
        )
        return FALLBACK_CPU_CORES
    return cpu_cores


def detect_total_mem_kb() -> int:
    try:
        total_mem_kb = int(psutil.virtual_memory().total) // 1024
    except Exception as e:
        logging.warning(
            f"Memory detection failed ({e}), assuming {FALLBACK_TOTAL_MEM_KB} kB"
        )
        return FALLBACK_TOTAL_MEM_KB
    if total_mem_kb < 1:
        logging.warning(
            f"Memory detection returned {total_mem_kb} kB, assuming {FALLBACK_TOTAL_MEM_KB} kB"
        )
        return FALLBACK_TOTAL_MEM_KB
    return total_mem_kb


def detect_storage_size(disk_path: Path = DEFAULT_DISK_PATH) -> str:
    try:
        return format_size_human(psutil.disk_usage(str(disk_path)).total)
    except Exception as e:
        logging.warning(f"Storage detection for {disk_path} failed: {e}")
        return FALLBACK_STORAGE_SIZE


def detect_cpu_model(cpuinfo_path: Path = DEFAULT_CPUINFO_PATH) -> str:
    try:
        with open(cpuinfo_path) as f:
            for line in f:
                if line.startswith("model name"):
                    _, _, model = line.partition(":")
                    if model.strip() != "":
                        return model.strip()
    except OSError as e:
        logging.debug(f"Could not read {cpuinfo_path}: {e}")
    # /proc/cpuinfo has no "model name" on some architectures (e.g. arm64).
    processor = platform.processor()
    return processor if processor != "" else FALLBACK_CPU_MODEL


def detect_os_version(os_release_path: Path = DEFAULT_OS_RELEASE_PATH) -> str:
    try:
        with open(os_release_path) as f:
            for line in f:
                if line.startswith("VERSION_ID="):
                    return line.split("=", 1)[1].strip().strip('"').strip("'")
    except OSError as e:
        logging.debug(f"Could not read {os_release_path}: {e}")
    return FALLBACK_OS_VERSION


def format_size_human(num_bytes: int) -> str:
    """
    Format a byte count the way `df -h` does: powers of 1024, rounded up, one decimal below 10.
    """
    value = float(num_bytes)
    unit = "B"
    for next_unit in ["K", "M", "G", "T", "P", "E"]:
        if value < 1024:
            break
        value /= 1024
        unit = next_unit
    if unit == "B":
        return f"{num_bytes}B"
    if value < 10:
        return f"{math.ceil(value * 10) / 10:.1f}{unit}"
    return f"{math.ceil(value)}{unit}"


def check_requirements(profile: HardwareProfile) -> list[str]:
    """
    Returns a warning for each recommended minimum the host falls short of. These are only advisory.
    """
    warnings: list[str] = []
    if profile.cpu_cores < RECOMMENDED_MIN_CPU_CORES:
        warnings.append(
            f"Recommended minimum is {RECOMMENDED_MIN_CPU_CORES} CPU cores. Detected: {profile.cpu_cores} cores"
        )
    if profile.total_mem_gb < RECOMMENDED_MIN_MEM_GB:
        warnings.append(
            f"Recommended minimum is {RECOMMENDED_MIN_MEM_GB}GB RAM. Detected: {profile.total_mem_gb}GB RAM"
        )
    return warnings

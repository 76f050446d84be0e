"""
Turns a HardwareProfile into PostgreSQL settings sized for the host.

compute() is pure: the same profile always gives the same TuningProfile, and it never fails for a valid
profile (cpu_cores >= 1, total_mem_kb >= 1). All arithmetic is integer arithmetic with truncating division.
"""

from dataclasses import dataclass

from algolib.hardware import HardwareProfile

FIXED_MAX_CONNECTIONS = 200
FIXED_WAL_BUFFERS = "16MB"
FIXED_RANDOM_PAGE_COST = 1.1
FIXED_EFFECTIVE_IO_CONCURRENCY = 200
FIXED_CHECKPOINT_TIMEOUT = "15min"
FIXED_CHECKPOINT_COMPLETION_TARGET = 0.9

WORK_MEM_MB_PER_CORE = 128
MAINTENANCE_WORK_MEM_MB_PER_HALF_CORE = 512


@dataclass(frozen=True)
class TuningProfile:
    shared_buffers: str
    effective_cache_size: str
    work_mem: str
    maintenance_work_mem: str
    max_parallel_workers: int
    max_parallel_workers_per_gather: int
    timescaledb_max_background_workers: int
    max_connections: int = FIXED_MAX_CONNECTIONS
    wal_buffers: str = FIXED_WAL_BUFFERS
    random_page_cost: float = FIXED_RANDOM_PAGE_COST
    effective_io_concurrency: int = FIXED_EFFECTIVE_IO_CONCURRENCY
    checkpoint_timeout: str = FIXED_CHECKPOINT_TIMEOUT
    checkpoint_completion_target: float = FIXED_CHECKPOINT_COMPLETION_TARGET

    def to_substitutions(self) -> dict[str, str]:
        """
        Values keyed by the placeholder names used in the postgresql.conf template.
        """
        return {
            "SHARED_BUFFERS": self.shared_buffers,
            "EFFECTIVE_CACHE_SIZE": self.effective_cache_size,
            "WORK_MEM": self.work_mem,
            "MAINTENANCE_WORK_MEM": self.maintenance_work_mem,
            "MAX_PARALLEL_WORKERS": str(self.max_parallel_workers),
            "MAX_PARALLEL_WORKERS_PER_GATHER": str(
                self.max_parallel_workers_per_gather
            ),
            "TIMESCALEDB_MAX_BACKGROUND_WORKERS": str(
                self.timescaledb_max_background_workers
            ),
            "MAX_CONNECTIONS": str(self.max_connections),
            "WAL_BUFFERS": self.wal_buffers,
            "RANDOM_PAGE_COST": str(self.random_page_cost),
            "EFFECTIVE_IO_CONCURRENCY": str(self.effective_io_concurrency),
            "CHECKPOINT_TIMEOUT": self.checkpoint_timeout,
            "CHECKPOINT_COMPLETION_TARGET": str(self.checkpoint_completion_target),
        }

    def to_env(self) -> dict[str, str]:
        """
        Values keyed by the env store names (PG_SHARED_BUFFERS etc.).
        """
        return {
            f"PG_{name}": value for name, value in self.to_substitutions().items()
        }


def _size_mb(mb: int) -> str:
    # A "0MB" setting would change how the engine behaves rather than just under-tune it.
    return f"{max(1, mb)}MB"


def sizing_mem_mb(total_mem_kb: int) -> int:
    """
    The memory figure the sizes are derived from. Hosts with at least 1 GiB are sized on whole GiB so that
    e.g. 34359738 kB (a "32G" host) gives 32768 MB, and a few MB of kernel reservations don't shift every
    setting. Smaller hosts are sized on whole MB.
    """
    mem_mb = total_mem_kb // 1024
    # This sizes below a plain total_mem_kb // 1024. A "16G" host reporting 16303000 kB gets
    # shared_buffers=3840MB here rather than 3980MB.
    if mem_mb >= 1024:
        return (mem_mb // 1024) * 1024
    return mem_mb


def compute(profile: HardwareProfile) -> TuningProfile:
    mem_mb = sizing_mem_mb(profile.total_mem_kb)
    # Truncates to 0 on a single-core host, so we floor it at 1. A per-gather worker count of 0 disables
    # parallel query entirely instead of just making it smaller.
    half_cores = max(1, profile.cpu_cores // 2)

    return TuningProfile(
        shared_buffers=_size_mb(mem_mb // 4),
        effective_cache_size=_size_mb(mem_mb * 3 // 4),
        work_mem=_size_mb(WORK_MEM_MB_PER_CORE * profile.cpu_cores),
        maintenance_work_mem=_size_mb(
            MAINTENANCE_WORK_MEM_MB_PER_HALF_CORE * half_cores
        ),
        max_parallel_workers=profile.cpu_cores,
        max_parallel_workers_per_gather=half_cores,
        timescaledb_max_background_workers=half_cores,
    )

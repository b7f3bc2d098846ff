# src/scenestack/config.py

"""
This module holds engine-wide configuration.

Settings can be given explicitly or read from the environment, optionally
populated from a `.env` file.
"""

import os
import logging
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Union, Dict, Any

import psutil
from dotenv import load_dotenv, find_dotenv

log = logging.getLogger(__name__)

__all__ = [
    "HandleStrategy",
    "EngineConfig"
]

ENV_PREFIX = "SCENESTACK_"

class HandleStrategy(Enum):
    """
    How raster file handles are shared between worker threads.

    GDAL dataset handles must not be used by two threads at once.

    Options:
        PER_THREAD: Every worker thread opens its own handle on each file.
        PER_FILE_LOCK: One handle per file, reads serialized by a per-file lock.
    """
    PER_THREAD = "per_thread"
    PER_FILE_LOCK = "per_file_lock"

def _default_workers() -> int:
    return psutil.cpu_count(logical=True) or 1

def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")

@dataclass
class EngineConfig:
    """
    Configuration object for the assembly engine.

    Args:
        max_workers: Size of the read thread pool. Default = logical CPU count.
        handle_strategy: HandleStrategy for file handles. Default = PER_THREAD.
        grouping_tolerance: Relative tolerance used when comparing georeferences.
        fill_value: Edge fill used when a source declares no nodata value.
        check_memory: If True, refuse to allocate outputs that would not fit in RAM.
        memory_safety_factor: Multiplier applied to the raw output size.
        min_free_gb: RAM to leave available after allocation.
        gdal_env: Options passed to rasterio.Env around every read.
    """
    max_workers: int = field(default_factory=_default_workers)
    handle_strategy: HandleStrategy = HandleStrategy.PER_THREAD
    grouping_tolerance: float = 1e-9
    fill_value: Union[int, float] = 0
    check_memory: bool = True
    memory_safety_factor: float = 1.5
    min_free_gb: float = 0.5
    gdal_env: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.handle_strategy, str):
            try:
                self.handle_strategy = HandleStrategy(self.handle_strategy)
            except ValueError:
                valid = [s.value for s in HandleStrategy]
                raise ValueError(f"Invalid handle strategy '{self.handle_strategy}'. Must be one of: {valid}")

        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None, **overrides) -> 'EngineConfig':
        """
        Build a configuration from SCENESTACK_* environment variables.

        A `.env` file is loaded first (explicit path, or the nearest one found
        by python-dotenv). Variables already set in the process win.

        Args:
            dotenv_path: Optional explicit path to a .env file.
            **overrides: Keyword values that take precedence over the environment.

        Returns:
            EngineConfig: The resolved configuration.
        """
        env_path = dotenv_path or find_dotenv(usecwd=True)
        if env_path:
            load_dotenv(env_path, override=False)
            log.debug(f"Loaded environment from {env_path}")

        kwargs: Dict[str, Any] = {}

        workers = os.getenv(f"{ENV_PREFIX}MAX_WORKERS")
        if workers:
            kwargs["max_workers"] = int(workers)

        strategy = os.getenv(f"{ENV_PREFIX}HANDLE_STRATEGY")
        if strategy:
            kwargs["handle_strategy"] = strategy

        check_memory = os.getenv(f"{ENV_PREFIX}CHECK_MEMORY")
        if check_memory:
            kwargs["check_memory"] = _as_bool(check_memory)

        fill_value = os.getenv(f"{ENV_PREFIX}FILL_VALUE")
        if fill_value:
            try:
                kwargs["fill_value"] = int(fill_value)
            except ValueError:
                kwargs["fill_value"] = float(fill_value)

        tolerance = os.getenv(f"{ENV_PREFIX}GROUPING_TOLERANCE")
        if tolerance:
            kwargs["grouping_tolerance"] = float(tolerance)

        kwargs.update(overrides)
        return cls(**kwargs)

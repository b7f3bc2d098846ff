# src/scenestack/raster/engine.py

"""
This module executes a GridPlan into a single output array.

The output is preallocated once and filled with nodata. Each band read
runs as its own task on a thread pool and writes only into its band view,
so tasks never share output memory. The first failing task cancels every
task still queued, the pool is drained and the error propagates; a
partially filled array is never returned. Datasets opened by the pool
threads are closed when the request ends, whether it succeeds or fails.
"""

import logging
import threading
import concurrent.futures
from typing import Optional, List, Tuple, Set

import numpy as np

from scenestack.config import EngineConfig
from scenestack.exceptions import EngineError, ReadError
from .layer import Raster
from .planning import GridPlan, ReadPlan, MemberRead
from .resources import ensure_memory

log = logging.getLogger(__name__)

__all__ = [
    "allocate_output",
    "assemble"
]

def allocate_output(plan: GridPlan, config: Optional[EngineConfig] = None) -> np.ndarray:
    """
    Allocate the (bands, rows, cols) output of a plan, filled with its nodata.

    Raises:
        InsufficientMemory: If config.check_memory is set and the array would not fit.
    """
    config = config or EngineConfig()
    if config.check_memory:
        ensure_memory(plan.shape, plan.dtype, config.memory_safety_factor, config.min_free_gb)
    return np.full(plan.shape, plan.nodata, dtype=plan.dtype)

def _run_task(
    plan: ReadPlan,
    read: MemberRead,
    out: np.ndarray,
    grid_plan: GridPlan,
    failed: threading.Event,
    workers: Set[int]
):
    if failed.is_set():
        return
    workers.add(threading.get_ident())
    band = out[read.band_offset]
    try:
        plan.execute(read, band, grid_plan.grid, grid_plan.nodata)
    except EngineError:
        raise
    except Exception as e:
        raise ReadError(f"Failed to assemble band {read.source.name}: {e}") from e

def _release_worker_handles(tasks: List[Tuple[ReadPlan, MemberRead]], workers: Set[int]):
    handles = {id(r.source.handle): r.source.handle for _, r in tasks if r.source.handle is not None}
    released = sum(h.release_threads(workers) for h in handles.values())
    if released:
        log.debug(f"Closed {released} dataset(s) opened by {len(workers)} worker(s)")

def assemble(
    grid_plan: GridPlan,
    config: Optional[EngineConfig] = None,
    mask=None,
    mask_threshold: float = 0.0
) -> Raster:
    """
    Read every planned band into one output array.

    Args:
        grid_plan: GridPlan from plan_grid.
        config: EngineConfig (worker count, memory checks).
        mask: Optional GeometryMask on the plan's grid, applied after all reads.
        mask_threshold: Coverage at or below which pixels are set to nodata.

    Returns:
        Raster: Assembled array with the grid transform, CRS, nodata and band names.

    Raises:
        InsufficientMemory: If the output would not fit in memory.
        ReadError: The first read failure; no partial result is returned.
    """
    config = config or EngineConfig()
    out = allocate_output(grid_plan, config)
    tasks: List[Tuple[ReadPlan, MemberRead]] = grid_plan.tasks()

    log.info(f"Assembling {grid_plan.shape} from {len(tasks)} read(s) on {config.max_workers} worker(s)")

    failed = threading.Event()
    first_error: Optional[BaseException] = None
    workers: Set[int] = set()

    try:
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=config.max_workers, thread_name_prefix="scenestack-read"
        ) as executor:
            futures = {
                executor.submit(_run_task, plan, read, out, grid_plan, failed, workers): read
                for plan, read in tasks
            }
            for future in concurrent.futures.as_completed(futures):
                error = future.exception()
                if error is None:
                    continue
                if first_error is None:
                    first_error = error
                    failed.set()
                    cancelled = sum(f.cancel() for f in futures)
                    log.error(f"Read of {futures[future].source.name} failed, cancelled {cancelled} queued read(s): {error}")
    finally:
        # Worker threads are gone once the pool has shut down
        _release_worker_handles(tasks, workers)

    if first_error is not None:
        del out
        raise first_error

    coverage = None
    if mask is not None:
        mask.apply(out, grid_plan.nodata, mask_threshold)
        coverage = mask.coverage

    log.info(f"Assembled {grid_plan.shape} {grid_plan.dtype} array")
    return Raster(
        data=out,
        transform=grid_plan.grid.transform,
        crs=grid_plan.grid.crs,
        nodata=grid_plan.nodata,
        band_names=grid_plan.band_names,
        coverage=coverage
    )

# src/scenestack/raster/resources.py

"""
This module checks system memory before an output array is allocated.

Estimates are computed from the planned output shape and pixel type, so
the check runs before any file is read.
"""

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np
import psutil

from scenestack.exceptions import InsufficientMemory

log = logging.getLogger(__name__)

__all__ = [
    "MemoryEstimate",
    "estimate_array_memory",
    "ensure_memory"
]

DEFAULT_SAFETY_FACTOR = 1.5
MIN_FREE_GB = 0.5

@dataclass(frozen=True)
class MemoryEstimate:
    """
    Estimation of memory requirements and safety for an output array.

    Args:
        total_required_bytes: Bytes required for the array, with overhead.
        available_system_bytes: Currently available system memory in bytes.
        is_safe: True if allocating leaves at least the minimum free memory.
        reason: Human readable summary (e.g. "Req: 1.20GB, Avail: 8.00GB").
    """
    total_required_bytes: int
    available_system_bytes: int
    is_safe: bool
    reason: str

def estimate_array_memory(
    shape: Tuple[int, ...],
    dtype: np.dtype,
    safety_factor: float = DEFAULT_SAFETY_FACTOR,
    min_free_gb: float = MIN_FREE_GB
) -> MemoryEstimate:
    """
    Check if an array of `shape` and `dtype` fits in RAM.

    Args:
        shape: Array shape, e.g. (bands, rows, cols).
        dtype: Pixel type.
        safety_factor: Multiplier accounting for per-read scratch buffers.
        min_free_gb: Memory to leave available after allocation.

    Returns:
        MemoryEstimate: Required bytes, available bytes, safety flag and reason.
    """
    raw_bytes = int(np.prod(shape, dtype=np.int64)) * np.dtype(dtype).itemsize
    overhead_bytes = int(raw_bytes * (safety_factor - 1.0))
    total_required = raw_bytes + overhead_bytes

    mem = psutil.virtual_memory()
    min_free_bytes = int(min_free_gb * (1024**3))
    is_safe = (total_required + min_free_bytes) <= mem.available

    reason = f"Req: {total_required/1e9:.2f}GB, Avail: {mem.available/1e9:.2f}GB"

    return MemoryEstimate(total_required, mem.available, is_safe, reason)

def ensure_memory(
    shape: Tuple[int, ...],
    dtype: np.dtype,
    safety_factor: float = DEFAULT_SAFETY_FACTOR,
    min_free_gb: float = MIN_FREE_GB
) -> MemoryEstimate:
    """
    Raise InsufficientMemory if the array would not fit.

    Raises:
        InsufficientMemory: If the estimate is unsafe.
    """
    estimate = estimate_array_memory(shape, dtype, safety_factor, min_free_gb)
    if not estimate.is_safe:
        raise InsufficientMemory(f"Output array {shape} {np.dtype(dtype)} does not fit in memory. {estimate.reason}")
    log.debug(f"Memory check passed for {shape}: {estimate.reason}")
    return estimate

# src/scenestack/exceptions.py

"""
Error taxonomy of the engine.

Every failure a caller can observe derives from EngineError, so a single
`except EngineError` covers the whole request surface.
"""

__all__ = [
    "EngineError",
    "OpenError",
    "ProjectionError",
    "GeometryError",
    "SingularTransform",
    "RegionError",
    "OutOfBounds",
    "EmptyRegion",
    "ReadError",
    "IoError",
    "InvalidOptions",
    "InsufficientMemory"
]

class EngineError(Exception):
    """Base class for all scenestack errors."""

class OpenError(EngineError):
    """A source could not be opened (missing, corrupt or unsupported)."""

class ProjectionError(EngineError):
    """No valid transform path exists between two coordinate reference systems."""

class GeometryError(EngineError):
    """A mask geometry is invalid and could not be repaired."""

class SingularTransform(EngineError):
    """An affine transform is degenerate and cannot be inverted."""

class RegionError(EngineError):
    """The requested region is invalid."""

class OutOfBounds(RegionError):
    """A window or region has no overlap with the data it addresses."""

class EmptyRegion(RegionError):
    """The requested region has zero area."""

class ReadError(EngineError):
    """A windowed read failed."""

class IoError(ReadError):
    """The raster backend failed while reading or writing pixels."""

class InvalidOptions(EngineError, ValueError):
    """Request options are inconsistent or cannot be honoured."""

class InsufficientMemory(EngineError, MemoryError):
    """The output array would not fit in available memory."""

# src/scenestack/__init__.py
#
# Copyright (c) The scenestack project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
scenestack assembles georeferenced multi-band rasters into aligned arrays.

Bands may come from several files, resolutions and coordinate reference
systems; a region request returns one (band, row, col) array on a single
target grid.
"""

from .config import (
    EngineConfig,
    HandleStrategy
)

from .exceptions import (
    EngineError,
    OpenError,
    ProjectionError,
    GeometryError,
    SingularTransform,
    RegionError,
    OutOfBounds,
    EmptyRegion,
    ReadError,
    IoError,
    InvalidOptions,
    InsufficientMemory
)

from .raster import (
    Georeference,
    Raster,
    ResamplePolicy
)

from .vector import (
    CrsGeometry,
    MaskMode
)

from .dataset import (
    Dataset,
    Region,
    RequestOptions
)

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "EngineConfig",
    "HandleStrategy",

    # Errors
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
    "InsufficientMemory",

    # Data model
    "Georeference",
    "Raster",
    "ResamplePolicy",
    "CrsGeometry",
    "MaskMode",

    # Entry point
    "Dataset",
    "Region",
    "RequestOptions"
]

# src/scenestack/raster/__init__.py
#
# Copyright (c) The scenestack project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
The raster subpackage provides georeferencing, band access, resolution
grouping, grid planning and parallel assembly of raster data.
"""
# Georeference model
from .georef import (
    Georeference,
    as_crs,
    crs_equal,
    transformer,
    transform_bounds
)

# Band access
from .source import (
    FileHandle,
    BandSource,
    open_sources
)

from .io import (
    read_info,
    open_files
)

# Grouping and planning
from .grouping import (
    GroupMember,
    ResolutionGroup,
    group_sources,
    finest_group
)

from .planning import (
    Region,
    ResamplePolicy,
    RequestOptions,
    TargetGrid,
    MemberRead,
    ReadPlan,
    DirectRead,
    ResampledRead,
    EmptyRead,
    GridPlan,
    plan_grid
)

# Resource management and assembly
from .resources import (
    MemoryEstimate,
    estimate_array_memory,
    ensure_memory
)

from .engine import (
    allocate_output,
    assemble
)

# Core data structure
from .layer import (
    Raster
)

__all__ = [
    # Georeference model
    "Georeference",
    "as_crs",
    "crs_equal",
    "transformer",
    "transform_bounds",

    # Band access
    "FileHandle",
    "BandSource",
    "open_sources",
    "read_info",
    "open_files",

    # Grouping and planning
    "GroupMember",
    "ResolutionGroup",
    "group_sources",
    "finest_group",
    "Region",
    "ResamplePolicy",
    "RequestOptions",
    "TargetGrid",
    "MemberRead",
    "ReadPlan",
    "DirectRead",
    "ResampledRead",
    "EmptyRead",
    "GridPlan",
    "plan_grid",

    # Resource management and assembly
    "MemoryEstimate",
    "estimate_array_memory",
    "ensure_memory",
    "allocate_output",
    "assemble",

    # Core data structure
    "Raster"
]

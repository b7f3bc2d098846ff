# src/scenestack/vector/__init__.py
#
# Copyright (c) The scenestack project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
The vector subpackage handles mask geometries: loading, reprojection,
repair and rasterization onto an output grid.
"""

from .io import (
    load_vector
)

from .geom import (
    CrsGeometry
)

from .mask import (
    MaskMode,
    GeometryMask,
    rasterize_mask
)

__all__ = [
    "load_vector",
    "CrsGeometry",
    "MaskMode",
    "GeometryMask",
    "rasterize_mask"
]

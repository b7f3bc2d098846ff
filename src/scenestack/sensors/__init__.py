# src/scenestack/sensors/__init__.py
#
# Copyright (c) The scenestack project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
The sensors subpackage opens products of specific missions as Datasets.
"""

from .sentinel2 import (
    band_names_from_tags,
    resolution_subdatasets,
    open_sentinel2,
    footprint
)

__all__ = [
    "band_names_from_tags",
    "resolution_subdatasets",
    "open_sentinel2",
    "footprint"
]

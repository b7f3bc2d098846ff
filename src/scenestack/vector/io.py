# src/scenestack/vector/io.py

"""
This module reads vector files (mask geometries, footprints) using GeoPandas.
"""

from pathlib import Path
from typing import Union, Optional
import logging

import geopandas as gpd

from scenestack.exceptions import OpenError

log = logging.getLogger(__name__)

__all__ = [
    "load_vector"
]

def load_vector(
    path: Union[str, Path],
    layer: Optional[Union[str, int]] = None,
    engine: str = "pyogrio",
    **kwargs
) -> gpd.GeoDataFrame:
    path = Path(path)
    if not path.exists():
        raise OpenError(f"Vector file not found: {path}")

    if layer is not None:
        kwargs["layer"] = layer
    try:
        gdf = gpd.read_file(path, engine=engine, **kwargs)
    except Exception as e:
        raise OpenError(f"Failed to read vector file {path}: {e}") from e

    log.debug(f"Loaded {len(gdf)} feature(s) from {path.name} (crs={gdf.crs})")
    return gdf

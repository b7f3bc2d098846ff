# src/scenestack/raster/io.py

"""
This module handles metadata inspection and bulk opening of raster files.

No pixels are read here; pixel access goes through BandSource.read_window.
"""

import logging
from pathlib import Path
from typing import Union, Optional, List, Dict, Any, Sequence

import rasterio

from scenestack.config import EngineConfig
from scenestack.exceptions import OpenError
from .source import BandSource, open_sources
from .utils import resolve_envi_path, is_gdal_identifier, extract_band_names

log = logging.getLogger(__name__)

__all__ = [
    "read_info",
    "open_files"
]

def read_info(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Inspect a raster file and extract spatial metadata, band names and
    subdataset identifiers in a single pass.

    Args:
        path: File path or GDAL identifier.

    Returns:
        Dict[str, Any]: crs, transform, bounds, width, height, count, dtypes,
        driver, nodata, band_names (index -> name), tags and subdatasets.

    Raises:
        OpenError: If the file is missing or cannot be opened.
    """
    if not is_gdal_identifier(path):
        path = resolve_envi_path(path)
        if not path.exists():
            raise OpenError(f"File not found: {path}")

    try:
        with rasterio.open(path) as src:
            return {
                'crs': src.crs,
                'transform': src.transform,
                'bounds': src.bounds,
                'width': src.width,
                'height': src.height,
                'count': src.count,
                'dtypes': src.dtypes,
                'driver': src.driver,
                'nodata': src.nodata,
                'band_names': extract_band_names(src, list(src.indexes)),
                'tags': src.tags(),
                'subdatasets': list(src.subdatasets)
            }
    except rasterio.RasterioIOError as e:
        raise OpenError(f"Failed to read metadata from {path}: {e}") from e

def open_files(
    paths: Sequence[Union[str, Path]],
    bands: Optional[Union[int, Sequence[int]]] = None,
    drop: bool = False,
    config: Optional[EngineConfig] = None
) -> List[BandSource]:
    """
    Open several files and concatenate their band sources in input order.

    The band selection applies to every file.

    Raises:
        OpenError: If any file cannot be opened. Handles already opened by
                   earlier files are released before the error propagates.
    """
    config = config or EngineConfig()
    sources: List[BandSource] = []

    try:
        for path in paths:
            sources.extend(open_sources(path, bands=bands, drop=drop, config=config))
    except OpenError:
        for handle in {id(s.handle): s.handle for s in sources}.values():
            handle.close()
        raise

    log.info(f"Opened {len(sources)} band(s) from {len(paths)} file(s)")
    return sources

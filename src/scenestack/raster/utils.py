# src/scenestack/raster/utils.py

"""
This module provides shared utility functions for raster operations.

Functions include path resolution for ENVI files, band selection
and band naming.
"""
import logging
from pathlib import Path
from typing import Union, List, Optional, Dict, Sequence

import rasterio

log = logging.getLogger(__name__)

__all__ = [
    "resolve_envi_path",
    "is_gdal_identifier",
    "select_band_indices",
    "extract_band_names"
]

# GDAL connection strings that do not point at a plain file on disk
_GDAL_PREFIXES = ("/vsi", "SENTINEL2_", "NETCDF:", "HDF5:", "HDF4_", "GTIFF_DIR:")

def resolve_envi_path(path: Union[str, Path]) -> Path:
    """
    Resolve ENVI header/binary file confusion.
    If 'image.hdr' is passed, redirects to 'image' (binary).
    """
    path = Path(path)
    if path.suffix.lower() == '.hdr':
        binary_path = path.with_suffix('')
        if binary_path.exists():
            log.debug(f"Redirecting {path.name} to binary file {binary_path.name}")
            return binary_path
    return path

def is_gdal_identifier(identifier: Union[str, Path]) -> bool:
    """True for subdataset names and virtual file system paths."""
    return isinstance(identifier, str) and identifier.startswith(_GDAL_PREFIXES)

def select_band_indices(
    count: int,
    bands: Optional[Union[int, Sequence[int]]] = None,
    drop: bool = False
) -> List[int]:
    """
    Normalize a band selection to an ordered list of 1-based indices.

    Args:
        count: Number of bands in the file.
        bands: None (all), a single index, or a sequence of indices (1-based).
        drop: If True, `bands` lists the indices to exclude instead.

    Returns:
        List[int]: Selected indices, in selection order (or file order when dropping).
    """
    if bands is None:
        selection = []
        if not drop:
            return list(range(1, count + 1))
    elif isinstance(bands, int):
        selection = [bands]
    else:
        selection = list(bands)

    for idx in selection:
        if not 1 <= idx <= count:
            raise IndexError(f"Band index {idx} out of range for a file with {count} bands")

    if drop:
        dropped = set(selection)
        return [i for i in range(1, count + 1) if i not in dropped]
    return selection

def extract_band_names(
    src: rasterio.DatasetReader,
    indices: List[int]
) -> Dict[int, str]:
    """
    Extract a name for each band index.

    Preference order: the BANDNAME tag (Sentinel-2 products), the band
    description, then a 'B{index}' placeholder.
    """
    names = {}
    for idx in indices:
        tags = src.tags(idx)
        name = tags.get('BANDNAME')
        if not name and 0 <= (idx - 1) < len(src.descriptions):
            name = src.descriptions[idx - 1]
        names[idx] = name or f"B{idx}"
    return names

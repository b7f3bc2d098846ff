# src/scenestack/sensors/sentinel2.py

"""
This module opens Sentinel-2 products as Datasets.

GDAL's SENTINEL2 driver exposes a product (SAFE directory, zip or
metadata XML) as one subdataset per resolution (10 m, 20 m, 60 m). Each
subdataset is opened as band sources named after their BANDNAME tag, so a
product yields a Dataset with three resolution groups.
"""

import re
import logging
from pathlib import Path
from typing import Union, Optional, List, Dict, Sequence

import rasterio
import shapely.wkt
from shapely.errors import ShapelyError

from scenestack.config import EngineConfig
from scenestack.dataset import Dataset
from scenestack.exceptions import OpenError, GeometryError
from scenestack.raster.source import BandSource, open_sources
from scenestack.vector.geom import CrsGeometry

log = logging.getLogger(__name__)

__all__ = [
    "RESOLUTIONS",
    "band_names_from_tags",
    "resolution_subdatasets",
    "open_sentinel2",
    "footprint"
]

RESOLUTIONS = (10, 20, 60)
FOOTPRINT_CRS = "EPSG:4326"

_RESOLUTION_PATTERN = re.compile(r":(\d+)m:")

def band_names_from_tags(tags: Dict[str, str], description: str = "") -> str:
    """
    Band name from its tags.

    The BANDNAME tag wins; the band description is the fallback.
    """
    return tags.get("BANDNAME") or description or ""

def _open_product(path: Union[str, Path]):
    path = str(path)
    if not path.startswith("SENTINEL2_") and not Path(path).exists():
        raise OpenError(f"Sentinel-2 product not found: {path}")
    try:
        return rasterio.open(path)
    except rasterio.RasterioIOError as e:
        raise OpenError(f"Failed to open Sentinel-2 product {path}: {e}") from e

def resolution_subdatasets(
    path: Union[str, Path],
    resolutions: Sequence[int] = RESOLUTIONS
) -> Dict[int, str]:
    """
    Map each requested resolution (meters) to its subdataset identifier.

    Raises:
        OpenError: If the product exposes none of the requested resolutions.
    """
    with _open_product(path) as src:
        subdatasets = list(src.subdatasets)

    found: Dict[int, str] = {}
    for name in subdatasets:
        match = _RESOLUTION_PATTERN.search(name)
        if match and int(match.group(1)) in resolutions:
            found.setdefault(int(match.group(1)), name)

    if not found:
        raise OpenError(f"{path} is not a Sentinel-2 product: no {list(resolutions)} m subdatasets")
    return dict(sorted(found.items()))

def open_sentinel2(
    path: Union[str, Path],
    config: Optional[EngineConfig] = None,
    resolutions: Sequence[int] = RESOLUTIONS,
    bands: Optional[Sequence[str]] = None,
    deduplicate: bool = True
) -> Dataset:
    """
    Open a Sentinel-2 product as a Dataset, finest resolution first.

    Args:
        path: SAFE directory, zip archive or product metadata XML.
        config: EngineConfig for every band source.
        resolutions: Resolutions (meters) to include.
        bands: Optional band names to keep (e.g. ['B4', 'B8', 'B11']), in that order.
        deduplicate: Keep only the finest copy of a band exposed at several resolutions.

    Returns:
        Dataset: Bands of the product named after their BANDNAME tag.

    Raises:
        OpenError: If the product cannot be opened or lacks requested bands.
    """
    config = config or EngineConfig()
    sources: List[BandSource] = []
    seen = set()

    for resolution, identifier in resolution_subdatasets(path, resolutions).items():
        for source in open_sources(identifier, config=config):
            source.name = band_names_from_tags(source.metadata, source.description) or source.name
            if deduplicate and source.name in seen:
                log.debug(f"Skipping {source.name} at {resolution} m: already opened at a finer resolution")
                continue
            seen.add(source.name)
            sources.append(source)
        log.debug(f"Opened {resolution} m subdataset {identifier}")

    dataset = Dataset(sources, config)
    if bands is not None:
        missing = [b for b in bands if b not in dataset.band_names]
        if missing:
            dataset.close()
            raise OpenError(f"Bands {missing} not found in {path}. Available: {dataset.band_names}")
        dataset = Dataset(dataset._pick(bands), config)

    log.info(f"Opened Sentinel-2 product {Path(str(path)).name} with {len(dataset)} band(s)")
    return dataset

def footprint(path: Union[str, Path]) -> CrsGeometry:
    """
    Footprint of a product from its FOOTPRINT metadata (WKT, EPSG:4326).

    Raises:
        OpenError: If the product cannot be opened or has no FOOTPRINT tag.
        GeometryError: If the WKT cannot be parsed.
    """
    with _open_product(path) as src:
        wkt = src.tags().get("FOOTPRINT")

    if not wkt:
        raise OpenError(f"{path} has no FOOTPRINT metadata")
    try:
        geometry = shapely.wkt.loads(wkt)
    except ShapelyError as e:
        raise GeometryError(f"Invalid FOOTPRINT in {path}: {e}") from e
    return CrsGeometry(geometry, FOOTPRINT_CRS)

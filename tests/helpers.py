# tests/helpers.py

import numpy as np
from rasterio.transform import Affine

from scenestack.raster.georef import Georeference
from scenestack.raster.layer import Raster
from scenestack.raster.source import BandSource

def make_source(name, west, north, res=10.0, shape=(10, 10), crs="EPSG:32632", dtype="float32", nodata=None):
    """In-memory BandSource without a file handle, for planning tests."""
    georef = Georeference(Affine.translation(west, north) * Affine.scale(res, -res), crs)
    return BandSource(
        identifier=f"{name}.tif",
        band_index=1,
        shape=shape,
        dtype=np.dtype(dtype),
        nodata=nodata,
        georef=georef,
        name=name
    )

def upsample(data: np.ndarray, factor: int) -> np.ndarray:
    """Nearest-neighbour block repeat of a 2D array."""
    return np.repeat(np.repeat(data, factor, axis=0), factor, axis=1)

def assert_grid_match(r1: Raster, r2: Raster):
    """Strictly verify two rasters share the exact same grid."""
    assert r1.crs == r2.crs, \
        f"CRS mismatch: {r1.crs} != {r2.crs}"

    assert r1.shape == r2.shape, \
        f"Shape mismatch: {r1.shape} != {r2.shape}"

    assert np.allclose(np.array(r1.transform), np.array(r2.transform), atol=1e-9), \
        "Transform mismatch (Pixel alignment error)"

def assert_all_nodata(raster: Raster):
    assert (~raster.valid_mask).all(), \
        f"Expected only nodata ({raster.nodata}), found {int(raster.valid_mask.sum())} valid pixel(s)"

# tests/conftest.py

import pytest
import numpy as np
import geopandas as gpd
from shapely.geometry import Polygon, box
import rasterio
from rasterio.transform import Affine
from rasterio.crs import CRS

from scenestack.config import EngineConfig

UTM32 = "EPSG:32632"
WEST, NORTH = 500000.0, 4100200.0

@pytest.fixture
def raster_factory(tmp_path):
    """
    Fixture: Returns a function writing synthetic GeoTIFFs into tmp_path.

    Band names are written both as BANDNAME tags and as band descriptions.
    """
    def _create(
        name,
        data,
        transform=None,
        crs=UTM32,
        nodata=None,
        band_names=None,
        tags=None
    ):
        data = np.asarray(data)
        if data.ndim == 2:
            data = data[np.newaxis, :, :]
        count, height, width = data.shape

        profile = {
            'driver': 'GTiff',
            'height': height,
            'width': width,
            'count': count,
            'dtype': data.dtype,
            'crs': CRS.from_user_input(crs) if crs else None,
            'transform': transform or Affine.translation(WEST, NORTH) * Affine.scale(10, -10),
            'nodata': nodata
        }

        path = tmp_path / name
        with rasterio.open(path, 'w', **profile) as dst:
            dst.write(data)
            for idx, band_name in enumerate(band_names or [], start=1):
                dst.set_band_description(idx, band_name)
                dst.update_tags(idx, BANDNAME=band_name)
            if tags:
                dst.update_tags(**tags)
        return str(path)

    return _create

@pytest.fixture
def b2_data():
    """10 m band: values 1..400, row-major."""
    return (np.arange(400, dtype='uint16') + 1).reshape(20, 20)

@pytest.fixture
def b3_data(b2_data):
    """10 m band with one nodata pixel in the upper-left corner."""
    data = b2_data + 1000
    data[0, 0] = 0
    return data

@pytest.fixture
def b5_data():
    """20 m band: values 5001..5100."""
    return (np.arange(100, dtype='uint16') + 5001).reshape(10, 10)

@pytest.fixture
def scene(raster_factory, b2_data, b3_data, b5_data):
    """
    A two-resolution scene over the same 200 m x 200 m extent:
    a 10 m file with B2, B3 and a 20 m file with B5 (nodata = 0).
    """
    path_10m = raster_factory(
        "bands_10m.tif", np.stack([b2_data, b3_data]), nodata=0, band_names=["B2", "B3"]
    )
    path_20m = raster_factory(
        "bands_20m.tif",
        b5_data,
        transform=Affine.translation(WEST, NORTH) * Affine.scale(20, -20),
        nodata=0,
        band_names=["B5"]
    )
    return path_10m, path_20m

@pytest.fixture
def config():
    return EngineConfig(max_workers=4)

@pytest.fixture
def scene_polygon():
    """Polygon covering the whole scene with margin."""
    return box(WEST - 50, NORTH - 250, WEST + 250, NORTH + 50)

@pytest.fixture
def bowtie_poly():
    """Returns a self-intersecting 'bowtie' polygon."""
    # (0,0) -> (10,10) -> (0,10) -> (10,0) crosses itself
    return Polygon([(0, 0), (10, 10), (0, 10), (10, 0)])

@pytest.fixture
def mask_gdf():
    """GeoDataFrame with two square features in UTM 32N."""
    return gpd.GeoDataFrame(
        {'id': [1, 2], 'geometry': [box(0, 0, 4, 4), box(6, 6, 10, 10)]},
        crs=UTM32
    )

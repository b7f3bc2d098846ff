# tests/integration/test_request_region.py

import time

import pytest
import numpy as np
from pyproj.exceptions import ProjError
from shapely.geometry import box
from rasterio.transform import Affine

import scenestack.dataset as dataset_module
import scenestack.raster.georef as georef_module
from scenestack import (
    Dataset, Region, RequestOptions, EngineConfig, HandleStrategy,
    ProjectionError, ReadError, IoError, OutOfBounds, OpenError
)
from scenestack.raster.planning import ResampledRead
from scenestack.raster.source import BandSource

from helpers import upsample, assert_grid_match, assert_all_nodata

WEST, NORTH = 500000.0, 4100200.0

@pytest.fixture
def dataset(scene, config):
    ds = Dataset.open(scene, config=config)
    yield ds
    ds.close()

# --- Assembly ---

def test_full_scene(dataset, b2_data, b3_data, b5_data):
    """
    Two resolutions assembled on the 10 m grid:
    B2 and B3 are copied, B5 is upsampled with nearest (integer data).
    """
    result = dataset.request_region()

    assert result.shape == (3, 20, 20)
    assert result.band_names == ["B2", "B3", "B5"]
    assert result.transform == Affine.translation(WEST, NORTH) * Affine.scale(10, -10)
    assert result.crs.to_epsg() == 32632
    assert result.data.dtype == np.uint16
    assert result.nodata == 0

    assert np.array_equal(result.data[0], b2_data)
    assert np.array_equal(result.data[1], b3_data)
    assert np.array_equal(result.data[2], upsample(b5_data, 2))

def test_assembly_is_deterministic(dataset):
    first = dataset.request_region()
    second = dataset.request_region()
    assert first == second
    assert first.data.tobytes() == second.data.tobytes()

def test_groups_of_scene(dataset):
    assert [len(g) for g in dataset.groups] == [2, 1]
    assert dataset.bounds == (WEST, NORTH - 200, WEST + 200, NORTH)

def test_subregion(dataset, b2_data, b5_data):
    result = dataset.request_region((WEST + 40, NORTH - 120, WEST + 120, NORTH - 40))

    assert result.shape == (3, 8, 8)
    assert result.transform.c == WEST + 40
    assert result.transform.f == NORTH - 40
    assert np.array_equal(result.data[0], b2_data[4:12, 4:12])
    assert np.array_equal(result.data[2], upsample(b5_data, 2)[4:12, 4:12])

def test_pixel_window_region(dataset, b2_data):
    result = dataset.request_region(Region.from_window(row_off=3, col_off=2, rows=4, cols=6))
    assert result.shape == (3, 4, 6)
    assert np.array_equal(result.data[0], b2_data[3:7, 2:8])

def test_partially_outside_region(dataset, b2_data):
    result = dataset.request_region((WEST - 50, NORTH - 50, WEST + 50, NORTH + 50))

    assert result.shape == (3, 10, 10)
    assert np.array_equal(result.data[0, 5:, 5:], b2_data[:5, :5])
    assert (result.data[:, :5, :] == 0).all()
    assert (result.data[:, :, :5] == 0).all()

def test_region_outside_sources_is_all_nodata(dataset):
    result = dataset.request_region((WEST + 5000, NORTH + 5000, WEST + 5100, NORTH + 5100))
    assert result.shape == (3, 10, 10)
    assert_all_nodata(result)

def test_strict_bounds(dataset):
    with pytest.raises(OutOfBounds):
        dataset.request_region(
            (WEST + 5000, NORTH + 5000, WEST + 5100, NORTH + 5100),
            RequestOptions(strict_bounds=True)
        )

def test_nodata_fill_maps_source_nodata(dataset, b3_data):
    result = dataset.request_region(
        (WEST - 50, NORTH - 50, WEST + 50, NORTH + 50),
        RequestOptions(nodata_fill=9999)
    )
    # Outside the sources
    assert (result.data[:, :5, :] == 9999).all()
    # B3's own nodata pixel
    assert result.data[1, 5, 5] == 9999
    assert result.data[1, 5, 6] == b3_data[0, 1]

def test_float_output_with_nan(dataset):
    result = dataset.request_region(
        (WEST - 50, NORTH - 50, WEST + 50, NORTH + 50),
        RequestOptions(dtype="float32", nodata_fill=float("nan"))
    )
    assert result.data.dtype == np.float32
    assert np.isnan(result.data[:, :5, :]).all()
    assert not np.isnan(result.data[0, 5:, 5:]).any()

def test_resolution_override(dataset, b5_data):
    result = dataset.request_region(options=RequestOptions(resolution_override=20))
    assert result.shape == (3, 10, 10)
    assert np.array_equal(result.data[2], b5_data)

def test_crs_override(dataset):
    result = dataset.request_region(options=RequestOptions(crs_override="EPSG:4326"))
    assert result.crs.to_epsg() == 4326
    assert result.count == 3
    assert result.valid_mask.any()

def test_band_option(dataset, b5_data):
    """Only the 20 m band: the 20 m lattice becomes the reference grid."""
    result = dataset.request_region(options=RequestOptions(bands=["B5"]))
    assert result.shape == (1, 10, 10)
    assert np.array_equal(result.data[0], b5_data)

def test_handle_strategies_agree(scene):
    results = []
    for strategy in HandleStrategy:
        with Dataset.open(scene, config=EngineConfig(max_workers=3, handle_strategy=strategy)) as ds:
            results.append(ds.request_region())
    assert results[0] == results[1]

# --- Half-pixel offsets ---

def test_half_pixel_offset_scene(raster_factory):
    data = np.arange(100, dtype='float32').reshape(10, 10)
    a = raster_factory("a.tif", data, transform=Affine.translation(WEST, NORTH) * Affine.scale(10, -10))
    b = raster_factory("b.tif", data, transform=Affine.translation(WEST + 5, NORTH) * Affine.scale(10, -10))

    with Dataset.open([a, b], config=EngineConfig(max_workers=2)) as ds:
        assert len(ds.groups) == 2
        plan = ds.plan()
        assert any(isinstance(p, ResampledRead) for p in plan.plans)

        result = ds.request_region()
        assert result.shape == (2, 10, 10)
        assert np.array_equal(result.data[0], data)
        # Grid centres fall on the shifted band's pixel edges: bilinear averages neighbours
        assert result.data[1][:, 1:] == pytest.approx(data[:, 1:] - 0.5, abs=1e-4)

def test_half_pixel_offset_without_crs(raster_factory):
    data = np.arange(100, dtype='float32').reshape(10, 10)
    a = raster_factory("a.tif", data, crs=None)
    b = raster_factory(
        "b.tif", data, transform=Affine.translation(WEST + 5, NORTH) * Affine.scale(10, -10), crs=None
    )

    with Dataset.open([a, b], config=EngineConfig(max_workers=2)) as ds:
        assert ds.crs is None
        assert any(isinstance(p, ResampledRead) for p in ds.plan().plans)

        result = ds.request_region()
        assert result.crs is None
        assert np.array_equal(result.data[0], data)
        assert result.data[1][:, 1:] == pytest.approx(data[:, 1:] - 0.5, abs=1e-4)

def test_crs_less_bands_cannot_be_reprojected(raster_factory):
    data = np.ones((10, 10), dtype='float32')
    with Dataset.open(raster_factory("plain.tif", data, crs=None)) as ds:
        with pytest.raises(ProjectionError):
            ds.plan(options=RequestOptions(crs_override="EPSG:4326"))

# --- Handle lifetime ---

@pytest.mark.parametrize("strategy, expected", [
    (HandleStrategy.PER_THREAD, 0),
    (HandleStrategy.PER_FILE_LOCK, 1),
])
def test_repeated_requests_keep_handles_flat(scene, strategy, expected):
    config = EngineConfig(max_workers=4, handle_strategy=strategy)
    with Dataset.open(scene, config=config) as ds:
        counts = []
        for _ in range(5):
            ds.request_region()
            counts.append(ds.sources[0].handle.open_count)

    assert counts == [expected] * 5

def test_failed_request_releases_worker_handles(dataset, monkeypatch):
    original_read = BandSource.read_window

    def failing_read(self, *args, **kwargs):
        if self.name == "B5":
            raise IoError("simulated backend failure")
        return original_read(self, *args, **kwargs)

    monkeypatch.setattr(BandSource, "read_window", failing_read)

    with pytest.raises(IoError):
        dataset.request_region()
    assert dataset.sources[0].handle.open_count == 0

# --- Masking ---

def test_full_cover_mask_equals_unmasked(dataset, scene_polygon):
    plain = dataset.request_region()
    for mode in ("center", "all_touched", "fractional"):
        masked = dataset.request_region(options=RequestOptions(mask_geometry=scene_polygon, mask_mode=mode))
        assert np.array_equal(masked.data, plain.data)
        assert masked.coverage is not None

def test_disjoint_mask_is_all_nodata(dataset):
    masked = dataset.request_region(options=RequestOptions(mask_geometry=box(0, 0, 10, 10)))
    assert_all_nodata(masked)

def test_mask_in_other_crs(dataset, scene_polygon):
    """Mask given in EPSG:4326 is reprojected to the grid before rasterizing."""
    from scenestack.vector.geom import CrsGeometry

    geographic = CrsGeometry(scene_polygon, "EPSG:32632").with_crs("EPSG:4326")
    plain = dataset.request_region()
    masked = dataset.request_region(options=RequestOptions(mask_geometry=geographic.geometry, mask_crs="EPSG:4326"))
    assert_grid_match(masked, plain)
    assert np.array_equal(masked.data, plain.data)

def test_half_scene_mask(dataset, b2_data):
    west_half = box(WEST, NORTH - 200, WEST + 100, NORTH)
    masked = dataset.request_region(options=RequestOptions(mask_geometry=west_half))

    assert np.array_equal(masked.data[0, :, :10], b2_data[:, :10])
    assert (masked.data[:, :, 10:] == 0).all()

# --- Failure handling ---

def test_projection_error_before_any_read(dataset, monkeypatch):
    class NoPathTransformer:
        @staticmethod
        def from_crs(*args, **kwargs):
            raise ProjError("no operation")

    reads = []
    assembled = []
    original_read = BandSource.read_window

    def counting_read(self, *args, **kwargs):
        reads.append(self.name)
        return original_read(self, *args, **kwargs)

    def counting_assemble(*args, **kwargs):
        assembled.append(args)
        raise AssertionError("assembly must not start")

    monkeypatch.setattr(georef_module, "Transformer", NoPathTransformer)
    monkeypatch.setattr(BandSource, "read_window", counting_read)
    monkeypatch.setattr(dataset_module, "assemble", counting_assemble)

    with pytest.raises(ProjectionError):
        dataset.request_region(options=RequestOptions(crs_override="EPSG:4326"))

    assert reads == []
    assert assembled == []

def test_read_failure_is_all_or_nothing(dataset, monkeypatch):
    original_read = BandSource.read_window

    def failing_read(self, *args, **kwargs):
        if self.name == "B3":
            raise IoError("simulated backend failure")
        return original_read(self, *args, **kwargs)

    monkeypatch.setattr(BandSource, "read_window", failing_read)

    with pytest.raises(IoError, match="simulated"):
        dataset.request_region()

def test_unexpected_worker_error_is_wrapped_and_cancels_queue(scene, monkeypatch):
    calls = []
    original_read = BandSource.read_window

    def flaky_read(self, *args, **kwargs):
        calls.append(self.name)
        if self.name == "B2":
            raise RuntimeError("driver crashed")
        # Keeps the single worker busy while the failure is handled
        time.sleep(0.2)
        return original_read(self, *args, **kwargs)

    monkeypatch.setattr(BandSource, "read_window", flaky_read)

    with Dataset.open(scene, config=EngineConfig(max_workers=1)) as ds:
        with pytest.raises(ReadError, match="Failed to assemble band B2") as excinfo:
            ds.request_region()

    assert not isinstance(excinfo.value, IoError)
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert "B5" not in calls

# --- Dataset composition ---

def test_open_with_drop(scene):
    with Dataset.open(scene[0], bands=[1], drop=True) as ds:
        assert ds.band_names == ["B3"]

def test_open_skip_unreadable(scene, tmp_path):
    with Dataset.open([scene[0], tmp_path / "ghost.tif"], skip_unreadable=True) as ds:
        assert ds.band_names == ["B2", "B3"]

    with pytest.raises(OpenError):
        Dataset.open([scene[0], tmp_path / "ghost.tif"])

def test_stack_and_select(scene, config, b5_data):
    with Dataset.open(scene[0], config=config) as ten, Dataset.open(scene[1], config=config) as twenty:
        stacked = Dataset.stack([ten, twenty])
        assert stacked.band_names == ["B2", "B3", "B5"]

        selected = stacked.select(["B5", "B2"])
        assert selected.band_names == ["B5", "B2"]

        result = selected.request_region()
        assert result.shape == (2, 20, 20)
        assert np.array_equal(result.data[0], upsample(b5_data, 2))

def test_closing_stack_keeps_inputs_open(scene, config, b2_data):
    with Dataset.open(scene[0], config=config) as ten, Dataset.open(scene[1], config=config) as twenty:
        Dataset.stack([ten, twenty]).close()

        assert not ten.sources[0].handle.closed
        assert np.array_equal(ten.request_region().data[0], b2_data)

def test_stack_intersects_bounds(scene, raster_factory, config):
    shifted = raster_factory(
        "shifted.tif",
        np.ones((20, 20), dtype='uint16'),
        transform=Affine.translation(WEST + 100, NORTH - 100) * Affine.scale(10, -10),
        band_names=["X"]
    )
    with Dataset.open(scene[0], config=config) as ten, Dataset.open(shifted, config=config) as other:
        stacked = Dataset.stack([ten, other])

        assert stacked.bounds == (WEST + 100, NORTH - 200, WEST + 200, NORTH - 100)
        assert stacked.request_region().shape == (3, 10, 10)

def test_stack_disjoint_datasets(scene, raster_factory, config):
    far = raster_factory(
        "far.tif",
        np.ones((5, 5), dtype='uint16'),
        transform=Affine.translation(WEST + 10000, NORTH) * Affine.scale(10, -10)
    )
    with Dataset.open(scene[0], config=config) as ten, Dataset.open(far, config=config) as other:
        with pytest.raises(OutOfBounds):
            Dataset.stack([ten, other])

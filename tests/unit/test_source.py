# tests/unit/test_source.py

import threading
import concurrent.futures

import pytest
import numpy as np
from rasterio.windows import Window

from scenestack.config import EngineConfig, HandleStrategy
from scenestack.exceptions import OpenError, OutOfBounds, EmptyRegion, ReadError
from scenestack.raster.source import BandSource, open_sources, as_window
from scenestack.raster.io import read_info, open_files

@pytest.fixture
def three_band_path(raster_factory):
    data = np.stack([np.full((8, 8), i, dtype='uint8') for i in (1, 2, 3)])
    return raster_factory("three.tif", data, nodata=255, band_names=["red", "green", "nir"])

# --- Opening ---

def test_open_all_bands(three_band_path):
    sources = open_sources(three_band_path)
    assert [s.name for s in sources] == ["red", "green", "nir"]
    assert [s.band_index for s in sources] == [1, 2, 3]
    assert all(s.shape == (8, 8) for s in sources)
    assert all(s.nodata == 255 for s in sources)
    # Bands of one file share one handle
    assert len({id(s.handle) for s in sources}) == 1

def test_open_selection_and_drop(three_band_path):
    assert [s.name for s in open_sources(three_band_path, bands=[3, 1])] == ["nir", "red"]
    assert [s.name for s in open_sources(three_band_path, bands=[2], drop=True)] == ["red", "nir"]

def test_open_single_band(three_band_path):
    source = BandSource.open(three_band_path, band_index=2)
    assert source.name == "green"
    assert source.dtype == np.dtype('uint8')

def test_open_missing_file(tmp_path):
    with pytest.raises(OpenError):
        open_sources(tmp_path / "ghost.tif")

def test_open_band_out_of_range(three_band_path):
    with pytest.raises(OpenError):
        open_sources(three_band_path, bands=[4])

def test_open_placeholder_names(raster_factory):
    path = raster_factory("unnamed.tif", np.zeros((2, 4, 4), dtype='float32'))
    assert [s.name for s in open_sources(path)] == ["B1", "B2"]

def test_read_info(three_band_path):
    info = read_info(three_band_path)
    assert info['count'] == 3
    assert (info['height'], info['width']) == (8, 8)
    assert info['band_names'] == {1: "red", 2: "green", 3: "nir"}
    assert info['subdatasets'] == []

def test_open_files_concatenates(three_band_path, raster_factory):
    other = raster_factory("other.tif", np.zeros((4, 4), dtype='uint8'), band_names=["pan"])
    sources = open_files([three_band_path, other])
    assert [s.name for s in sources] == ["red", "green", "nir", "pan"]

def test_open_files_fails_on_missing(three_band_path, tmp_path):
    with pytest.raises(OpenError):
        open_files([three_band_path, tmp_path / "ghost.tif"])

# --- Windowed reads ---

def test_as_window_tuple_order():
    assert as_window((1, 2, 3, 4)) == Window(col_off=2, row_off=1, width=4, height=3)

def test_read_full_window(raster_factory):
    data = np.arange(64, dtype='int16').reshape(8, 8)
    source = BandSource.open(raster_factory("ramp.tif", data))
    assert np.array_equal(source.read_window((0, 0, 8, 8)), data)

def test_read_partial_window_fills_nodata(raster_factory):
    data = np.arange(64, dtype='uint8').reshape(8, 8)
    source = BandSource.open(raster_factory("ramp.tif", data, nodata=255))

    out = source.read_window((-2, -3, 5, 5))

    assert out.shape == (5, 5)
    assert (out[:2, :] == 255).all()
    assert (out[:, :3] == 255).all()
    assert np.array_equal(out[2:, 3:], data[0:3, 0:2])

def test_read_partial_window_uses_fill_value_without_nodata(raster_factory):
    data = np.ones((4, 4), dtype='float32')
    source = BandSource.open(raster_factory("ones.tif", data), config=EngineConfig(fill_value=7))

    out = source.read_window((2, 2, 4, 4))

    assert out.shape == (4, 4)
    assert (out[:2, :2] == 1).all()
    assert (out[2:, :] == 7).all()
    assert (out[:, 2:] == 7).all()

def test_read_window_resampled(raster_factory):
    data = np.ones((8, 8), dtype='float32')
    source = BandSource.open(raster_factory("ones.tif", data))
    out = source.read_window((0, 0, 8, 8), out_shape=(4, 4))
    assert out.shape == (4, 4)
    assert np.allclose(out, 1.0)

def test_read_window_out_of_bounds(three_band_path):
    source = BandSource.open(three_band_path)
    with pytest.raises(OutOfBounds):
        source.read_window((100, 100, 5, 5))

def test_read_window_zero_area(three_band_path):
    source = BandSource.open(three_band_path)
    with pytest.raises(EmptyRegion):
        source.read_window((0, 0, 0, 5))

def test_read_after_close(three_band_path):
    source = BandSource.open(three_band_path)
    source.handle.close()
    with pytest.raises(ReadError):
        source.read_window((0, 0, 2, 2))

# --- Handle strategies ---

def _read_from_threads(source, n_threads):
    barrier = threading.Barrier(n_threads)

    def task():
        barrier.wait(timeout=10)
        return source.read_window((0, 0, 8, 8))

    with concurrent.futures.ThreadPoolExecutor(max_workers=n_threads) as executor:
        futures = [executor.submit(task) for _ in range(n_threads)]
        return [f.result() for f in futures]

def test_per_thread_handles(three_band_path):
    config = EngineConfig(handle_strategy=HandleStrategy.PER_THREAD)
    source = BandSource.open(three_band_path, config=config)

    results = _read_from_threads(source, 3)

    assert source.handle.open_count == 3
    assert all(np.array_equal(r, results[0]) for r in results)
    source.handle.close()
    assert source.handle.open_count == 0

def test_per_file_lock_handle(three_band_path):
    config = EngineConfig(handle_strategy="per_file_lock")
    source = BandSource.open(three_band_path, config=config)

    results = _read_from_threads(source, 3)

    assert source.handle.open_count == 1
    assert all((r == 1).all() for r in results)

def test_release_threads_closes_only_their_datasets(three_band_path):
    source = BandSource.open(three_band_path, config=EngineConfig(handle_strategy="per_thread"))

    # One dataset for this thread, one for a worker
    source.read_window((0, 0, 2, 2))
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as executor:
        worker = executor.submit(threading.get_ident).result()
        executor.submit(source.read_window, (0, 0, 2, 2)).result()
    assert source.handle.open_count == 2

    assert source.handle.release_threads([worker]) == 1
    assert source.handle.open_count == 1
    assert source.handle.release_threads([worker]) == 0

    # The handle stays usable
    source.read_window((0, 0, 2, 2))
    source.handle.close()
    assert source.handle.open_count == 0

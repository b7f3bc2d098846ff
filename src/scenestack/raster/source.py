# src/scenestack/raster/source.py

"""
This module wraps opened raster bands and their file handles.

GDAL dataset handles are not safe for concurrent use, so every pixel read
goes through a FileHandle, which either hands each worker thread a private
dataset (HandleStrategy.PER_THREAD) or serializes access to one shared
dataset with a per-file lock (HandleStrategy.PER_FILE_LOCK). Bands of the
same file share one FileHandle; they do not own it.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union, Optional, Tuple, List, Dict, Sequence, Iterator, Iterable

import numpy as np
import rasterio
from rasterio.enums import Resampling
from rasterio.windows import Window

from scenestack.config import EngineConfig, HandleStrategy
from scenestack.exceptions import (
    EngineError, OpenError, OutOfBounds, EmptyRegion, IoError, ReadError
)
from .georef import Georeference
from .utils import resolve_envi_path, is_gdal_identifier, select_band_indices, extract_band_names

log = logging.getLogger(__name__)

__all__ = [
    "FileHandle",
    "BandSource",
    "open_sources",
    "as_window"
]

WindowLike = Union[Window, Tuple[int, int, int, int]]

def as_window(window: WindowLike) -> Window:
    """
    Normalize a window to an integer rasterio Window.

    Tuples are read in (row_off, col_off, rows, cols) order.
    """
    if not isinstance(window, Window):
        row_off, col_off, rows, cols = window
        window = Window(col_off=col_off, row_off=row_off, width=cols, height=rows)
    return Window(
        col_off=int(round(window.col_off)),
        row_off=int(round(window.row_off)),
        width=int(round(window.width)),
        height=int(round(window.height))
    )

class FileHandle:
    """
    Thread-aware access to one physical raster file.

    Args:
        identifier: Path or GDAL identifier of the file.
        strategy: HandleStrategy deciding how threads share datasets.
        gdal_env: Options for rasterio.Env, applied around every access.
    """

    def __init__(
        self,
        identifier: str,
        strategy: HandleStrategy = HandleStrategy.PER_THREAD,
        gdal_env: Optional[Dict] = None
    ):
        self.identifier = identifier
        self.strategy = strategy
        self.gdal_env = gdal_env or {}
        self._lock = threading.Lock()
        self._registry_lock = threading.Lock()
        self._local = threading.local()
        self._shared = None
        self._opened: List[rasterio.DatasetReader] = []
        # PER_THREAD datasets keyed by the ident of the thread that opened them
        self._thread_datasets: Dict[int, List[rasterio.DatasetReader]] = {}
        self._closed = False

    @property
    def open_count(self) -> int:
        """Number of datasets currently open on this file."""
        with self._registry_lock:
            return len(self._opened)

    @property
    def closed(self) -> bool:
        return self._closed

    def _open_dataset(self) -> rasterio.DatasetReader:
        try:
            ds = rasterio.open(self.identifier)
        except rasterio.RasterioIOError as e:
            raise OpenError(f"Failed to open {self.identifier}: {e}") from e

        with self._registry_lock:
            self._opened.append(ds)
        log.debug(f"Opened handle on {self.identifier} in {threading.current_thread().name}")
        return ds

    @contextmanager
    def dataset(self) -> Iterator[rasterio.DatasetReader]:
        """
        Yield a dataset the calling thread may use exclusively.

        Raises:
            ReadError: If the handle has been closed.
        """
        if self._closed:
            raise ReadError(f"Handle on {self.identifier} is closed")

        with rasterio.Env(**self.gdal_env):
            if self.strategy == HandleStrategy.PER_THREAD:
                ds = getattr(self._local, "dataset", None)
                if ds is None or ds.closed:
                    ds = self._open_dataset()
                    self._local.dataset = ds
                    with self._registry_lock:
                        self._thread_datasets.setdefault(threading.get_ident(), []).append(ds)
                yield ds
            else:
                with self._lock:
                    if self._shared is None:
                        self._shared = self._open_dataset()
                    yield self._shared

    def release_threads(self, thread_ids: Iterable[int]) -> int:
        """
        Close the datasets opened by the given threads.

        Only call this once those threads have stopped reading, e.g. after
        their pool has shut down. The handle stays usable; other threads
        reopen a dataset on their next read.

        Returns:
            int: Number of datasets closed.
        """
        with self._registry_lock:
            released = [ds for tid in thread_ids for ds in self._thread_datasets.pop(tid, [])]
            self._opened = [ds for ds in self._opened if not any(ds is r for r in released)]
        for ds in released:
            ds.close()
        if released:
            log.debug(f"Released {len(released)} worker handle(s) on {self.identifier}")
        return len(released)

    def close(self):
        """Close every dataset opened through this handle."""
        with self._registry_lock:
            opened, self._opened = self._opened, []
            self._thread_datasets = {}
            self._closed = True
        for ds in opened:
            ds.close()
        self._shared = None
        if opened:
            log.debug(f"Released {len(opened)} handle(s) on {self.identifier}")

    def __repr__(self):
        return f"<FileHandle {self.identifier} strategy={self.strategy.value} open={self.open_count}>"

@dataclass
class BandSource:
    """
    One band of an opened raster file.

    Attributes:
        identifier (str): Path or GDAL identifier of the file.
        band_index (int): 1-based band index inside the file.
        shape (Tuple[int, int]): (rows, cols) of the band.
        dtype (np.dtype): Pixel type.
        nodata (float | int | None): Declared nodata value.
        georef (Georeference): Pixel-to-world mapping and CRS.
        name (str): Band name (BANDNAME tag, description or placeholder).
        description (str): Raw band description.
        metadata (Dict[str, str]): Band tags from the default domain.
        handle (FileHandle): Shared, non-owning access to the file.
        fill_value (float | int): Edge fill used when nodata is None.
    """
    identifier: str
    band_index: int
    shape: Tuple[int, int]
    dtype: np.dtype
    nodata: Optional[Union[float, int]]
    georef: Georeference
    name: str = ""
    description: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)
    handle: Optional[FileHandle] = field(default=None, repr=False, compare=False)
    fill_value: Union[float, int] = 0

    @classmethod
    def open(
        cls,
        identifier: Union[str, Path],
        band_index: int = 1,
        config: Optional[EngineConfig] = None
    ) -> 'BandSource':
        """
        Open a single band of a raster file.

        Raises:
            OpenError: On missing files, unsupported formats or bad band indices.
        """
        return open_sources(identifier, bands=[band_index], config=config)[0]

    @property
    def rows(self) -> int:
        return self.shape[0]

    @property
    def cols(self) -> int:
        return self.shape[1]

    @property
    def crs(self):
        return self.georef.crs

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return self.georef.bounds(self.shape)

    @property
    def edge_fill(self) -> Union[float, int]:
        """Value written where a window leaves the source extent."""
        return self.nodata if self.nodata is not None else self.fill_value

    def overlap(self, window: WindowLike) -> Optional[Window]:
        """Intersection of an integer window with the band extent, or None."""
        window = as_window(window)
        r0 = max(window.row_off, 0)
        c0 = max(window.col_off, 0)
        r1 = min(window.row_off + window.height, self.rows)
        c1 = min(window.col_off + window.width, self.cols)
        if r1 <= r0 or c1 <= c0:
            return None
        return Window(col_off=c0, row_off=r0, width=c1 - c0, height=r1 - r0)

    def read_window(
        self,
        window: WindowLike,
        out_shape: Optional[Tuple[int, int]] = None,
        resampling: Resampling = Resampling.nearest,
        fill_value: Optional[Union[float, int]] = None
    ) -> np.ndarray:
        """
        Read a rectangular pixel window of this band.

        Windows that partially leave the band extent are clipped, and the
        cells outside are set to the band nodata (or `fill_value`, or the
        configured fill when nodata is None), so the returned buffer always
        has the requested shape.

        Args:
            window: rasterio Window or (row_off, col_off, rows, cols).
            out_shape: Optional (rows, cols) of the result. A shape different
                       from the window triggers backend resampling.
            resampling: Kernel used when out_shape differs from the window.
            fill_value: Edge fill overriding the configured one when nodata is None.

        Returns:
            np.ndarray: 2D array of shape out_shape (or the window shape).

        Raises:
            EmptyRegion: If the window has zero area.
            OutOfBounds: If the window does not overlap the band at all.
            IoError: If the backend fails while reading.
        """
        window = as_window(window)
        if window.width <= 0 or window.height <= 0:
            raise EmptyRegion(f"Window {window} has zero area")

        inter = self.overlap(window)
        if inter is None:
            raise OutOfBounds(f"Window {window} does not overlap {self.name} {self.shape}")

        out_shape = tuple(out_shape) if out_shape is not None else (window.height, window.width)
        if self.nodata is not None:
            fill = self.nodata
        elif fill_value is not None:
            fill = fill_value
        else:
            fill = self.fill_value

        if self.handle is None:
            raise ReadError(f"Band {self.name} has no file handle attached")

        try:
            with self.handle.dataset() as ds:
                if out_shape == (window.height, window.width):
                    buffer = np.full(out_shape, fill, dtype=self.dtype)
                    data = ds.read(self.band_index, window=inter)
                    row_start = inter.row_off - window.row_off
                    col_start = inter.col_off - window.col_off
                    buffer[row_start:row_start + inter.height, col_start:col_start + inter.width] = data
                    return buffer

                if inter == window:
                    return ds.read(
                        self.band_index, window=window, out_shape=out_shape, resampling=resampling
                    )
                return ds.read(
                    self.band_index,
                    window=window,
                    out_shape=out_shape,
                    resampling=resampling,
                    boundless=True,
                    fill_value=fill
                )
        except EngineError:
            raise
        except Exception as e:
            raise IoError(f"Failed to read {window} from {self.identifier} band {self.band_index}: {e}") from e

    def __repr__(self):
        return (
            f"<BandSource {self.name} ({Path(self.identifier).name}:{self.band_index}) "
            f"shape={self.shape} dtype={self.dtype} res={self.georef.resolution}>"
        )

def open_sources(
    identifier: Union[str, Path],
    bands: Optional[Union[int, Sequence[int]]] = None,
    drop: bool = False,
    config: Optional[EngineConfig] = None
) -> List[BandSource]:
    """
    Open the bands of one raster file as BandSources sharing a FileHandle.

    Args:
        identifier: File path (ENVI headers are redirected) or GDAL identifier.
        bands: Band selection (1-based). None selects every band.
        drop: If True, `bands` lists the bands to exclude.
        config: EngineConfig providing the handle strategy and fill value.

    Returns:
        List[BandSource]: One source per selected band, in selection order.

    Raises:
        OpenError: If the file is missing, unreadable, has no bands, a band
                   index is out of range, or its transform is degenerate.
    """
    config = config or EngineConfig()

    if is_gdal_identifier(identifier):
        path = str(identifier)
    else:
        resolved = resolve_envi_path(identifier)
        if not resolved.exists():
            raise OpenError(f"Raster file not found: {resolved}")
        path = str(resolved)

    log.debug(f"Opening raster: {path}")

    try:
        with rasterio.open(path) as src:
            if src.count == 0:
                hint = f" It exposes {len(src.subdatasets)} subdatasets." if src.subdatasets else ""
                raise OpenError(f"{path} contains no raster bands.{hint}")

            try:
                indices = select_band_indices(src.count, bands, drop)
            except IndexError as e:
                raise OpenError(str(e)) from e

            if src.transform.determinant == 0:
                raise OpenError(f"{path} has a degenerate geotransform {tuple(src.transform)[:6]}")
            if src.crs is None:
                log.warning(f"{path} has no CRS. Reprojection will be unavailable for its bands.")

            georef = Georeference(src.transform, src.crs)
            names = extract_band_names(src, indices)
            handle = FileHandle(path, config.handle_strategy, config.gdal_env)

            sources = []
            for idx in indices:
                sources.append(BandSource(
                    identifier=path,
                    band_index=idx,
                    shape=(src.height, src.width),
                    dtype=np.dtype(src.dtypes[idx - 1]),
                    nodata=src.nodatavals[idx - 1],
                    georef=georef,
                    name=names[idx],
                    description=src.descriptions[idx - 1] or "",
                    metadata=dict(src.tags(idx)),
                    handle=handle,
                    fill_value=config.fill_value
                ))
            return sources

    except rasterio.RasterioIOError as e:
        raise OpenError(f"Failed to open raster {path}: {e}") from e

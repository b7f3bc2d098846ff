# src/scenestack/raster/layer.py

import copy
import logging
from typing import Union, Optional, Tuple, List

import numpy as np
import rasterio
from rasterio.transform import Affine
from rasterio.crs import CRS

from .georef import Georeference

log = logging.getLogger(__name__)

__all__ = ["Raster"]

class Raster:
    """
    The result of a region request.

    A Raster is an in-memory envelope that keeps the assembled pixel array
    together with its geospatial context.

    Attributes:
        data (np.ndarray): The pixel array in (Bands, Height, Width) format.
        transform (Affine): The affine transform of the output grid.
        crs (CRS): The Coordinate Reference System.
        nodata (float | int): The value representing missing data.
        band_names (List[str]): Name of each band, in band order.
        coverage (np.ndarray | None): Mask coverage in [0, 1] when a mask was applied.
    """

    def __init__(
        self,
        data: np.ndarray,
        transform: Affine,
        crs: Optional[CRS],
        nodata: Optional[Union[float, int]] = None,
        band_names: Optional[List[str]] = None,
        coverage: Optional[np.ndarray] = None
    ):
        """
        Initialize a Raster object.

        Args:
            data: Input array. Must be 2D (Height, Width) or 3D (Bands, Height, Width).
                  2D arrays are promoted to 3D (1, Height, Width).
            transform: Geospatial transform (maps pixels to coordinates).
            crs: Coordinate Reference System.
            nodata: Value indicating no data.
            band_names: Optional band names, one per band.
            coverage: Optional (Height, Width) mask coverage.

        Raises:
            TypeError: If data or transform have the wrong type.
            ValueError: If dimensions mismatch.
        """
        if not isinstance(data, np.ndarray):
            raise TypeError(f"Data must be numpy.ndarray, got {type(data)}")
        if data.ndim not in (2, 3):
            raise ValueError(f"Data must be 2D or 3D, got shape {data.shape}")
        if not isinstance(transform, Affine):
            raise TypeError(f"Transform must be rasterio.Affine, got {type(transform)}")

        if data.ndim == 2:
            data = data[np.newaxis, :, :]

        band_names = list(band_names) if band_names is not None else [f"B{i}" for i in range(1, data.shape[0] + 1)]
        if len(band_names) != data.shape[0]:
            raise ValueError(f"Got {len(band_names)} band names for {data.shape[0]} bands")
        if coverage is not None and coverage.shape != data.shape[1:]:
            raise ValueError(f"Coverage shape {coverage.shape} does not match raster {data.shape[1:]}")

        self.data = data
        self.transform = transform
        self.crs = crs
        self.nodata = nodata
        self.band_names = band_names
        self.coverage = coverage

    @property
    def width(self) -> int:
        return self.data.shape[2]

    @property
    def height(self) -> int:
        return self.data.shape[1]

    @property
    def count(self) -> int:
        return self.data.shape[0]

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Returns (Bands, Height, Width)."""
        return self.data.shape

    @property
    def georef(self) -> Georeference:
        return Georeference(self.transform, self.crs)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """Returns (left, bottom, right, top) in CRS units."""
        return rasterio.transform.array_bounds(self.height, self.width, self.transform)

    @property
    def valid_mask(self) -> np.ndarray:
        """(Bands, Height, Width) boolean array, True where data is not nodata."""
        if self.nodata is None:
            return np.ones(self.shape, dtype=bool)
        if isinstance(self.nodata, float) and np.isnan(self.nodata):
            return ~np.isnan(self.data)
        return self.data != self.nodata

    def band_index(self, name: str) -> int:
        """1-based index of a band name."""
        try:
            return self.band_names.index(name) + 1
        except ValueError:
            raise KeyError(f"Band name '{name}' not found in {self.band_names}")

    def get_band(self, identifier: Union[int, str]) -> np.ndarray:
        """
        Retrieve a specific band by 1-based index or name.

        Returns:
            np.ndarray: 2D array of the band.
        """
        idx = self.band_index(identifier) if isinstance(identifier, str) else identifier
        if not (1 <= idx <= self.count):
            raise IndexError(f"Band index {idx} out of range (1-{self.count})")
        return self.data[idx - 1]

    def copy(self) -> 'Raster':
        """Returns a deep copy of the Raster."""
        return Raster(
            data=self.data.copy(),
            transform=copy.deepcopy(self.transform),
            crs=copy.deepcopy(self.crs),
            nodata=self.nodata,
            band_names=list(self.band_names),
            coverage=None if self.coverage is None else self.coverage.copy()
        )

    def __repr__(self) -> str:
        return (f"<Raster shape={self.shape} dtype={self.data.dtype} "
                f"crs={self.crs} bounds={self.bounds}>")

    def __eq__(self, other: object) -> bool:
        """Checks equality based on metadata and pixel data."""
        if not isinstance(other, Raster):
            return NotImplemented

        meta_eq = (
            self.transform == other.transform and
            self.crs == other.crs and
            self.band_names == other.band_names and
            self.shape == other.shape and
            (self.nodata == other.nodata or (
                isinstance(self.nodata, float) and isinstance(other.nodata, float)
                and np.isnan(self.nodata) and np.isnan(other.nodata)
            ))
        )
        if not meta_eq:
            return False

        return np.array_equal(self.data, other.data, equal_nan=self.data.dtype.kind == 'f')

    __hash__ = None

    def __array__(self, dtype=None, copy=None) -> np.ndarray:
        if dtype is not None:
            return self.data.astype(dtype)
        return self.data

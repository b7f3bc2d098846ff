# src/scenestack/vector/mask.py

"""
This module rasterizes mask geometries onto an output grid.

Three coverage rules are supported:
    CENTER: A pixel is covered if its center lies inside the geometry.
    ALL_TOUCHED: A pixel is covered if the geometry touches it at all.
    FRACTIONAL: Coverage is the share of the pixel area inside the geometry.

The result is a coverage array in [0, 1] on the grid, applied to the
assembled bands after all reads are done.
"""

import logging
from enum import Enum
from dataclasses import dataclass
from typing import Union, Any

import numpy as np
import shapely
from rasterio.features import geometry_mask

from scenestack.exceptions import InvalidOptions
from scenestack.raster.planning import TargetGrid
from .geom import CrsGeometry

log = logging.getLogger(__name__)

__all__ = [
    "MaskMode",
    "GeometryMask",
    "rasterize_mask"
]

class MaskMode(Enum):
    CENTER = "center"
    ALL_TOUCHED = "all_touched"
    FRACTIONAL = "fractional"

    @classmethod
    def coerce(cls, value: Union[str, 'MaskMode']) -> 'MaskMode':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            valid = [m.value for m in cls]
            raise InvalidOptions(f"Invalid mask mode '{value}'. Must be one of: {valid}")

@dataclass
class GeometryMask:
    """
    Per-pixel coverage of a geometry on a grid.

    Attributes:
        coverage (np.ndarray): (rows, cols) array, boolean or float32 in [0, 1] (FRACTIONAL).
        mode (MaskMode): Rule the coverage was computed with.
    """
    coverage: np.ndarray
    mode: MaskMode

    def keep(self, threshold: float = 0.0) -> np.ndarray:
        """Boolean (rows, cols) array of pixels whose coverage exceeds `threshold`."""
        return self.coverage > threshold

    def apply(self, data: np.ndarray, nodata: Union[int, float], threshold: float = 0.0) -> np.ndarray:
        """
        Set pixels with coverage at or below `threshold` to nodata, in place.

        Args:
            data: (bands, rows, cols) or (rows, cols) array on the mask grid.
            nodata: Value written into masked pixels.
            threshold: Coverage threshold in [0, 1).

        Returns:
            np.ndarray: The same array, masked.
        """
        if not 0.0 <= threshold < 1.0:
            raise InvalidOptions(f"Mask threshold must be in [0, 1), got {threshold}")
        if data.shape[-2:] != self.coverage.shape:
            raise InvalidOptions(f"Mask {self.coverage.shape} does not match data {data.shape}")

        outside = ~self.keep(threshold)
        data[..., outside] = nodata
        return data

def _pixel_polygons(grid: TargetGrid, rows: np.ndarray, cols: np.ndarray) -> np.ndarray:
    """Shapely polygons of the given pixels, for any affine transform."""
    t = grid.transform
    corner_offsets = np.array([(0, 0), (1, 0), (1, 1), (0, 1), (0, 0)], dtype=np.float64)

    c = cols[:, None] + corner_offsets[None, :, 0]
    r = rows[:, None] + corner_offsets[None, :, 1]
    x = t.a * c + t.b * r + t.c
    y = t.d * c + t.e * r + t.f
    return shapely.polygons(np.stack([x, y], axis=-1))

def _fractional_coverage(geometry, grid: TargetGrid) -> np.ndarray:
    coverage = np.zeros(grid.shape, dtype=np.float32)

    touched = geometry_mask(
        [geometry], out_shape=grid.shape, transform=grid.transform, all_touched=True, invert=True
    )
    rows, cols = np.nonzero(touched)
    if rows.size == 0:
        return coverage

    shapely.prepare(geometry)
    cells = _pixel_polygons(grid, rows.astype(np.float64), cols.astype(np.float64))
    inside = shapely.contains_properly(geometry, cells)
    coverage[rows[inside], cols[inside]] = 1.0

    edge = ~inside
    if edge.any():
        area = shapely.area(shapely.intersection(cells[edge], geometry))
        coverage[rows[edge], cols[edge]] = np.clip(area / abs(grid.transform.determinant), 0.0, 1.0)
    return coverage

def rasterize_mask(
    geometry: Any,
    grid: TargetGrid,
    mode: Union[str, MaskMode] = MaskMode.CENTER,
    crs: Any = None
) -> GeometryMask:
    """
    Compute per-pixel coverage of a geometry on a target grid.

    The geometry is reprojected into the grid CRS and repaired first.

    Args:
        geometry: CrsGeometry, shapely geometry, GeoSeries, GeoDataFrame or vector path.
        grid: TargetGrid to rasterize onto.
        mode: MaskMode or its string value.
        crs: CRS of a bare shapely geometry. Default = grid CRS.

    Returns:
        GeometryMask: Coverage array in [0, 1] and the rule used.

    Raises:
        ProjectionError: If the geometry cannot be reprojected to the grid CRS.
        GeometryError: If the geometry cannot be repaired.
    """
    mode = MaskMode.coerce(mode)
    geom = CrsGeometry.from_any(geometry, crs).with_crs(grid.crs).normalize()

    if geom.is_empty:
        log.warning("Mask geometry is empty: every pixel will be masked.")
        dtype = np.float32 if mode == MaskMode.FRACTIONAL else bool
        return GeometryMask(np.zeros(grid.shape, dtype=dtype), mode)

    if mode == MaskMode.FRACTIONAL:
        coverage = _fractional_coverage(geom.geometry, grid)
    else:
        coverage = geometry_mask(
            [geom.geometry],
            out_shape=grid.shape,
            transform=grid.transform,
            all_touched=(mode == MaskMode.ALL_TOUCHED),
            invert=True
        )

    log.debug(f"Rasterized {mode.value} mask: {int((coverage > 0).sum())} of {coverage.size} pixel(s) covered")
    return GeometryMask(coverage, mode)

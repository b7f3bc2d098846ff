# src/scenestack/raster/georef.py

"""
This module models the mapping between pixel space and world space.

A Georeference couples an affine transform with a Coordinate Reference
System. Instances are immutable: every operation returns a new object.
Projection math is delegated to pyproj and rasterio.warp.
"""

import math
import logging
from dataclasses import dataclass
from typing import Optional, Tuple, Union, Any

import numpy as np
from rasterio.crs import CRS
from rasterio.transform import Affine, array_bounds
from rasterio.warp import calculate_default_transform
from rasterio.windows import Window, transform as window_transform
from pyproj import CRS as ProjCRS, Transformer
from pyproj.exceptions import ProjError, CRSError as ProjCRSError

from scenestack.exceptions import ProjectionError, SingularTransform

log = logging.getLogger(__name__)

__all__ = [
    "Georeference",
    "as_crs",
    "crs_equal",
    "transformer",
    "transform_bounds"
]

Bounds = Tuple[float, float, float, float]
CrsLike = Union[str, int, CRS, Any]

def as_crs(value: Optional[CrsLike]) -> Optional[CRS]:
    """Normalize EPSG codes, strings and CRS objects to a rasterio CRS."""
    if value is None or isinstance(value, CRS):
        return value
    try:
        if isinstance(value, int):
            return CRS.from_epsg(value)
        return CRS.from_user_input(value)
    except Exception as e:
        raise ProjectionError(f"Unrecognized coordinate reference system {value!r}: {e}") from e

def crs_equal(a: Optional[CRS], b: Optional[CRS]) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return a == b

def transformer(src_crs: CrsLike, dst_crs: CrsLike) -> Transformer:
    """
    Build a pyproj Transformer between two CRSs using (x, y) axis order.

    Raises:
        ProjectionError: If PROJ knows no operation between the two systems.
    """
    if src_crs is None or dst_crs is None:
        raise ProjectionError("Cannot transform coordinates without a CRS on both ends.")
    try:
        return Transformer.from_crs(
            ProjCRS.from_user_input(src_crs),
            ProjCRS.from_user_input(dst_crs),
            always_xy=True
        )
    except (ProjError, ProjCRSError) as e:
        raise ProjectionError(f"No transform path from {src_crs} to {dst_crs}: {e}") from e

def transform_bounds(
    bounds: Bounds,
    src_crs: CrsLike,
    dst_crs: CrsLike,
    densify_pts: int = 21
) -> Bounds:
    """
    Reproject (left, bottom, right, top) bounds, densifying the edges.

    Returns the input unchanged when both CRSs are equal.

    Raises:
        ProjectionError: If no transform path exists or the result is not finite.
    """
    if crs_equal(as_crs(src_crs), as_crs(dst_crs)):
        return tuple(bounds)

    proj = transformer(src_crs, dst_crs)
    try:
        out = proj.transform_bounds(*bounds, densify_pts=densify_pts)
    except ProjError as e:
        raise ProjectionError(f"Failed to reproject bounds {bounds}: {e}") from e

    if not all(math.isfinite(v) for v in out):
        raise ProjectionError(f"Bounds {bounds} have no finite image in {dst_crs}")
    return tuple(out)

@dataclass(frozen=True)
class Georeference:
    """
    Affine pixel-to-world transform plus its CRS.

    Pixel coordinates follow the rasterio convention: integer (row, col)
    addresses the upper-left corner of a pixel.

    Attributes:
        transform (Affine): Maps (col, row) to (x, y).
        crs (CRS | None): Coordinate Reference System of the world coordinates.
    """
    transform: Affine
    crs: Optional[CRS] = None

    def __post_init__(self):
        if not isinstance(self.transform, Affine):
            raise TypeError(f"Transform must be rasterio.Affine, got {type(self.transform)}")
        object.__setattr__(self, "crs", as_crs(self.crs))

    @classmethod
    def identity(cls, crs: Optional[CrsLike] = None) -> 'Georeference':
        return cls(Affine.identity(), crs)

    @classmethod
    def from_origin(
        cls,
        west: float,
        north: float,
        xsize: float,
        ysize: float,
        crs: Optional[CrsLike] = None
    ) -> 'Georeference':
        """North-up georeference with its upper-left corner at (west, north)."""
        return cls(Affine.translation(west, north) * Affine.scale(xsize, -ysize), crs)

    # Derived properties

    @property
    def origin(self) -> Tuple[float, float]:
        return (self.transform.c, self.transform.f)

    @property
    def pixel_size(self) -> Tuple[float, float]:
        """Signed (x, y) pixel size as stored in the transform."""
        return (self.transform.a, self.transform.e)

    @property
    def resolution(self) -> Tuple[float, float]:
        """Absolute ground size of a pixel along x and y."""
        t = self.transform
        return (math.hypot(t.a, t.d), math.hypot(t.b, t.e))

    @property
    def rotation(self) -> Tuple[float, float, float, float]:
        """Linear part (a, b, d, e) of the affine matrix."""
        t = self.transform
        return (t.a, t.b, t.d, t.e)

    @property
    def pixel_area(self) -> float:
        return abs(self.transform.determinant)

    @property
    def is_rectilinear(self) -> bool:
        return self.transform.b == 0 and self.transform.d == 0

    # Algebra

    def compose(self, other: 'Georeference') -> 'Georeference':
        """Return self ∘ other: apply `other` first, then `self`. Keeps self's CRS."""
        return Georeference(self.transform * other.transform, self.crs)

    def invert(self) -> 'Georeference':
        """
        Invert the affine transform.

        Raises:
            SingularTransform: If the pixel size is degenerate.
        """
        det = self.transform.determinant
        if det == 0 or not math.isfinite(det):
            raise SingularTransform(f"Affine transform is not invertible: {tuple(self.transform)[:6]}")
        return Georeference(~self.transform, self.crs)

    def pixel_to_world(self, row: float, col: float) -> Tuple[float, float]:
        x, y = self.transform * (col, row)
        return (x, y)

    def world_to_pixel(self, x: float, y: float) -> Tuple[float, float]:
        """Fractional (row, col) of a world coordinate. Rounding is left to the caller."""
        col, row = self.invert().transform * (x, y)
        return (row, col)

    def window_georef(self, window: Window) -> 'Georeference':
        """Georeference of a window's upper-left pixel."""
        return Georeference(window_transform(window, self.transform), self.crs)

    def bounds(self, shape: Tuple[int, int]) -> Tuple[float, float, float, float]:
        """World (left, bottom, right, top) of a grid of (rows, cols) pixels."""
        rows, cols = shape
        return array_bounds(rows, cols, self.transform)

    def pixel_map(self, other: 'Georeference') -> Affine:
        """Affine taking pixel coordinates of `self` to pixel coordinates of `other`."""
        return other.invert().transform * self.transform

    def is_aligned_with(self, other: 'Georeference', tolerance: float = 1e-9) -> bool:
        """
        True if both georeferences share CRS, pixel size and pixel lattice.

        The lattices are equal when self's pixel grid maps onto other's by a
        whole-pixel translation.
        """
        if not crs_equal(self.crs, other.crs):
            return False
        m = self.pixel_map(other)
        linear_ok = (
            math.isclose(m.a, 1.0, rel_tol=tolerance, abs_tol=tolerance)
            and math.isclose(m.e, 1.0, rel_tol=tolerance, abs_tol=tolerance)
            and abs(m.b) <= tolerance
            and abs(m.d) <= tolerance
        )
        return linear_ok and _is_integral(m.c, tolerance) and _is_integral(m.f, tolerance)

    def reproject(
        self,
        target_crs: CrsLike,
        shape: Tuple[int, int] = (1, 1),
        resolution: Optional[Union[float, Tuple[float, float]]] = None
    ) -> 'Georeference':
        """
        Express the grid of `shape` pixels in another CRS.

        Delegates to rasterio.warp.calculate_default_transform, which keeps the
        pixel count roughly constant unless a resolution is forced.

        Raises:
            ProjectionError: If no transform path exists between the CRSs.
        """
        dst_crs = as_crs(target_crs)
        if crs_equal(self.crs, dst_crs) and resolution is None:
            return self

        # Fail early with a clean error if PROJ has no path
        transformer(self.crs, dst_crs)

        rows, cols = shape
        try:
            dst_transform, _, _ = calculate_default_transform(
                self.crs,
                dst_crs,
                cols,
                rows,
                *self.bounds(shape),
                resolution=resolution
            )
        except Exception as e:
            raise ProjectionError(f"Failed to reproject georeference to {dst_crs}: {e}") from e

        return Georeference(dst_transform, dst_crs)

    def almost_equals(self, other: 'Georeference', tolerance: float = 1e-9) -> bool:
        return crs_equal(self.crs, other.crs) and np.allclose(
            np.array(self.transform)[:6], np.array(other.transform)[:6], rtol=tolerance, atol=tolerance
        )

def _is_integral(value: float, tolerance: float) -> bool:
    return abs(value - round(value)) <= tolerance * max(1.0, abs(value))

# src/scenestack/vector/geom.py

"""
This module couples shapely geometries with their CRS.

CrsGeometry is the single geometry type accepted by the mask rasterizer,
whatever the caller passed in (shapely geometry, GeoSeries, GeoDataFrame or
a vector file path).
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import numpy as np
import geopandas as gpd
import shapely
from shapely.geometry.base import BaseGeometry
from shapely.ops import transform as shapely_transform

from scenestack.exceptions import GeometryError, ProjectionError
from scenestack.raster.georef import as_crs, crs_equal, transformer
from .io import load_vector

log = logging.getLogger(__name__)

__all__ = [
    "CrsGeometry"
]

_POLYGONAL = ("Polygon", "MultiPolygon")

def _polygonal_parts(geom: BaseGeometry):
    """Polygons contained in a (possibly mixed) geometry."""
    if geom.geom_type in _POLYGONAL:
        return [geom]
    if hasattr(geom, "geoms"):
        return [p for g in geom.geoms for p in _polygonal_parts(g)]
    return []

@dataclass(frozen=True)
class CrsGeometry:
    """
    A shapely geometry and the CRS of its coordinates.

    Attributes:
        geometry (BaseGeometry): Shapely geometry.
        crs (CRS | None): CRS of the coordinates; None means "same as the target grid".
    """
    geometry: BaseGeometry
    crs: Optional[Any] = None

    def __post_init__(self):
        if not isinstance(self.geometry, BaseGeometry):
            raise GeometryError(f"Expected a shapely geometry, got {type(self.geometry)}")
        object.__setattr__(self, "crs", as_crs(self.crs))

    @classmethod
    def from_any(cls, obj: Any, crs: Optional[Any] = None) -> 'CrsGeometry':
        """
        Build a CrsGeometry from shapely, GeoPandas or a vector file path.

        Multi-feature inputs are merged into one geometry. For GeoPandas
        inputs and files the embedded CRS is used; `crs` is the fallback.

        Raises:
            GeometryError: If the input type is not supported or holds no features.
            OpenError: If a vector file cannot be read.
        """
        if isinstance(obj, CrsGeometry):
            return obj
        if isinstance(obj, BaseGeometry):
            return cls(obj, crs)
        if isinstance(obj, (str, Path)):
            obj = load_vector(obj)

        if isinstance(obj, gpd.GeoDataFrame):
            obj = obj.geometry
        if isinstance(obj, gpd.GeoSeries):
            geoms = obj.dropna()
            if geoms.empty:
                raise GeometryError("Mask input contains no geometries.")
            merged = shapely.union_all(geoms.values)
            return cls(merged, obj.crs if obj.crs is not None else crs)

        raise GeometryError(f"Unsupported geometry input: {type(obj)}")

    @property
    def bounds(self):
        return self.geometry.bounds

    @property
    def is_empty(self) -> bool:
        return self.geometry.is_empty

    def with_crs(self, target_crs: Optional[Any]) -> 'CrsGeometry':
        """
        Reproject into `target_crs`. A geometry without CRS is assumed to already be in it.

        Raises:
            ProjectionError: If no transform path exists or coordinates become non-finite.
        """
        target_crs = as_crs(target_crs)
        if self.crs is None or crs_equal(self.crs, target_crs):
            return CrsGeometry(self.geometry, target_crs)

        proj = transformer(self.crs, target_crs)
        try:
            projected = shapely_transform(proj.transform, self.geometry)
        except Exception as e:
            raise ProjectionError(f"Failed to reproject geometry to {target_crs}: {e}") from e

        if not np.isfinite(shapely.get_coordinates(projected)).all():
            raise ProjectionError(f"Geometry has no finite image in {target_crs}")
        return CrsGeometry(projected, target_crs)

    def normalize(self) -> 'CrsGeometry':
        """
        Repair and merge the geometry into one valid polygonal geometry.

        Self-intersections (bowties) are repaired with make_valid; line and
        point artifacts of the repair are discarded.

        Raises:
            GeometryError: If nothing polygonal remains after repair.
        """
        geom = self.geometry
        if geom.is_empty:
            return self

        if not geom.is_valid:
            log.debug(f"Repairing invalid mask geometry: {shapely.is_valid_reason(geom)}")
            try:
                geom = shapely.make_valid(geom)
            except Exception as e:
                raise GeometryError(f"Could not repair mask geometry: {e}") from e

        parts = _polygonal_parts(geom)
        if not parts:
            raise GeometryError(f"Mask geometry has no polygonal area ({self.geometry.geom_type})")

        merged = shapely.union_all(parts)
        if not merged.is_valid:
            raise GeometryError(f"Mask geometry is still invalid after repair: {shapely.is_valid_reason(merged)}")
        return CrsGeometry(merged, self.crs)

    def __repr__(self):
        return f"<CrsGeometry {self.geometry.geom_type} crs={self.crs} bounds={self.bounds}>"

# src/scenestack/dataset.py

"""
This module provides the public entry point of the engine.

A Dataset binds the band sources of a scene together and turns a region
request into one aligned (band, row, col) array:

    group sources -> plan the target grid -> rasterize the mask -> assemble

Every CRS, region and geometry error is raised during planning, before
any pixel is read.
"""

import logging
from pathlib import Path
from typing import Union, Optional, List, Sequence, Tuple

from scenestack.config import EngineConfig
from scenestack.exceptions import OpenError, OutOfBounds, InvalidOptions
from scenestack.raster.georef import crs_equal, transform_bounds
from scenestack.raster.source import BandSource, open_sources
from scenestack.raster.io import open_files
from scenestack.raster.grouping import ResolutionGroup, group_sources, finest_group
from scenestack.raster.planning import Region, RequestOptions, GridPlan, plan_grid
from scenestack.raster.engine import assemble
from scenestack.raster.layer import Raster
from scenestack.vector.mask import MaskMode, rasterize_mask

log = logging.getLogger(__name__)

__all__ = [
    "Dataset",
    "Region",
    "RequestOptions"
]

Bounds = Tuple[float, float, float, float]

def _intersect(a: Bounds, b: Bounds) -> Bounds:
    left, bottom = max(a[0], b[0]), max(a[1], b[1])
    right, top = min(a[2], b[2]), min(a[3], b[3])
    if right <= left or top <= bottom:
        raise OutOfBounds(f"Bounds {a} and {b} do not intersect")
    return (left, bottom, right, top)

class Dataset:
    """
    A set of band sources requested as one multi-band array.

    Band order is the order of `sources`. Resolution groups are derived
    from it once and reused by every request.

    Args:
        sources: Band sources in output band order.
        config: EngineConfig. Default = EngineConfig().
        bounds: Optional extent override in the dataset CRS (used by stack).
        owns_handles: If False, close() leaves the sources' file handles open.
    """

    def __init__(
        self,
        sources: Sequence[BandSource],
        config: Optional[EngineConfig] = None,
        bounds: Optional[Bounds] = None,
        owns_handles: bool = True
    ):
        if not sources:
            raise InvalidOptions("A Dataset needs at least one band source.")
        self.sources: List[BandSource] = list(sources)
        self.config = config or EngineConfig()
        self._bounds = bounds
        self._groups: Optional[List[ResolutionGroup]] = None
        self._owns_handles = owns_handles

    @classmethod
    def open(
        cls,
        paths: Union[str, Path, Sequence[Union[str, Path]]],
        bands: Optional[Union[int, Sequence[int]]] = None,
        drop: bool = False,
        config: Optional[EngineConfig] = None,
        skip_unreadable: bool = False
    ) -> 'Dataset':
        """
        Open one or more raster files as a Dataset.

        Args:
            paths: File path(s) or GDAL identifier(s); bands are concatenated in order.
            bands: 1-based band selection applied to every file. None = all bands.
            drop: If True, `bands` lists the bands to exclude.
            config: EngineConfig shared by all sources.
            skip_unreadable: If True, files that fail to open are logged and skipped.

        Raises:
            OpenError: If a file cannot be opened (and is not skipped) or nothing was opened.
        """
        config = config or EngineConfig()
        if isinstance(paths, (str, Path)):
            paths = [paths]

        if skip_unreadable:
            sources: List[BandSource] = []
            for path in paths:
                try:
                    sources.extend(open_sources(path, bands=bands, drop=drop, config=config))
                except OpenError as e:
                    log.warning(f"Skipping unreadable source {path}: {e}")
        else:
            sources = open_files(paths, bands=bands, drop=drop, config=config)

        if not sources:
            raise OpenError(f"No band could be opened from {list(paths)}")

        return cls(sources, config)

    @classmethod
    def stack(cls, datasets: Sequence['Dataset']) -> 'Dataset':
        """
        Concatenate the bands of several datasets.

        The stacked extent is the intersection of the input extents, expressed
        in the CRS of the first dataset. The stack shares file handles with
        its inputs and does not close them; close the inputs when done.

        Raises:
            OutOfBounds: If the extents do not intersect.
        """
        if not datasets:
            raise InvalidOptions("Cannot stack zero datasets.")

        first = datasets[0]
        bounds = first.bounds
        sources = list(first.sources)
        for other in datasets[1:]:
            bounds = _intersect(bounds, transform_bounds(other.bounds, other.crs, first.crs))
            sources.extend(other.sources)

        return cls(sources, first.config, bounds=bounds, owns_handles=False)

    # Properties

    @property
    def band_names(self) -> List[str]:
        return [s.name for s in self.sources]

    @property
    def groups(self) -> List[ResolutionGroup]:
        if self._groups is None:
            self._groups = group_sources(self.sources, self.config.grouping_tolerance)
        return self._groups

    @property
    def crs(self):
        """CRS of the finest resolution group."""
        return finest_group(self.groups).crs

    @property
    def bounds(self) -> Bounds:
        """Extent shared by every band, in the dataset CRS."""
        if self._bounds is None:
            crs = self.crs
            bounds = None
            for source in self.sources:
                b = source.bounds
                if not crs_equal(source.crs, crs):
                    b = transform_bounds(b, source.crs, crs)
                bounds = b if bounds is None else _intersect(bounds, b)
            self._bounds = bounds
        return self._bounds

    def __len__(self) -> int:
        return len(self.sources)

    # Selection

    def select(self, bands: Sequence[Union[int, str]]) -> 'Dataset':
        """
        A Dataset over a subset of bands, in the given order.

        Args:
            bands: Band names or 1-based positions.

        The returned Dataset shares file handles with this one and does not close them.
        """
        return Dataset(self._pick(bands), self.config, bounds=self._bounds, owns_handles=False)

    def _pick(self, bands: Sequence[Union[int, str]]) -> List[BandSource]:
        if isinstance(bands, (int, str)):
            bands = [bands]
        names = self.band_names
        picked = []
        for band in bands:
            if isinstance(band, str):
                if band not in names:
                    raise InvalidOptions(f"Band name '{band}' not found in {names}")
                picked.append(self.sources[names.index(band)])
            else:
                if not 1 <= band <= len(self.sources):
                    raise InvalidOptions(f"Band position {band} out of range (1-{len(self.sources)})")
                picked.append(self.sources[band - 1])
        if not picked:
            raise InvalidOptions("Band selection is empty.")
        return picked

    # Requests

    def plan(
        self,
        region: Union[None, Region, Sequence[float]] = None,
        options: Optional[RequestOptions] = None
    ) -> GridPlan:
        """
        Plan a request without reading pixels.

        A missing region defaults to the dataset extent.
        """
        options = options or RequestOptions()
        groups = self.groups
        if options.bands is not None:
            groups = group_sources(self._pick(options.bands), self.config.grouping_tolerance)

        if region is None:
            region = Region(bounds=self.bounds, crs=self.crs)

        return plan_grid(
            groups,
            region,
            options,
            tolerance=self.config.grouping_tolerance,
            fill_value=self.config.fill_value
        )

    def request_region(
        self,
        region: Union[None, Region, Sequence[float]] = None,
        options: Optional[RequestOptions] = None
    ) -> Raster:
        """
        Read a region of every band into one aligned (band, row, col) array.

        Args:
            region: Region, pixel Window, (left, bottom, right, top) or None (dataset extent).
            options: RequestOptions (target CRS and resolution, resampling, mask, nodata, dtype).

        Returns:
            Raster: The assembled array and its grid. Success is all-or-nothing.

        Raises:
            EmptyRegion / OutOfBounds: If the region is invalid.
            ProjectionError: If a required CRS transform has no valid path.
            GeometryError: If the mask geometry cannot be repaired.
            InsufficientMemory: If the output would not fit in memory.
            ReadError: If a read fails; the first failure is raised.
        """
        options = options or RequestOptions()
        if not 0.0 <= options.mask_threshold < 1.0:
            raise InvalidOptions(f"Mask threshold must be in [0, 1), got {options.mask_threshold}")

        grid_plan = self.plan(region, options)

        mask = None
        if options.mask_geometry is not None:
            mask = rasterize_mask(
                options.mask_geometry,
                grid_plan.grid,
                MaskMode.coerce(options.mask_mode),
                crs=options.mask_crs
            )

        return assemble(grid_plan, self.config, mask=mask, mask_threshold=options.mask_threshold)

    # Lifecycle

    def close(self):
        """Release every file handle opened for this dataset."""
        if not self._owns_handles:
            return
        for handle in {id(s.handle): s.handle for s in self.sources if s.handle is not None}.values():
            handle.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self):
        return f"<Dataset bands={self.band_names} groups={len(self.groups)} crs={self.crs}>"

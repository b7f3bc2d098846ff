# src/scenestack/raster/planning.py

"""
This module plans the output grid of a region request.

Planning turns resolution groups, a requested region and request options
into a GridPlan: the target grid geometry plus, per group, a ReadPlan whose
type (direct copy, resampled warp, or empty) is decided here once and never
re-examined while reading. Every CRS and region error surfaces from this
module, before any pixel is read.
"""

import math
import logging
from dataclasses import dataclass, field
from typing import Union, Optional, Tuple, List, Sequence, Any

import numpy as np
from rasterio.crs import CRS
from rasterio.enums import Resampling
from rasterio.transform import Affine
from rasterio.warp import reproject as rio_reproject
from rasterio.windows import Window

from scenestack.exceptions import (
    EmptyRegion, OutOfBounds, RegionError, ProjectionError, InvalidOptions
)
from .georef import Georeference, as_crs, crs_equal, transform_bounds
from .grouping import ResolutionGroup, finest_group
from .source import BandSource

log = logging.getLogger(__name__)

__all__ = [
    "Region",
    "ResamplePolicy",
    "RequestOptions",
    "TargetGrid",
    "MemberRead",
    "ReadPlan",
    "DirectRead",
    "ResampledRead",
    "EmptyRead",
    "GridPlan",
    "plan_grid"
]

Bounds = Tuple[float, float, float, float]

# Source pixels a kernel needs beyond the footprint of a target cell
KERNEL_RADIUS = {
    Resampling.nearest: 0,
    Resampling.bilinear: 1,
    Resampling.cubic: 2,
    Resampling.cubic_spline: 2,
    Resampling.lanczos: 3,
}

# Slack for floor/ceil snapping, in pixels
SNAP_EPSILON = 1e-6

# Stand-in for grids without a CRS; used on both ends of a warp so coordinates are never transformed
LOCAL_CRS = CRS.from_epsg(3857)

@dataclass(frozen=True)
class Region:
    """
    A requested region, either in world coordinates or as a pixel window.

    Args:
        bounds: (left, bottom, right, top) in `crs` (default: the target CRS).
        crs: CRS of `bounds`.
        window: Pixel window on the reference (finest) group's grid.
    """
    bounds: Optional[Bounds] = None
    crs: Optional[Any] = None
    window: Optional[Window] = None

    def __post_init__(self):
        if (self.bounds is None) == (self.window is None):
            raise InvalidOptions("A Region needs exactly one of 'bounds' or 'window'.")
        if self.crs is not None and self.window is not None:
            raise InvalidOptions("A pixel-window Region cannot carry a CRS.")
        object.__setattr__(self, "crs", as_crs(self.crs))

    @classmethod
    def from_bounds(
        cls,
        left: float,
        bottom: float,
        right: float,
        top: float,
        crs: Optional[Any] = None
    ) -> 'Region':
        return cls(bounds=(left, bottom, right, top), crs=crs)

    @classmethod
    def from_window(cls, row_off: int, col_off: int, rows: int, cols: int) -> 'Region':
        return cls(window=Window(col_off=col_off, row_off=row_off, width=cols, height=rows))

def _coerce_region(region: Union[None, Region, Window, Sequence[float]]) -> Optional[Region]:
    if region is None or isinstance(region, Region):
        return region
    if isinstance(region, Window):
        return Region(window=region)
    if len(region) == 4:
        return Region(bounds=tuple(float(v) for v in region))
    raise InvalidOptions(f"Cannot interpret {region!r} as a region.")

@dataclass
class ResamplePolicy:
    """
    Chooses the resampling kernel for groups that need one.

    Args:
        categorical: Kernel for categorical pixel types. Default = nearest.
        continuous: Kernel for continuous pixel types. Default = bilinear.
        integer_is_categorical: Treat integer pixel types as categorical.
        override: Kernel forced for every group, ignoring the pixel type.
    """
    categorical: Resampling = Resampling.nearest
    continuous: Resampling = Resampling.bilinear
    integer_is_categorical: bool = True
    override: Optional[Resampling] = None

    def kernel_for(self, dtype: np.dtype) -> Resampling:
        if self.override is not None:
            return self.override
        dtype = np.dtype(dtype)
        is_categorical = dtype.kind == 'b' or (self.integer_is_categorical and dtype.kind in 'iu')
        return self.categorical if is_categorical else self.continuous

@dataclass
class RequestOptions:
    """
    Per-request options of Dataset.request_region.

    Args:
        resolution_override: Target pixel size (float or (x, y)) in target CRS units.
        crs_override: Target CRS. Default = CRS of the finest group.
        resample_policy: ResamplePolicy used for non-aligned groups.
        mask_geometry: Optional geometry (shapely, GeoSeries, GeoDataFrame or path).
        mask_crs: CRS of a bare shapely mask geometry. Default = target CRS.
        mask_mode: 'center', 'all_touched' or 'fractional' (see vector.mask.MaskMode).
        mask_threshold: Coverage at or below which a pixel is masked.
        nodata_fill: Output nodata. Default = first source nodata, else config fill.
        dtype: Output pixel type. Default = promotion of all band types.
        bands: Optional band names or output positions to keep, in output order.
        strict_bounds: Raise OutOfBounds when the region misses every band.
    """
    resolution_override: Optional[Union[float, Tuple[float, float]]] = None
    crs_override: Optional[Any] = None
    resample_policy: ResamplePolicy = field(default_factory=ResamplePolicy)
    mask_geometry: Optional[Any] = None
    mask_crs: Optional[Any] = None
    mask_mode: Any = "center"
    mask_threshold: float = 0.0
    nodata_fill: Optional[Union[int, float]] = None
    dtype: Optional[Any] = None
    bands: Optional[Sequence[Union[int, str]]] = None
    strict_bounds: bool = False

@dataclass(frozen=True)
class TargetGrid:
    """Geometry of the output array: transform, size and CRS."""
    transform: Affine
    width: int
    height: int
    crs: Optional[CRS] = None

    @property
    def georef(self) -> Georeference:
        return Georeference(self.transform, self.crs)

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.height, self.width)

    @property
    def bounds(self) -> Bounds:
        return self.georef.bounds(self.shape)

    @property
    def window(self) -> Window:
        return Window(0, 0, self.width, self.height)

@dataclass
class MemberRead:
    """
    Read instructions for one band.

    Args:
        source: Band to read.
        band_offset: Output band index the result is written to.
        source_window: Window inside the source extent, or None if no overlap.
        dest_window: Window inside the target grid receiving the data.
    """
    source: BandSource
    band_offset: int
    source_window: Optional[Window] = None
    dest_window: Optional[Window] = None

    @property
    def is_empty(self) -> bool:
        return self.source_window is None

@dataclass
class ReadPlan:
    """Reads of one resolution group onto the target grid."""
    group: ResolutionGroup
    reads: List[MemberRead]

    kind = "abstract"

    def execute(
        self,
        read: MemberRead,
        band: np.ndarray,
        grid: TargetGrid,
        nodata: Union[int, float]
    ):
        """Read one member and write it into `band`, its exclusive output view."""
        raise NotImplementedError

    @property
    def active_reads(self) -> List[MemberRead]:
        return [r for r in self.reads if not r.is_empty]

@dataclass
class DirectRead(ReadPlan):
    """The group lattice equals the target lattice: a pure offset copy."""
    kind = "direct"

    def execute(self, read, band, grid, nodata):
        data = read.source.read_window(read.source_window)
        dw = read.dest_window
        target = band[dw.row_off:dw.row_off + dw.height, dw.col_off:dw.col_off + dw.width]
        target[...] = data

        src_nodata = read.source.nodata
        if src_nodata is not None:
            invalid = np.isnan(data) if _is_nan(src_nodata) else data == src_nodata
            target[invalid] = nodata

@dataclass
class ResampledRead(ReadPlan):
    """The group needs resampling (and possibly reprojection) onto the target grid."""
    kernel: Resampling = Resampling.nearest
    kind = "resampled"

    def execute(self, read, band, grid, nodata):
        source = read.source
        data = source.read_window(read.source_window)
        src_transform = source.georef.window_georef(read.source_window).transform

        dw = read.dest_window
        dst_transform = grid.georef.window_georef(dw).transform
        dest = np.full((dw.height, dw.width), nodata, dtype=band.dtype)

        src_crs, dst_crs = source.crs, grid.crs
        if src_crs is None and dst_crs is None:
            src_crs = dst_crs = LOCAL_CRS

        rio_reproject(
            source=data,
            destination=dest,
            src_transform=src_transform,
            src_crs=src_crs,
            src_nodata=source.nodata,
            dst_transform=dst_transform,
            dst_crs=dst_crs,
            dst_nodata=nodata,
            resampling=self.kernel
        )
        band[dw.row_off:dw.row_off + dw.height, dw.col_off:dw.col_off + dw.width] = dest

@dataclass
class EmptyRead(ReadPlan):
    """The region misses every member of the group: all nodata, no I/O."""
    kind = "empty"

    def execute(self, read, band, grid, nodata):
        return None

@dataclass
class GridPlan:
    """
    Complete, I/O-free description of a region request.

    Attributes:
        grid (TargetGrid): Output grid.
        plans (List[ReadPlan]): One plan per group, in group order.
        band_names (List[str]): Output band names, in band order.
        dtype (np.dtype): Output pixel type.
        nodata (int | float): Output nodata value.
    """
    grid: TargetGrid
    plans: List[ReadPlan]
    band_names: List[str]
    dtype: np.dtype
    nodata: Union[int, float]

    @property
    def band_count(self) -> int:
        return len(self.band_names)

    @property
    def shape(self) -> Tuple[int, int, int]:
        return (self.band_count, self.grid.height, self.grid.width)

    def tasks(self) -> List[Tuple[ReadPlan, MemberRead]]:
        """Every read that touches pixels, in band order."""
        return [(plan, read) for plan in self.plans for read in plan.active_reads]

def _is_nan(value) -> bool:
    return isinstance(value, float) and math.isnan(value)

def _normalize_resolution(res) -> Optional[Tuple[float, float]]:
    if res is None:
        return None
    if isinstance(res, (int, float)):
        res = (float(res), float(res))
    xres, yres = (abs(float(v)) for v in res)
    if xres == 0 or yres == 0 or not (math.isfinite(xres) and math.isfinite(yres)):
        raise InvalidOptions(f"Resolution must be positive and finite, got {res}")
    return (xres, yres)

def _corner_pixels(bounds: Bounds, georef: Georeference) -> Tuple[float, float, float, float]:
    """(col_min, row_min, col_max, row_max) of world bounds in the pixel space of georef."""
    left, bottom, right, top = bounds
    inv = georef.invert().transform
    corners = [inv * (x, y) for x, y in ((left, top), (right, top), (left, bottom), (right, bottom))]
    cols = [c for c, _ in corners]
    rows = [r for _, r in corners]
    return (min(cols), min(rows), max(cols), max(rows))

def _snap(col_min: float, row_min: float, col_max: float, row_max: float, pad: int = 0) -> Window:
    col0 = math.floor(col_min + SNAP_EPSILON) - pad
    row0 = math.floor(row_min + SNAP_EPSILON) - pad
    col1 = math.ceil(col_max - SNAP_EPSILON) + pad
    row1 = math.ceil(row_max - SNAP_EPSILON) + pad
    return Window(col_off=col0, row_off=row0, width=col1 - col0, height=row1 - row0)

def _union_bounds(bounds: Sequence[Bounds]) -> Bounds:
    return (
        min(b[0] for b in bounds),
        min(b[1] for b in bounds),
        max(b[2] for b in bounds),
        max(b[3] for b in bounds)
    )

def _region_bounds(
    region: Optional[Region],
    reference: ResolutionGroup,
    target_crs: Optional[CRS]
) -> Bounds:
    """Resolve the requested region to world bounds in the target CRS."""
    ref = reference.georef

    if region is None:
        bounds = _union_bounds([m.source.bounds for m in reference.members])
        return transform_bounds(bounds, ref.crs, target_crs)

    if region.window is not None:
        window = region.window
        if window.width <= 0 or window.height <= 0:
            raise EmptyRegion(f"Requested window {window} has zero area")
        bounds = ref.window_georef(window).bounds((window.height, window.width))
        return transform_bounds(bounds, ref.crs, target_crs)

    left, bottom, right, top = region.bounds
    if not all(math.isfinite(v) for v in region.bounds):
        raise RegionError(f"Requested bounds {region.bounds} are not finite")
    if right <= left or top <= bottom:
        raise EmptyRegion(f"Requested bounds {region.bounds} have zero area")

    region_crs = region.crs if region.crs is not None else target_crs
    return transform_bounds(region.bounds, region_crs, target_crs)

def _build_grid(
    bounds: Bounds,
    reference: ResolutionGroup,
    target_crs: Optional[CRS],
    resolution: Optional[Tuple[float, float]]
) -> TargetGrid:
    ref = reference.georef
    same_crs = crs_equal(target_crs, ref.crs)

    if same_crs and (resolution is None or np.allclose(resolution, ref.resolution, rtol=1e-12)):
        # Snap onto the reference lattice
        window = _snap(*_corner_pixels(bounds, ref))
        if window.width <= 0 or window.height <= 0:
            raise EmptyRegion(f"Region {bounds} covers no pixel of the reference grid")
        transform = ref.transform * Affine.translation(window.col_off, window.row_off)
        return TargetGrid(transform, int(window.width), int(window.height), target_crs)

    if resolution is None:
        shape = (reference.members[0].source.rows, reference.members[0].source.cols)
        resolution = ref.reproject(target_crs, shape=shape).resolution

    left, bottom, right, top = bounds
    xres, yres = resolution
    width = math.ceil((right - left) / xres - SNAP_EPSILON)
    height = math.ceil((top - bottom) / yres - SNAP_EPSILON)
    if width <= 0 or height <= 0:
        raise EmptyRegion(f"Region {bounds} is smaller than one {resolution} pixel")

    transform = Affine.translation(left, top) * Affine.scale(xres, -yres)
    return TargetGrid(transform, width, height, target_crs)

def _plan_direct(group: ResolutionGroup, grid: TargetGrid, band_offset: int) -> List[MemberRead]:
    # Grid pixel (r, c) sits at anchor pixel (r + dr, c + dc)
    to_anchor = group.georef.invert().compose(grid.georef).transform
    dr, dc = int(round(to_anchor.f)), int(round(to_anchor.c))

    reads = []
    for i, member in enumerate(group.members):
        ro, co = member.offset
        window = Window(col_off=dc - co, row_off=dr - ro, width=grid.width, height=grid.height)
        inter = member.source.overlap(window)
        read = MemberRead(member.source, band_offset + i)
        if inter is not None:
            read.source_window = inter
            read.dest_window = Window(
                col_off=inter.col_off - window.col_off,
                row_off=inter.row_off - window.row_off,
                width=inter.width,
                height=inter.height
            )
        reads.append(read)
    return reads

def _plan_resampled(
    group: ResolutionGroup,
    grid: TargetGrid,
    band_offset: int,
    kernel: Resampling
) -> List[MemberRead]:
    pad = KERNEL_RADIUS.get(kernel, 1)
    grid_georef = grid.georef

    reads = []
    for i, member in enumerate(group.members):
        source = member.source
        read = MemberRead(source, band_offset + i)
        reads.append(read)

        if crs_equal(grid.crs, source.crs):
            # Forward map: grid pixels -> world -> source pixels
            to_source = source.georef.invert().compose(grid_georef).transform
            corners = [to_source * (c, r) for c, r in ((0, 0), (grid.width, 0), (0, grid.height), (grid.width, grid.height))]
            cols = [c for c, _ in corners]
            rows = [r for _, r in corners]
            footprint = (min(cols), min(rows), max(cols), max(rows))
        else:
            if source.crs is None:
                raise ProjectionError(f"Band {source.name} has no CRS and cannot be reprojected")
            src_bounds = transform_bounds(grid.bounds, grid.crs, source.crs)
            footprint = _corner_pixels(src_bounds, source.georef)

        inter = source.overlap(_snap(*footprint, pad=pad))
        if inter is None:
            continue

        # Footprint of the readable source window back on the grid
        world = source.georef.window_georef(inter).bounds((inter.height, inter.width))
        world = transform_bounds(world, source.crs, grid.crs)
        dest = _snap(*_corner_pixels(world, grid_georef))
        col0, row0 = max(dest.col_off, 0), max(dest.row_off, 0)
        col1 = min(dest.col_off + dest.width, grid.width)
        row1 = min(dest.row_off + dest.height, grid.height)
        if col1 <= col0 or row1 <= row0:
            continue

        read.source_window = inter
        read.dest_window = Window(col_off=col0, row_off=row0, width=col1 - col0, height=row1 - row0)
    return reads

def _plan_group(
    group: ResolutionGroup,
    grid: TargetGrid,
    band_offset: int,
    policy: ResamplePolicy,
    tolerance: float
) -> ReadPlan:
    if grid.georef.is_aligned_with(group.georef, tolerance):
        reads = _plan_direct(group, grid, band_offset)
        plan = DirectRead(group, reads)
    else:
        kernel = policy.kernel_for(np.result_type(*[s.dtype for s in group.sources]))
        reads = _plan_resampled(group, grid, band_offset, kernel)
        plan = ResampledRead(group, reads, kernel=kernel)

    if not plan.active_reads:
        log.debug(f"Region misses every band of {group}")
        return EmptyRead(group, reads)
    return plan

def _resolve_nodata(
    sources: Sequence[BandSource],
    dtype: np.dtype,
    nodata_fill: Optional[Union[int, float]],
    fill_value: Union[int, float]
) -> Union[int, float]:
    if nodata_fill is not None:
        nodata = nodata_fill
    else:
        nodata = next((s.nodata for s in sources if s.nodata is not None), fill_value)

    if dtype.kind in 'iub':
        if _is_nan(nodata) or float(nodata) != int(nodata):
            raise InvalidOptions(f"Nodata {nodata} is not an integer and cannot be stored as {dtype}")
        info = np.iinfo(dtype) if dtype.kind != 'b' else None
        if info is not None and not info.min <= int(nodata) <= info.max:
            raise InvalidOptions(f"Nodata {nodata} is out of range for {dtype} [{info.min}, {info.max}]")
        return int(nodata)
    return nodata

def plan_grid(
    groups: Sequence[ResolutionGroup],
    region: Union[None, Region, Window, Sequence[float]] = None,
    options: Optional[RequestOptions] = None,
    tolerance: float = 1e-9,
    fill_value: Union[int, float] = 0
) -> GridPlan:
    """
    Compute the output grid and the per-group read plans of a request.

    The target grid defaults to the finest group's lattice clipped to the
    region; a CRS or resolution override anchors a new grid at the region's
    upper-left corner instead.

    Args:
        groups: Resolution groups in output band order.
        region: Region, pixel Window, (left, bottom, right, top) or None (full extent).
        options: RequestOptions (overrides, resample policy, nodata, dtype).
        tolerance: Relative tolerance for lattice alignment tests.
        fill_value: Nodata used when neither options nor sources declare one.

    Returns:
        GridPlan: Grid geometry, read plans, band names, dtype and nodata.

    Raises:
        EmptyRegion: If the region has zero area.
        OutOfBounds: If options.strict_bounds is set and the region misses every band.
        ProjectionError: If any required CRS transform has no valid path.
        InvalidOptions: If overrides are inconsistent.
    """
    options = options or RequestOptions()
    if not groups:
        raise InvalidOptions("Cannot plan a request without bands.")

    reference = finest_group(groups)
    target_crs = as_crs(options.crs_override) if options.crs_override is not None else reference.crs
    if not crs_equal(target_crs, reference.crs) and reference.crs is None:
        raise ProjectionError("Cannot reproject bands that carry no CRS.")

    resolution = _normalize_resolution(options.resolution_override)
    bounds = _region_bounds(_coerce_region(region), reference, target_crs)
    grid = _build_grid(bounds, reference, target_crs, resolution)

    plans = []
    band_offset = 0
    for group in groups:
        plans.append(_plan_group(group, grid, band_offset, options.resample_policy, tolerance))
        band_offset += len(group)

    if options.strict_bounds and all(isinstance(p, EmptyRead) for p in plans):
        raise OutOfBounds(f"Region {bounds} does not overlap any band")

    sources = [s for g in groups for s in g.sources]
    dtype = np.dtype(options.dtype) if options.dtype is not None else np.result_type(*[s.dtype for s in sources])
    nodata = _resolve_nodata(sources, dtype, options.nodata_fill, fill_value)

    log.info(
        f"Planned grid {grid.height}x{grid.width} ({grid.crs}) for {len(sources)} band(s): "
        + ", ".join(p.kind for p in plans)
    )
    return GridPlan(grid, plans, [s.name for s in sources], dtype, nodata)

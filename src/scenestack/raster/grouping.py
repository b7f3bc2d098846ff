# src/scenestack/raster/grouping.py

"""
This module partitions band sources into resolution groups.

A group holds sources that sit on one pixel lattice: same CRS, same pixel
size and rotation, and origins that differ by whole pixels only. Inside a
group no per-member resampling is ever needed.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Tuple, Sequence, Iterator, Optional

from .georef import Georeference
from .source import BandSource

log = logging.getLogger(__name__)

__all__ = [
    "GroupMember",
    "ResolutionGroup",
    "group_sources",
    "finest_group"
]

@dataclass(frozen=True)
class GroupMember:
    """
    A source inside a group.

    Args:
        source: The band source.
        offset: Integer (row, col) of the source's upper-left pixel on the
                anchor lattice.
    """
    source: BandSource
    offset: Tuple[int, int]

@dataclass
class ResolutionGroup:
    """
    Ordered sources sharing one pixel lattice.

    The first member is the anchor; its georeference defines the lattice.
    """
    georef: Georeference
    members: List[GroupMember] = field(default_factory=list)

    @property
    def sources(self) -> List[BandSource]:
        return [m.source for m in self.members]

    @property
    def crs(self):
        return self.georef.crs

    @property
    def resolution(self) -> Tuple[float, float]:
        return self.georef.resolution

    def __len__(self) -> int:
        return len(self.members)

    def __iter__(self) -> Iterator[GroupMember]:
        return iter(self.members)

    def __repr__(self):
        names = [m.source.name for m in self.members]
        return f"<ResolutionGroup res={self.resolution} crs={self.crs} bands={names}>"

def _lattice_offset(
    georef: Georeference,
    anchor: Georeference,
    tolerance: float
) -> Optional[Tuple[int, int]]:
    """
    Integer (row, col) offset of `georef` on the anchor lattice, or None if
    the two do not share a lattice.
    """
    if not georef.is_aligned_with(anchor, tolerance):
        return None
    m = georef.pixel_map(anchor)
    return (int(round(m.f)), int(round(m.c)))

def group_sources(
    sources: Sequence[BandSource],
    tolerance: float = 1e-9
) -> List[ResolutionGroup]:
    """
    Group band sources by (pixel size, CRS, origin modulo pixel size).

    Grouping is deterministic: groups appear in the order their first member
    appears in `sources`, and members keep input order. Sources that are
    "nearly" aligned (e.g. half a pixel apart) land in different groups.

    Args:
        sources: Band sources in output band order.
        tolerance: Relative tolerance for pixel size and lattice comparisons.

    Returns:
        List[ResolutionGroup]: Groups in first-seen order.
    """
    groups: List[ResolutionGroup] = []

    for source in sources:
        for group in groups:
            offset = _lattice_offset(source.georef, group.georef, tolerance)
            if offset is not None:
                group.members.append(GroupMember(source, offset))
                break
        else:
            groups.append(ResolutionGroup(source.georef, [GroupMember(source, (0, 0))]))

    log.debug(f"Resolved {len(sources)} band(s) into {len(groups)} resolution group(s)")
    return groups

def finest_group(groups: Sequence[ResolutionGroup]) -> ResolutionGroup:
    """The group with the smallest pixel area; the first one wins ties."""
    if not groups:
        raise ValueError("Cannot choose a reference among zero groups.")
    return min(groups, key=lambda g: g.georef.pixel_area)

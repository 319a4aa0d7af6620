"""
Normalized geotagged records produced by the source adapters.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

import numpy as np
import shapely
from shapely.geometry import Point
from shapely.geometry.base import BaseGeometry

from .errors import InvalidGeometry


class RecordKind(str, Enum):
    """Dataset kind tag; the conflation engine dispatches on it."""

    COLLISION = "collision"
    TRANSIT_STOP = "transit_stop"
    POI = "poi"
    CENSUS_TRACT = "census_tract"

    @property
    def is_zone(self) -> bool:
        return self is RecordKind.CENSUS_TRACT


POLYGONAL_TYPES = ("Polygon", "MultiPolygon")
LINEAR_TYPES = ("LineString", "MultiLineString")


def validate_geometry(geom: BaseGeometry | None, *, polygonal: bool = False) -> BaseGeometry:
    """
    Reject degenerate geometry.

    Args:
        geom: Geometry to check
        polygonal: Require a polygon or multipolygon with positive area

    Returns:
        The geometry unchanged

    Raises:
        InvalidGeometry: If geometry is missing, empty, has NaN/inf
            coordinates, or (when polygonal) is not a valid area
    """
    if geom is None:
        raise InvalidGeometry("missing geometry")
    if not isinstance(geom, BaseGeometry):
        raise InvalidGeometry(f"not a geometry: {type(geom).__name__}")
    if geom.is_empty:
        raise InvalidGeometry(f"empty {geom.geom_type}")
    coords = shapely.get_coordinates(geom)
    if coords.size == 0 or not np.isfinite(coords).all():
        raise InvalidGeometry(f"non-finite coordinates in {geom.geom_type}")
    if polygonal:
        if geom.geom_type not in POLYGONAL_TYPES:
            raise InvalidGeometry(f"expected polygon, got {geom.geom_type}")
        if not geom.area > 0:
            raise InvalidGeometry("polygon has zero area")
    return geom


def make_point(x: Any, y: Any) -> Point:
    """Build a validated point from raw coordinate values."""
    try:
        fx, fy = float(x), float(y)
    except (TypeError, ValueError) as e:
        raise InvalidGeometry(f"malformed coordinates ({x!r}, {y!r})") from e
    if not (math.isfinite(fx) and math.isfinite(fy)):
        raise InvalidGeometry(f"non-finite coordinates ({x!r}, {y!r})")
    return Point(fx, fy)


def repair_polygon(geom: BaseGeometry) -> BaseGeometry:
    """
    Repair self-intersections and keep only the polygonal part.

    Raises:
        InvalidGeometry: If nothing polygonal survives
    """
    validate_geometry(geom)
    if not geom.is_valid:
        geom = shapely.make_valid(geom)
        if geom.geom_type == "GeometryCollection":
            parts = [g for g in geom.geoms if g.geom_type in POLYGONAL_TYPES]
            geom = shapely.union_all(parts) if parts else Point()
    return validate_geometry(geom, polygonal=True)


def _freeze(value: Any) -> Any:
    # NaN from pandas rows becomes None so records compare and serialize cleanly
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, np.generic):
        return value.item()
    return value


@dataclass(frozen=True)
class NormalizedRecord:
    """A geotagged external-data item. Immutable once produced."""

    record_id: str
    kind: RecordKind
    geometry: BaseGeometry
    attribute_items: tuple[tuple[str, Any], ...] = field(default=())

    @classmethod
    def create(
        cls,
        record_id: Any,
        kind: RecordKind | str,
        geometry: BaseGeometry,
        attributes: Mapping[str, Any] | None = None,
    ) -> "NormalizedRecord":
        """
        Validate geometry and freeze attributes into a record.

        Raises:
            InvalidGeometry: If the geometry is degenerate for the kind
        """
        kind = RecordKind(kind)
        validate_geometry(geometry, polygonal=kind.is_zone)
        items = tuple(
            sorted((str(k), _freeze(v)) for k, v in (attributes or {}).items())
        )
        return cls(str(record_id), kind, geometry, items)

    @property
    def attributes(self) -> dict[str, Any]:
        """Copy of the attribute mapping."""
        return dict(self.attribute_items)

    def get(self, name: str, default: Any = None) -> Any:
        for key, value in self.attribute_items:
            if key == name:
                return default if value is None else value
        return default

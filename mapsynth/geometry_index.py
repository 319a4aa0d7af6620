"""
Spatial index over graph elements.

Wraps a shapely STRtree. The tree is bulk-loaded, so inserts go to the
element arena and the tree is rebuilt on the next query; build-then-query
usage costs O(log n) per element.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

import numpy as np
import shapely
from shapely.geometry.base import BaseGeometry
from shapely.strtree import STRtree

from .graph import GraphElement, StreetGraph
from .records import validate_geometry

logger = logging.getLogger(__name__)


class GeometryIndex:
    """Nearest-neighbour and containment queries over point and polyline elements."""

    def __init__(self, elements: Iterable[GraphElement] = ()):
        self._elements: list[GraphElement] = []
        self._tree: Optional[STRtree] = None
        self._geoms: np.ndarray = np.empty(0, dtype=object)
        self._ids: np.ndarray = np.empty(0, dtype=np.int64)
        self._types: np.ndarray = np.empty(0, dtype=object)
        for element in elements:
            self.insert(element)

    @classmethod
    def from_graph(cls, graph: StreetGraph) -> "GeometryIndex":
        index = cls(graph)
        logger.debug(f"Indexed {len(index)} graph elements")
        return index

    def __len__(self) -> int:
        return len(self._elements)

    def insert(self, element: GraphElement) -> None:
        """
        Add an element. The STR tree is rebuilt lazily on the next query.

        Raises:
            InvalidGeometry: If the element geometry is degenerate
        """
        validate_geometry(element.geometry)
        self._elements.append(element)
        self._tree = None

    def _ensure_tree(self) -> None:
        if self._tree is not None:
            return
        self._geoms = np.array([e.geometry for e in self._elements], dtype=object)
        self._ids = np.array([e.element_id for e in self._elements], dtype=np.int64)
        self._types = np.array([e.element_type for e in self._elements], dtype=object)
        self._tree = STRtree(self._geoms)

    def _type_mask(self, idx: np.ndarray, element_types: Optional[Sequence[str]]) -> np.ndarray:
        if element_types is None:
            return idx
        return idx[np.isin(self._types[idx], list(element_types))]

    def nearest(
        self,
        point: BaseGeometry,
        k: Optional[int] = 1,
        max_distance: Optional[float] = None,
        element_types: Optional[Sequence[str]] = None,
    ) -> list[tuple[float, GraphElement]]:
        """
        Find the k closest elements to a point.

        Distance is planar Euclidean between the query point and the element
        geometry (nearest point on a polyline). Ties are broken by element id.

        Args:
            point: Query point
            k: Number of results (None for every element within max_distance)
            max_distance: Only consider elements within this distance
            element_types: Restrict to "node" and/or "edge"

        Returns:
            List of (distance, element) ascending by (distance, element_id)

        Raises:
            InvalidGeometry: If the query point is empty or non-finite
        """
        validate_geometry(point)
        if k is not None and k < 1:
            raise ValueError(f"k must be positive, got {k}")
        if not self._elements:
            return []
        self._ensure_tree()

        if max_distance is not None:
            idx = self._tree.query(point, predicate="dwithin", distance=max_distance)
        else:
            idx = np.arange(len(self._elements))
        idx = self._type_mask(np.asarray(idx, dtype=np.int64), element_types)
        if idx.size == 0:
            return []

        distances = shapely.distance(self._geoms[idx], point)
        if max_distance is not None:
            keep = distances <= max_distance
            idx, distances = idx[keep], distances[keep]

        # lexsort sorts by the last key first
        order = np.lexsort((self._ids[idx], distances))
        if k is not None:
            order = order[:k]
        return [(float(distances[i]), self._elements[idx[i]]) for i in order]

    def within(
        self,
        polygon: BaseGeometry,
        element_types: Optional[Sequence[str]] = None,
    ) -> list[GraphElement]:
        """
        All elements whose geometry intersects the polygon.

        The order of the returned list is unspecified and may change between
        index rebuilds. Callers that need a stable order must sort, e.g. by
        element_id.

        Raises:
            InvalidGeometry: If the polygon is empty, non-finite or zero-area
        """
        validate_geometry(polygon, polygonal=True)
        if not self._elements:
            return []
        self._ensure_tree()
        idx = self._tree.query(polygon, predicate="intersects")
        idx = self._type_mask(np.asarray(idx, dtype=np.int64), element_types)
        return [self._elements[i] for i in idx]

"""
Base street network as an arena of graph elements.

Nodes (intersections) and edges (road segments) share one integer id space.
Everything downstream refers to elements by id; the StreetGraph owns them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator, Literal, Optional

import networkx as nx
import osmnx as ox
from shapely.geometry import LineString, Point
from shapely.geometry.base import BaseGeometry

from .errors import InvalidGeometry
from .records import LINEAR_TYPES, validate_geometry

logger = logging.getLogger(__name__)

ElementType = Literal["node", "edge"]

# Edge/node attributes carried over from the source graph as tags
CARRIED_TAGS = ('highway', 'name', 'landuse', 'amenity', 'building', 'shop', 'office', 'lanes')


@dataclass
class GraphElement:
    """A node or edge of the base street network."""

    element_id: int
    element_type: ElementType
    geometry: BaseGeometry
    tags: dict[str, Any] = field(default_factory=dict)
    endpoints: Optional[tuple[Any, Any, Any]] = None  # (u, v, key) for edges

    @property
    def road_class(self) -> str | None:
        return self.tags.get('highway')

    @property
    def length(self) -> float:
        return float(self.geometry.length) if self.element_type == "edge" else 0.0

    def representative_xy(self) -> tuple[float, float]:
        """Point used for distance lookups: the node itself or the edge midpoint."""
        if self.element_type == "node":
            return (self.geometry.x, self.geometry.y)
        mid = self.geometry.interpolate(0.5, normalized=True)
        return (mid.x, mid.y)


def _first(value: Any) -> Any:
    # osmnx keeps merged attributes of simplified edges as lists
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _stable_sorted(items: Iterable[Any]) -> list[Any]:
    items = list(items)
    try:
        return sorted(items)
    except TypeError:
        # mixed key types
        return sorted(items, key=repr)


class StreetGraph:
    """
    Read-only arena of graph elements indexed by stable integer id.

    Annotations from conflation are attached as element id -> record ids,
    never as object references.
    """

    def __init__(self, elements: Iterable[GraphElement] = (), crs: Any = None):
        self.crs = crs
        self._elements: dict[int, GraphElement] = {}
        self._annotations: dict[int, tuple[str, ...]] = {}
        for element in elements:
            self.add(element)

    def add(self, element: GraphElement) -> None:
        """
        Add an element to the arena.

        Raises:
            ValueError: On duplicate element id
            InvalidGeometry: If the element geometry is degenerate
        """
        if element.element_id in self._elements:
            raise ValueError(f"Duplicate element id {element.element_id}")
        validate_geometry(element.geometry)
        if element.element_type == "edge" and element.geometry.geom_type not in LINEAR_TYPES:
            raise InvalidGeometry(
                f"edge {element.element_id} has {element.geometry.geom_type} geometry"
            )
        if element.element_type == "node" and element.geometry.geom_type != "Point":
            raise InvalidGeometry(
                f"node {element.element_id} has {element.geometry.geom_type} geometry"
            )
        self._elements[element.element_id] = element

    def __len__(self) -> int:
        return len(self._elements)

    def __contains__(self, element_id: object) -> bool:
        return element_id in self._elements

    def __iter__(self) -> Iterator[GraphElement]:
        for element_id in sorted(self._elements):
            yield self._elements[element_id]

    def __getitem__(self, element_id: int) -> GraphElement:
        return self._elements[element_id]

    def get(self, element_id: int) -> GraphElement | None:
        return self._elements.get(element_id)

    def element_ids(self) -> list[int]:
        return sorted(self._elements)

    def nodes(self) -> list[GraphElement]:
        return [e for e in self if e.element_type == "node"]

    def edges(self) -> list[GraphElement]:
        return [e for e in self if e.element_type == "edge"]

    def attach_annotations(self, annotations: dict[int, list[str]]) -> None:
        """
        Attach conflated record ids to elements.

        Raises:
            KeyError: If an annotation refers to an element not in the graph
        """
        for element_id in annotations:
            if element_id not in self._elements:
                raise KeyError(f"Annotation for unknown element {element_id}")
        self._annotations = {
            element_id: tuple(sorted(record_ids))
            for element_id, record_ids in annotations.items()
        }

    def annotations_for(self, element_id: int) -> tuple[str, ...]:
        return self._annotations.get(element_id, ())

    @classmethod
    def from_networkx(cls, G: nx.MultiDiGraph) -> "StreetGraph":
        """
        Build the arena from an OSMnx-style graph.

        Nodes need 'x'/'y' attributes; edges use their 'geometry' attribute
        or a straight line between endpoints. An 'element_id' attribute on a
        node or edge pins its id; otherwise nodes are numbered first (sorted
        by node key), then edges (sorted by (u, v, key)), skipping pinned ids.

        Args:
            G: Road network graph

        Returns:
            StreetGraph

        Raises:
            InvalidGeometry: If a node lacks usable coordinates (corrupt graph)
        """
        multigraph = G.is_multigraph()
        node_keys = _stable_sorted(G.nodes())
        if multigraph:
            edge_keys = _stable_sorted(G.edges(keys=True))
        else:
            edge_keys = _stable_sorted((u, v, 0) for u, v in G.edges())

        def _edge_data(u, v, k):
            return G.edges[u, v, k] if multigraph else G.edges[u, v]

        pinned = {
            int(data['element_id']) for _, data in G.nodes(data=True) if 'element_id' in data
        }
        pinned |= {
            int(_edge_data(u, v, k)['element_id'])
            for u, v, k in edge_keys
            if 'element_id' in _edge_data(u, v, k)
        }
        next_id = 0

        def _allocate(data: dict) -> int:
            nonlocal next_id
            if 'element_id' in data:
                return int(data['element_id'])
            while next_id in pinned:
                next_id += 1
            allocated = next_id
            next_id += 1
            return allocated

        graph = cls(crs=G.graph.get('crs'))
        node_points: dict[Any, Point] = {}

        for node in node_keys:
            data = G.nodes[node]
            if 'x' not in data or 'y' not in data:
                raise InvalidGeometry(f"base graph node {node!r} has no coordinates")
            point = Point(float(data['x']), float(data['y']))
            node_points[node] = point
            tags = {t: _first(data[t]) for t in CARRIED_TAGS if t in data}
            graph.add(GraphElement(_allocate(data), "node", point, tags))

        for u, v, k in edge_keys:
            data = _edge_data(u, v, k)
            geom = data.get('geometry')
            if geom is None:
                geom = LineString([node_points[u], node_points[v]])
            tags = {t: _first(data[t]) for t in CARRIED_TAGS if t in data}
            graph.add(GraphElement(_allocate(data), "edge", geom, tags, endpoints=(u, v, k)))

        logger.info(
            f"Built street graph: {len(graph.nodes())} nodes, {len(graph.edges())} edges"
        )
        return graph


def load_base_graph(path: Path | str, project: bool = True) -> StreetGraph:
    """
    Load a pre-built street network from GraphML.

    Args:
        path: GraphML file written by osmnx
        project: Project to the local UTM zone so distances are in metres

    Returns:
        StreetGraph
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Base graph not found: {path}")
    logger.info(f"Loading base graph from {path}")
    G = ox.load_graphml(path)
    if project:
        G = ox.project_graph(G)
    return StreetGraph.from_networkx(G)

"""Tests for the street graph arena and geometry index."""

import math

import networkx as nx
import pytest
from shapely.geometry import LineString, Point, box

from mapsynth.errors import InvalidGeometry
from mapsynth.geometry_index import GeometryIndex
from mapsynth.graph import GraphElement, StreetGraph

from conftest import edge, grid_networkx, node


class TestStreetGraph:
    """Tests for StreetGraph construction."""

    def test_from_networkx_numbers_nodes_then_edges(self):
        """Nodes get the lowest ids, edges follow in (u, v, key) order."""
        graph = StreetGraph.from_networkx(grid_networkx(n=2))

        assert len(graph.nodes()) == 4
        assert len(graph.edges()) == 4
        assert [e.element_id for e in graph.nodes()] == [0, 1, 2, 3]
        assert [e.element_id for e in graph.edges()] == [4, 5, 6, 7]
        assert graph[4].endpoints == (0, 1, 0)

    def test_pinned_element_ids_are_kept(self):
        """An element_id attribute pins the id; others skip it."""
        G = grid_networkx(n=2)
        G.nodes[3]['element_id'] = 0

        graph = StreetGraph.from_networkx(G)

        assert graph[0].endpoints is None
        assert graph[0].geometry.equals(Point(200, 200))
        assert sorted(e.element_id for e in graph.nodes()) == [0, 1, 2, 3]

    def test_edges_without_geometry_are_straight(self):
        """Missing edge geometry falls back to a straight line."""
        graph = StreetGraph.from_networkx(grid_networkx(n=2))
        e = graph[4]
        assert e.geometry.geom_type == "LineString"
        assert e.length == pytest.approx(200.0)

    def test_node_without_coordinates_is_structural(self):
        """A node without x/y fails the whole build."""
        G = nx.MultiDiGraph()
        G.add_node(1)
        with pytest.raises(InvalidGeometry):
            StreetGraph.from_networkx(G)

    def test_duplicate_id_rejected(self):
        """Element ids are unique across nodes and edges."""
        graph = StreetGraph([node(1, 0, 0)])
        with pytest.raises(ValueError):
            graph.add(edge(1, [(0, 0), (1, 0)]))

    def test_annotations_must_reference_known_elements(self):
        """Attaching annotations to a missing element is an error."""
        graph = StreetGraph([node(1, 0, 0)])
        graph.attach_annotations({1: ['b', 'a']})
        assert graph.annotations_for(1) == ('a', 'b')
        with pytest.raises(KeyError):
            graph.attach_annotations({2: ['x']})

    def test_representative_xy_of_edge_is_midpoint(self):
        """Edge distance lookups use the midpoint."""
        e = edge(1, [(0, 0), (100, 0)])
        assert e.representative_xy() == pytest.approx((50.0, 0.0))


class TestNearest:
    """Tests for nearest-element queries."""

    @pytest.fixture
    def index(self):
        return GeometryIndex([
            edge(9, [(-100, -10), (100, -10)]),
            edge(3, [(-100, 10), (100, 10)]),
            edge(5, [(-100, 50), (100, 50)]),
            node(1, 0, 30),
        ])

    def test_sorted_by_distance_then_id(self, index):
        """Equidistant elements come back in id order."""
        result = index.nearest(Point(0, 0), k=3)
        assert [(d, e.element_id) for d, e in result] == [(10.0, 3), (10.0, 9), (30.0, 1)]

    def test_max_distance_filters(self, index):
        """Elements beyond max_distance are not returned."""
        result = index.nearest(Point(0, 0), k=None, max_distance=20)
        assert [e.element_id for _, e in result] == [3, 9]

    def test_element_type_filter(self, index):
        """Queries can be restricted to nodes or edges."""
        result = index.nearest(Point(0, 0), k=1, element_types=("node",))
        assert result[0][1].element_id == 1

    def test_empty_index(self):
        """An empty index answers with no candidates."""
        assert GeometryIndex().nearest(Point(0, 0)) == []

    def test_non_finite_query_rejected(self, index):
        """NaN coordinates are invalid geometry."""
        with pytest.raises(InvalidGeometry):
            index.nearest(Point(math.nan, 0))

    def test_insert_after_query(self, index):
        """Inserted elements are visible to later queries."""
        index.nearest(Point(0, 0))
        index.insert(node(2, 0, 1))
        assert index.nearest(Point(0, 0))[0][1].element_id == 2
        assert len(index) == 5


class TestWithin:
    """Tests for containment queries."""

    def test_returns_intersecting_elements(self, grid_graph):
        """Every element touching the polygon is returned."""
        index = GeometryIndex.from_graph(grid_graph)
        found = index.within(box(-10, -10, 10, 10))
        ids = sorted(e.element_id for e in found)
        # node 0 plus the two edges leaving it
        assert len(ids) == 3
        assert 0 in ids

    def test_zero_area_polygon_rejected(self, grid_graph):
        """Degenerate polygons are invalid."""
        index = GeometryIndex.from_graph(grid_graph)
        with pytest.raises(InvalidGeometry):
            index.within(LineString([(0, 0), (1, 1)]))

    def test_invalid_element_geometry_rejected(self):
        """Elements with empty geometry cannot be indexed."""
        with pytest.raises(InvalidGeometry):
            GeometryIndex([GraphElement(1, "node", Point())])

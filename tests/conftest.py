"""Shared fixtures: small synthetic street graphs in a metric CRS."""

import networkx as nx
import pytest
from shapely.geometry import LineString, Point

from mapsynth.graph import GraphElement, StreetGraph


def edge(element_id, coords, **tags):
    """Edge element from a coordinate list."""
    return GraphElement(element_id, "edge", LineString(coords), tags)


def node(element_id, x, y, **tags):
    return GraphElement(element_id, "node", Point(x, y), tags)


def grid_networkx(n=5, spacing=200.0, node_tags=None):
    """
    n x n OSMnx-style grid of residential streets.

    Node (i, j) has key i * n + j and sits at (i * spacing, j * spacing).
    """
    node_tags = node_tags or {}
    G = nx.MultiDiGraph(crs="EPSG:32617")
    for i in range(n):
        for j in range(n):
            key = i * n + j
            G.add_node(key, x=i * spacing, y=j * spacing, **node_tags.get(key, {}))
    for i in range(n):
        for j in range(n):
            u = i * n + j
            if i + 1 < n:
                G.add_edge(u, (i + 1) * n + j, highway='residential')
            if j + 1 < n:
                G.add_edge(u, i * n + j + 1, highway='residential')
    return G


# Destination tags on grid nodes
GRID_DESTINATIONS = {
    2: {'amenity': 'cafe'},
    6: {'amenity': 'school'},
    12: {'office': 'company'},
    18: {'shop': 'supermarket'},
    22: {'amenity': 'restaurant'},
}


@pytest.fixture
def grid_graph():
    """5 x 5 residential grid (800 m square) with a few destinations."""
    return StreetGraph.from_networkx(grid_networkx(node_tags=GRID_DESTINATIONS))

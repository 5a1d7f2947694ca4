"""
Cell graphs: shared-nearest-neighbor construction and Louvain clustering.
"""

from cellstate.graph.louvain import ClusterAssignment, cluster_graph
from cellstate.graph.neighbors import NeighborGraph, build_snn_graph

__all__ = [
    'NeighborGraph',
    'build_snn_graph',
    'ClusterAssignment',
    'cluster_graph',
]

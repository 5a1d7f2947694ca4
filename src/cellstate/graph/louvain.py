"""
Seeded Louvain community detection on the SNN graph.

Modularity with resolution γ:

    Q = Σ_c [ L_c / m  -  γ (d_c / 2m)² ]

where L_c is the internal edge weight of community c, d_c its total degree
and m the total edge weight. Higher γ favors more, smaller communities.

Each start runs the Louvain method (greedy local moving, then aggregation of
communities into super-nodes, repeated until the modularity gain between
levels drops below `threshold`) through networkx, with the node visiting
order drawn from the start's seed. Several starts are run with independent
child seeds spawned from one base seed; the partition with the highest
modularity wins and ties go to the earliest start. Cluster ids are then
renumbered canonically (largest cluster is 0; equal sizes ordered by the
smallest cell id they contain), so identical input and seed always give
identical labels.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, Sequence

import networkx as nx
import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from networkx.algorithms import community as nx_community

from cellstate.exceptions import ConfigurationError, ConvergenceWarning, DisconnectedGraphError
from cellstate.graph.neighbors import NeighborGraph

logger = logging.getLogger(__name__)

__all__ = ['ClusterAssignment', 'cluster_graph', 'canonical_labels', 'modularity']


@dataclass(frozen=True)
class ClusterAssignment:
    """
    Complete cluster labelling of a graph's cells.

    Attributes:
        labels: cell id -> cluster id (0 = largest cluster)
        modularity: Modularity of the partition at `resolution`
        resolution: Resolution γ used
        seed: Base seed
        params: Remaining run parameters (winning start, levels, ...)
    """

    labels: pd.Series
    modularity: float
    resolution: float
    seed: int
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def n_clusters(self) -> int:
        return int(self.labels.nunique())

    def sizes(self) -> pd.Series:
        """Cells per cluster, indexed by cluster id."""
        return self.labels.value_counts().sort_index()

    def cells(self, cluster: int) -> pd.Index:
        """Cell ids assigned to one cluster."""
        return self.labels.index[self.labels.values == cluster]


def canonical_labels(communities: Sequence[set[str]], cell_ids: pd.Index) -> pd.Series:
    """
    Renumber communities by descending size, ties by smallest member id.

    Args:
        communities: Disjoint sets of cell ids covering every cell
        cell_ids: Cells in output order

    Returns:
        Series of int cluster ids indexed by cell_ids
    """
    ordered = sorted(communities, key=lambda c: (-len(c), min(c)))
    mapping = {cell: cid for cid, members in enumerate(ordered) for cell in members}
    return pd.Series([mapping[c] for c in cell_ids], index=cell_ids, dtype=int, name="cluster")


def modularity(graph: NeighborGraph, labels: pd.Series, resolution: float = 1.0) -> float:
    """Weighted modularity of a labelling of the graph's cells."""
    G = graph.to_networkx()
    groups = labels.loc[graph.cell_ids].groupby(labels.loc[graph.cell_ids]).groups
    return float(nx_community.modularity(
        G, [set(members) for members in groups.values()], weight='weight', resolution=resolution,
    ))


def _single_start(
    G: nx.Graph,
    resolution: float,
    seed: int,
    threshold: float,
    max_levels: int,
) -> tuple[list[set[str]], float, int, bool]:
    """One Louvain run. Returns (communities, modularity, levels, capped)."""
    partitions = nx_community.louvain_partitions(
        G, weight='weight', resolution=resolution, threshold=threshold, seed=seed,
    )
    communities = None
    levels = 0
    capped = False
    for partition in partitions:
        communities = partition
        levels += 1
        if levels >= max_levels:
            capped = next(partitions, None) is not None
            break
    if communities is None:
        communities = [{n} for n in G.nodes]
    Q = nx_community.modularity(G, communities, weight='weight', resolution=resolution)
    return [set(c) for c in communities], float(Q), levels, capped


def cluster_graph(
    graph: NeighborGraph,
    resolution: float = 0.8,
    seed: int = 0,
    n_starts: int = 10,
    max_levels: int = 10,
    threshold: float = 1e-7,
    n_jobs: int = 1,
) -> ClusterAssignment:
    """
    Partition the graph's cells by modularity optimization.

    Args:
        graph: Symmetric weighted SNN graph
        resolution: Resolution γ (> 0)
        seed: Base seed; child seeds for each start are spawned from it
        n_starts: Independent Louvain starts
        max_levels: Cap on aggregation levels per start
        threshold: Minimum modularity gain for another level
        n_jobs: joblib workers over starts

    Returns:
        ClusterAssignment covering every cell; isolated cells are singletons

    Raises:
        DisconnectedGraphError: If the graph has no edges
        ConfigurationError: If resolution, n_starts or max_levels are invalid

    Warns:
        ConvergenceWarning: If the winning start hit max_levels while
            modularity was still improving
    """
    if resolution <= 0:
        raise ConfigurationError(f"resolution must be > 0, got {resolution}")
    if n_starts < 1 or max_levels < 1:
        raise ConfigurationError("n_starts and max_levels must be >= 1")
    if graph.n_edges == 0:
        raise DisconnectedGraphError(
            f"Graph over {graph.n_cells} cells has no edges; lower `prune` or raise `k`"
        )

    G = graph.to_networkx()
    child_seeds = [
        int(s.generate_state(1)[0]) for s in np.random.SeedSequence(seed).spawn(n_starts)
    ]

    if n_jobs == 1 or n_starts == 1:
        runs = [_single_start(G, resolution, s, threshold, max_levels) for s in child_seeds]
    else:
        runs = Parallel(n_jobs=n_jobs)(
            delayed(_single_start)(G, resolution, s, threshold, max_levels)
            for s in child_seeds
        )

    best = int(np.argmax([r[1] for r in runs]))
    communities, Q, levels, capped = runs[best]
    if capped:
        warnings.warn(
            f"Louvain reached max_levels={max_levels} before modularity stopped improving "
            f"(threshold={threshold}); the partition may be suboptimal",
            ConvergenceWarning,
        )

    labels = canonical_labels(communities, graph.cell_ids)
    n_isolated = int((graph.degree() == 0).sum())
    if n_isolated:
        logger.warning(f"{n_isolated} isolated cells assigned to singleton clusters")

    logger.info(
        f"Louvain: {labels.nunique()} clusters over {graph.n_cells} cells, "
        f"resolution={resolution}, modularity={Q:.4f} (best of {n_starts} starts: #{best})"
    )

    return ClusterAssignment(
        labels=labels,
        modularity=Q,
        resolution=resolution,
        seed=seed,
        params={
            "n_starts": n_starts,
            "best_start": best,
            "levels": levels,
            "max_levels": max_levels,
            "threshold": threshold,
        },
    )

"""
Shared-nearest-neighbor (SNN) graph construction.

Each cell's k nearest neighbors (itself included) are found by Euclidean
distance in a reduced embedding. Two cells are then weighted by the Jaccard
overlap of their neighbor sets,

    w_ij = |N(i) ∩ N(j)| / |N(i) ∪ N(j)| = s_ij / (2k - s_ij)

where s_ij counts shared neighbors. Weighting by overlap rather than by raw
distance makes the graph robust to local density differences and to the
scale of the embedding.

Algorithm:
    1. kNN queries against a KD-tree (sklearn NearestNeighbors) in row
       chunks (joblib); neighbors ordered by (distance, cell-id rank) so
       exact ties resolve identically every run
    2. Sparse membership matrix A (A_ij = 1 iff j ∈ N(i))
    3. Shared counts S = A Aᵀ, Jaccard weights on the candidate edge set
    4. Weights below `prune` are dropped; the diagonal is zero

Edge modes select which pairs are candidate edges:
    - either (default): i ∈ N(j) or j ∈ N(i)
    - mutual: i ∈ N(j) and j ∈ N(i)
    - shared: any pair with at least one common neighbor, even when
      neither is in the other's list (opt-in, denser graph)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import networkx as nx
import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from numpy.typing import NDArray
from scipy import sparse
from sklearn.neighbors import NearestNeighbors

from cellstate.core.embedding import Embedding, EmbeddingKind
from cellstate.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = ['NeighborGraph', 'EDGE_MODES', 'knn_indices', 'build_snn_graph']

EDGE_MODES = ("either", "mutual", "shared")

_CHUNK_SIZE = 1000
_TIE_MARGIN = 5


@dataclass(frozen=True)
class NeighborGraph:
    """
    Symmetric weighted cell-cell graph.

    Attributes:
        cell_ids: Vertex identifiers, in matrix column order
        weights: Symmetric CSR matrix of Jaccard weights, zero diagonal
        neighbors: n_cells × k kNN index table (self in column 0)
        k: Neighborhood size (self included)
        source: Embedding kind the neighbors were computed in
        edge_mode: Candidate-edge rule used
        params: Remaining build parameters
    """

    cell_ids: pd.Index
    weights: sparse.csr_matrix
    neighbors: NDArray[np.int64]
    k: int
    source: EmbeddingKind
    edge_mode: str = "either"
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def n_cells(self) -> int:
        return len(self.cell_ids)

    @property
    def n_edges(self) -> int:
        """Undirected edge count."""
        return int(self.weights.nnz // 2)

    def degree(self) -> pd.Series:
        """Weighted degree per cell."""
        return pd.Series(np.asarray(self.weights.sum(axis=1)).ravel(), index=self.cell_ids)

    def to_networkx(self) -> nx.Graph:
        """Undirected networkx graph with cell-id nodes and `weight` attributes."""
        G = nx.Graph()
        G.add_nodes_from(self.cell_ids)
        upper = sparse.triu(self.weights, k=1).tocoo()
        G.add_weighted_edges_from(
            (self.cell_ids[i], self.cell_ids[j], float(w))
            for i, j, w in zip(upper.row, upper.col, upper.data)
        )
        return G


def _order_rows(
    distances: NDArray[np.float64],
    indices: NDArray[np.int64],
    rows: NDArray[np.int64],
    rank: NDArray[np.int64],
    k: int,
) -> NDArray[np.int64]:
    """First k of each row by (distance, id rank), with the cell itself first."""
    distances = np.where(indices == rows[:, None], -1.0, distances)
    order = np.lexsort((rank[indices], distances), axis=-1)
    return np.take_along_axis(indices, order, axis=1)[:, :k]


def _chunk_neighbors(
    index: NearestNeighbors,
    X: NDArray[np.float64],
    rows: NDArray[np.int64],
    rank: NDArray[np.int64],
    k: int,
    n_query: int,
) -> NDArray[np.int64]:
    """k nearest neighbors for one chunk of rows, self first, ties by id rank."""
    n = X.shape[0]
    distances, indices = index.kneighbors(X[rows], n_neighbors=n_query)
    out = _order_rows(distances, indices, rows, rank, k)
    if n_query == n:
        return out

    # A tie group reaching the last queried neighbor may continue past it.
    has_self = (indices == rows[:, None]).any(axis=1)
    redo = (distances[:, k - 1] >= distances[:, -1]) | ~has_self
    if redo.any():
        full_d, full_i = index.kneighbors(X[rows[redo]], n_neighbors=n)
        out[redo] = _order_rows(full_d, full_i, rows[redo], rank, k)
    return out


def knn_indices(
    X: NDArray[np.float64],
    k: int,
    cell_ids: pd.Index,
    n_jobs: int = 1,
) -> NDArray[np.int64]:
    """
    Indices of each cell's k nearest neighbors, the cell itself first.

    Ties in distance are broken by ascending cell id, so the result does not
    depend on the order the cells are stored in.

    Args:
        X: Cells × dims coordinates
        k: Neighbors per cell (self included)
        cell_ids: Cell identifiers used for tie-breaking
        n_jobs: joblib workers over row chunks

    Raises:
        ConfigurationError: If k < 2 or k >= n_cells
    """
    n = X.shape[0]
    if k < 2 or k >= n:
        raise ConfigurationError(f"k={k} must be in [2, n_cells={n})")

    rank = np.empty(n, dtype=np.int64)
    rank[np.argsort(np.asarray(cell_ids, dtype=str), kind='mergesort')] = np.arange(n)

    X = np.ascontiguousarray(X, dtype=np.float64)
    index = NearestNeighbors(algorithm='kd_tree', metric='euclidean').fit(X)
    n_query = min(n, k + _TIE_MARGIN)

    chunks = [np.arange(s, min(s + _CHUNK_SIZE, n)) for s in range(0, n, _CHUNK_SIZE)]
    if n_jobs == 1 or len(chunks) == 1:
        parts = [_chunk_neighbors(index, X, rows, rank, k, n_query) for rows in chunks]
    else:
        parts = Parallel(n_jobs=n_jobs)(
            delayed(_chunk_neighbors)(index, X, rows, rank, k, n_query) for rows in chunks
        )
    return np.vstack(parts)


def build_snn_graph(
    embedding: Embedding,
    k: int = 20,
    n_dims: int | None = 10,
    prune: float = 1 / 15,
    edge_mode: str = "either",
    n_jobs: int = 1,
) -> NeighborGraph:
    """
    Build the Jaccard-weighted SNN graph from an embedding.

    Args:
        embedding: Source embedding (PCA or aligned CCA)
        k: Neighborhood size, self included
        n_dims: Leading dimensions to use (all if None)
        prune: Weights strictly below this are removed (0 keeps all)
        edge_mode: "either", "mutual" or "shared"
        n_jobs: joblib workers for the neighbor search

    Returns:
        NeighborGraph with symmetric weights in [prune, 1] and zero diagonal

    Raises:
        ConfigurationError: If k >= n_cells, edge_mode is unknown, or prune
            is outside [0, 1]
    """
    if edge_mode not in EDGE_MODES:
        raise ConfigurationError(f"Unknown edge_mode '{edge_mode}'. Valid: {list(EDGE_MODES)}")
    if not 0 <= prune <= 1:
        raise ConfigurationError(f"prune must be in [0, 1], got {prune}")

    X = embedding.as_array(n_dims)
    n = X.shape[0]
    cell_ids = embedding.cell_ids
    nn = knn_indices(X, k, cell_ids, n_jobs=n_jobs)

    membership = sparse.csr_matrix(
        (np.ones(n * k), (np.repeat(np.arange(n), k), nn.ravel())),
        shape=(n, n),
    )
    shared = (membership @ membership.T).tocsr()

    if edge_mode == "shared":
        candidates = shared
    elif edge_mode == "either":
        candidates = shared.multiply((membership + membership.T) > 0).tocsr()
    else:
        candidates = shared.multiply(membership.multiply(membership.T) > 0).tocsr()

    jaccard = candidates.copy().astype(np.float64)
    jaccard.data = jaccard.data / (2.0 * k - jaccard.data)
    jaccard.setdiag(0.0)
    if prune > 0:
        jaccard.data[jaccard.data < prune] = 0.0
    jaccard.eliminate_zeros()
    jaccard = ((jaccard + jaccard.T) / 2.0).tocsr()

    graph = NeighborGraph(
        cell_ids=cell_ids,
        weights=jaccard,
        neighbors=nn,
        k=k,
        source=embedding.kind,
        edge_mode=edge_mode,
        params={"n_dims": X.shape[1], "prune": prune},
    )
    logger.info(
        f"SNN graph: {n} cells, k={k}, {X.shape[1]} {embedding.kind.value} dims, "
        f"edge_mode={edge_mode}, {graph.n_edges} edges after pruning at {prune:.4f}"
    )
    return graph

"""
t-distributed stochastic neighbor embedding for 2-D visualization.

The layout is only for display: nothing downstream consumes it. Optimization
is delegated to sklearn.manifold.TSNE:

    - method="barnes_hut" (default): O(n log n) gradient with a space
      partitioning tree; memory grows linearly with the number of cells
    - method="exact": O(n²) gradient, for small populations

Randomness enters only through the initial layout (init="random", drawn
from random_state=seed). The exact method is bit-reproducible for a given
seed; Barnes-Hut sums gradient terms across OpenMP threads, so repeated runs
agree to floating-point summation order.

References:
    van der Maaten & Hinton (2008) JMLR 9:2579-2605
    van der Maaten (2014) JMLR 15:3221-3245
"""

from __future__ import annotations

import logging

from sklearn.manifold import TSNE

from cellstate.core.embedding import Embedding, EmbeddingKind
from cellstate.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = ['run_tsne', 'TSNE_METHODS', 'MIN_ITER']

TSNE_METHODS = ("barnes_hut", "exact")

# sklearn spends the first 250 iterations in early exaggeration
MIN_ITER = 250


def run_tsne(
    embedding: Embedding,
    n_dims: int | None = None,
    perplexity: float = 30.0,
    n_iter: int = 1000,
    learning_rate: float = 200.0,
    seed: int = 0,
    method: str = "barnes_hut",
    n_jobs: int | None = None,
) -> Embedding:
    """
    2-D t-SNE layout of a source embedding.

    Args:
        embedding: Source coordinates (PCA or aligned CCA)
        n_dims: Leading source dimensions to use (all if None)
        perplexity: Effective neighbor count; must be below the cell count
        n_iter: Total gradient-descent iterations (>= 250)
        learning_rate: Step size
        seed: Seed for the initial layout
        method: "barnes_hut" or "exact"
        n_jobs: Workers for the neighbor search (sklearn convention)

    Returns:
        Embedding of kind TSNE (cells × 2); params["kl_divergence"] holds
        the final KL(P || Q) reported by the optimizer

    Raises:
        ConfigurationError: If perplexity >= n_cells, n_iter < 250 or the
            method is unknown
    """
    X = embedding.as_array(n_dims)
    n = X.shape[0]
    if perplexity >= n:
        raise ConfigurationError(f"perplexity ({perplexity}) must be < n_cells ({n})")
    if n_iter < MIN_ITER:
        raise ConfigurationError(f"n_iter must be >= {MIN_ITER}, got {n_iter}")
    if method not in TSNE_METHODS:
        raise ConfigurationError(f"Unknown t-SNE method '{method}'. Valid: {list(TSNE_METHODS)}")

    model = TSNE(
        n_components=2,
        perplexity=float(perplexity),
        learning_rate=float(learning_rate),
        max_iter=int(n_iter),
        init="random",
        method=method,
        random_state=int(seed),
        n_jobs=n_jobs,
    )
    Y = model.fit_transform(X)
    kl = float(model.kl_divergence_)

    logger.info(
        f"t-SNE ({method}): {n} cells from {embedding.kind.value}[{X.shape[1]} dims], "
        f"perplexity={perplexity}, {model.n_iter_} iterations, KL={kl:.4f}"
    )

    return Embedding.from_array(
        EmbeddingKind.TSNE,
        Y,
        cell_ids=embedding.cell_ids,
        params={
            "source": embedding.kind.value,
            "n_dims": X.shape[1],
            "perplexity": perplexity,
            "n_iter": n_iter,
            "learning_rate": learning_rate,
            "seed": seed,
            "method": method,
            "kl_divergence": kl,
        },
    )

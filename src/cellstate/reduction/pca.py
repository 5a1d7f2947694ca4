"""
Principal component analysis over the scaled variable-gene matrix.

Deterministic by default (full SVD). The randomized solver is available for
large matrices but requires an explicit seed. Component signs are fixed so
that the gene with the largest absolute loading on each component has a
positive weight, which makes repeated runs bit-comparable regardless of the
sign the SVD routine happens to return.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA

from cellstate.core.embedding import Embedding, EmbeddingKind
from cellstate.core.flags import ProcessingFlag
from cellstate.core.matrix import ExpressionMatrix
from cellstate.exceptions import ConfigurationError, InvalidInputError

logger = logging.getLogger(__name__)

__all__ = ['run_pca']


def _canonical_signs(loadings: np.ndarray) -> np.ndarray:
    """+1/-1 per component so the largest-|loading| gene is positive."""
    idx = np.argmax(np.abs(loadings), axis=0)
    signs = np.sign(loadings[idx, np.arange(loadings.shape[1])])
    signs[signs == 0] = 1.0
    return signs


def run_pca(
    matrix: ExpressionMatrix,
    genes: Sequence[str],
    n_components: int = 30,
    solver: str = "full",
    seed: Optional[int] = None,
) -> Embedding:
    """
    Project cells onto the top principal components of the given genes.

    The gene set is always passed explicitly (normally FeatureSelection.genes);
    it is never inferred from the matrix.

    Args:
        matrix: Scaled ExpressionMatrix
        genes: Genes to use, all of which must be rows of the matrix
        n_components: Number of components to keep
        solver: "full" (exact, deterministic) or "randomized" (needs seed)
        seed: Random seed for the randomized solver

    Returns:
        Embedding of kind PCA with coordinates (cells × k), loadings
        (genes × k) and per-component explained variance in `values`;
        params["variance_ratio"] holds the explained-variance ratios

    Raises:
        InvalidInputError: If the matrix is not scaled or genes are missing
        ConfigurationError: If n_components exceeds min(n_cells, n_genes),
            or solver/seed are inconsistent
    """
    if not matrix.flags & ProcessingFlag.SCALED:
        raise InvalidInputError("run_pca expects a scaled matrix (run ScaleData first)")
    genes = list(genes)
    if not genes:
        raise InvalidInputError("run_pca requires a non-empty gene list")
    missing = [g for g in genes if g not in matrix.gene_ids]
    if missing:
        raise InvalidInputError(
            f"{len(missing)} requested genes are not in the scaled matrix, e.g. {missing[:3]}"
        )

    limit = min(matrix.n_cells, len(genes))
    if n_components < 1 or n_components > limit:
        raise ConfigurationError(
            f"n_components={n_components} must be in [1, min(n_cells, n_genes)={limit}]"
        )
    if solver not in ("full", "randomized"):
        raise ConfigurationError(f"Unknown PCA solver '{solver}'")
    if solver == "randomized" and seed is None:
        raise ConfigurationError("The randomized PCA solver requires a fixed seed")

    X = matrix.select_genes(genes).data.T

    pca = PCA(
        n_components=n_components,
        svd_solver=solver,
        random_state=seed if solver == "randomized" else None,
    )
    coords = pca.fit_transform(X)
    loadings = pca.components_.T

    signs = _canonical_signs(loadings)
    coords = coords * signs
    loadings = loadings * signs

    logger.info(
        f"PCA: {n_components} components over {len(genes)} genes × {matrix.n_cells} cells, "
        f"{100 * pca.explained_variance_ratio_.sum():.1f}% variance explained"
    )

    return Embedding.from_array(
        EmbeddingKind.PCA,
        coords,
        cell_ids=matrix.cell_ids,
        loadings=loadings,
        gene_ids=pd.Index(genes),
        values=pca.explained_variance_,
        params={
            "n_components": n_components,
            "solver": solver,
            "seed": seed,
            "variance_ratio": pca.explained_variance_ratio_.tolist(),
        },
    )

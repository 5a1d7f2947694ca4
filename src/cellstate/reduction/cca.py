"""
Batch correction by canonical correlation analysis and subspace alignment.

Two stages:

1. run_cca: find a shared low-dimensional space in which cells from different
   batches are maximally correlated. For two batches with standardized
   expression X₁ (genes × n₁) and X₂ (genes × n₂), the SVD of the cross
   product X₁ᵀX₂ = U D Vᵀ gives canonical cell loadings U (batch 1) and V
   (batch 2); stacking them gives one coordinate row per cell regardless of
   its batch. For three or more batches the same objective is optimized by
   multi-CCA power iteration with deflation.

2. align_subspace: within each canonical dimension, map every batch's values
   onto a common reference distribution (the mean of the per-batch quantile
   functions). The map is monotone and batch-specific and never mixes
   dimensions, so it removes residual per-batch stretch while preserving the
   ordering of cells inside a batch.

References:
    - Butler et al. (2018) Nat Biotechnol 36:411-420 (CCA integration)
    - Witten & Tibshirani (2009) Stat Appl Genet Mol Biol 8:28 (multi-CCA)
    - Bolstad et al. (2003) Bioinformatics 19:185-193 (quantile mapping)
"""

from __future__ import annotations

import logging
import warnings
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy.stats import rankdata

from cellstate.core.embedding import Embedding, EmbeddingKind
from cellstate.core.flags import ProcessingFlag
from cellstate.core.matrix import ExpressionMatrix
from cellstate.exceptions import ConfigurationError, ConvergenceWarning, InvalidInputError

logger = logging.getLogger(__name__)

__all__ = ['run_cca', 'align_subspace']


def _standardize_cells(block: NDArray[np.float64]) -> NDArray[np.float64]:
    """Center and scale every cell (column) across genes."""
    centered = block - block.mean(axis=0, keepdims=True)
    norm = np.linalg.norm(centered, axis=0, keepdims=True)
    norm[norm == 0] = 1.0
    return centered / norm


def _canonical_pair_signs(loadings: NDArray[np.float64]) -> NDArray[np.float64]:
    idx = np.argmax(np.abs(loadings), axis=0)
    signs = np.sign(loadings[idx, np.arange(loadings.shape[1])])
    signs[signs == 0] = 1.0
    return signs


def _two_batch_cca(
    X1: NDArray[np.float64],
    X2: NDArray[np.float64],
    n_components: int,
) -> list[NDArray[np.float64]]:
    cross = X1.T @ X2
    U, _, Vt = np.linalg.svd(cross, full_matrices=False)
    return [U[:, :n_components], Vt[:n_components].T]


def _multi_cca(
    blocks: list[NDArray[np.float64]],
    n_components: int,
    max_iter: int,
    tol: float,
) -> list[NDArray[np.float64]]:
    """
    Multi-CCA by block power iteration.

    For each component, maximizes sum_{i<j} (X_i w_i)ᵀ(X_j w_j) over unit
    vectors w_i, then deflates every block by its found direction so later
    components are orthogonal within each batch.
    """
    blocks = [b.copy() for b in blocks]
    weights = [np.zeros((b.shape[1], n_components)) for b in blocks]
    unconverged = 0

    for k in range(n_components):
        anchor = sum(b.sum(axis=1) / np.sqrt(b.shape[1]) for b in blocks)
        w = []
        for b in blocks:
            start = b.T @ anchor
            norm = np.linalg.norm(start)
            w.append(start / norm if norm > 0 else np.full(b.shape[1], 1 / np.sqrt(b.shape[1])))

        converged = False
        for _ in range(max_iter):
            projections = [b @ wi for b, wi in zip(blocks, w)]
            total = sum(projections)
            delta = 0.0
            for i, b in enumerate(blocks):
                update = b.T @ (total - projections[i])
                norm = np.linalg.norm(update)
                if norm == 0:
                    continue
                update /= norm
                delta = max(delta, float(np.linalg.norm(update - w[i])))
                w[i] = update
                projections[i] = b @ update
                total = sum(projections)
            if delta < tol:
                converged = True
                break
        if not converged:
            unconverged += 1

        for i, b in enumerate(blocks):
            weights[i][:, k] = w[i]
            blocks[i] = b - np.outer(b @ w[i], w[i])

    if unconverged:
        warnings.warn(
            f"Multi-CCA: {unconverged}/{n_components} components reached max_iter={max_iter} "
            f"without meeting tol={tol}",
            ConvergenceWarning,
        )
    return weights


def run_cca(
    matrix: ExpressionMatrix,
    batch_key: str,
    n_components: int = 20,
    genes: Optional[Sequence[str]] = None,
    max_iter: int = 100,
    tol: float = 1e-6,
) -> Embedding:
    """
    Canonical correlation coordinates shared across batches.

    Args:
        matrix: Scaled ExpressionMatrix (rows = the shared gene set)
        batch_key: Cell metadata column holding batch labels
        n_components: Number of canonical dimensions
        genes: Optional gene subset (all rows if None)
        max_iter: Power-iteration cap for three or more batches
        tol: Convergence tolerance for three or more batches

    Returns:
        Embedding of kind CCA; `values` holds the per-dimension correlation
        between batches' gene-space projections (mean over batch pairs),
        params["batches"] lists batch labels in processing order

    Raises:
        InvalidInputError: If the matrix is unscaled or batch_key is missing
        ConfigurationError: If there are fewer than two batches or any batch
            has fewer cells than n_components
    """
    if not matrix.flags & ProcessingFlag.SCALED:
        raise InvalidInputError("run_cca expects a scaled matrix")
    if genes is not None:
        matrix = matrix.select_genes(list(genes))
    batches = matrix.metadata_column(batch_key).astype(str)

    labels = sorted(batches.unique())
    if len(labels) < 2:
        raise ConfigurationError(
            f"CCA needs at least two batches in '{batch_key}', found {labels}"
        )
    sizes = batches.value_counts()
    if sizes.min() < n_components or matrix.n_genes < n_components:
        raise ConfigurationError(
            f"n_components={n_components} exceeds the smallest batch ({sizes.idxmin()}: "
            f"{sizes.min()} cells) or gene count ({matrix.n_genes})"
        )

    positions = [np.flatnonzero(batches.values == b) for b in labels]
    blocks = [_standardize_cells(matrix.data[:, p]) for p in positions]

    if len(blocks) == 2:
        weights = _two_batch_cca(blocks[0], blocks[1], n_components)
    else:
        weights = _multi_cca(blocks, n_components, max_iter, tol)

    signs = _canonical_pair_signs(weights[0])
    weights = [w * signs for w in weights]

    coords = np.zeros((matrix.n_cells, n_components))
    for p, w in zip(positions, weights):
        coords[p] = w

    projections = [b @ w for b, w in zip(blocks, weights)]
    correlations = np.zeros(n_components)
    n_pairs = 0
    for i in range(len(projections)):
        for j in range(i + 1, len(projections)):
            for k in range(n_components):
                a, b = projections[i][:, k], projections[j][:, k]
                if a.std() > 0 and b.std() > 0:
                    correlations[k] += np.corrcoef(a, b)[0, 1]
            n_pairs += 1
    correlations /= n_pairs

    logger.info(
        f"CCA: {n_components} dims across {len(labels)} batches {dict(sizes)}; "
        f"first canonical correlation {correlations[0]:.3f}"
    )

    return Embedding.from_array(
        EmbeddingKind.CCA,
        coords,
        cell_ids=matrix.cell_ids,
        values=correlations,
        params={
            "batch_key": batch_key,
            "batches": labels,
            "n_components": n_components,
        },
    )


def _reference_quantiles(per_batch: list[NDArray[np.float64]], probs: NDArray[np.float64]) -> NDArray[np.float64]:
    return np.mean([np.quantile(v, probs) for v in per_batch], axis=0)


def align_subspace(
    embedding: Embedding,
    batches: pd.Series,
    n_dims: Optional[int] = None,
) -> Embedding:
    """
    Quantile-align each canonical dimension across batches.

    For dimension d and batch b, a cell with mid-rank r among the n_b cells of
    its batch is mapped to R_d((r - 0.5) / n_b), where R_d is the mean of the
    per-batch quantile functions of dimension d. Cells tied within a batch
    stay tied; a cell ranked higher than another in the same batch is never
    mapped lower.

    Args:
        embedding: CCA embedding
        batches: Batch label per cell (indexed by cell id)
        n_dims: Dimensions to align (all if None)

    Returns:
        Embedding of kind CCA_ALIGNED with the same cells

    Raises:
        InvalidInputError: If the embedding is not CCA or batches don't cover its cells
    """
    if embedding.kind is not EmbeddingKind.CCA:
        raise InvalidInputError(f"align_subspace expects a CCA embedding, got {embedding.kind.value}")
    batches = batches.copy()
    batches.index = batches.index.astype(str)
    missing = embedding.cell_ids.difference(batches.index)
    if len(missing) > 0:
        raise InvalidInputError(f"No batch label for {len(missing)} cells")
    labels = batches.loc[embedding.cell_ids].astype(str).values

    coords = embedding.as_array(n_dims)
    aligned = np.empty_like(coords)
    groups = [np.flatnonzero(labels == b) for b in sorted(set(labels))]

    for d in range(coords.shape[1]):
        column = coords[:, d]
        per_batch = [column[g] for g in groups]
        for g, values in zip(groups, per_batch):
            probs = (rankdata(values, method='average') - 0.5) / len(values)
            aligned[g, d] = _reference_quantiles(per_batch, probs)

    logger.info(f"Aligned {coords.shape[1]} canonical dims across {len(groups)} batches")

    return Embedding.from_array(
        EmbeddingKind.CCA_ALIGNED,
        aligned,
        cell_ids=embedding.cell_ids,
        values=None if embedding.values is None else embedding.values[:coords.shape[1]],
        params={
            **embedding.params,
            "n_dims": coords.shape[1],
            "flags": int(ProcessingFlag.BATCH_ALIGNED),
        },
    )

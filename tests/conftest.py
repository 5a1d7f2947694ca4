"""
Pytest configuration and shared fixtures.

Provides a synthetic single-cell count generator with known cell states and
batches, plus fixtures for the matrices each stage consumes.
"""

import numpy as np
import pandas as pd
import pytest

from cellstate.core.embedding import Embedding, EmbeddingKind
from cellstate.core.matrix import ExpressionMatrix
from cellstate.stats.normalization import LogNormalize, find_variable_genes
from cellstate.stats.scaling import ScaleData


def generate_synthetic_counts(
    n_genes: int = 2000,
    n_cells: int = 500,
    n_states: int = 3,
    n_batches: int = 2,
    n_markers: int = 60,
    marker_fold: float = 8.0,
    batch_sd: float = 0.05,
    n_mito: int = 13,
    seed: int = 0,
) -> ExpressionMatrix:
    """
    Generate a Poisson count matrix with known cell states and batches.

    Args:
        n_genes: Total genes, including markers and mitochondrial genes
        n_cells: Number of cells
        n_states: Number of cell states (ground-truth clusters)
        n_batches: Number of batches, assigned independently of state
        n_markers: Marker genes per state
        marker_fold: Rate multiplier of a state's markers inside the state
        batch_sd: SD of per-gene log rate shifts between batches
        n_mito: Mitochondrial genes ("MT-" prefix)
        seed: Random seed for reproducibility

    Returns:
        Raw ExpressionMatrix with metadata columns `state` (int) and
        `batch` ("b0", "b1", ...)

    Design:
        - Background gene rates are log-normal, so genes span the range of
          mean expression
        - Marker rates are spread over a 10-fold range so they fall into
          several mean-expression bins
        - Cell library sizes vary log-normally (sd 0.2)
        - Batches shift every gene's rate by a small gene-specific factor
    """
    rng = np.random.default_rng(seed)
    n_marker_genes = n_states * n_markers
    n_background = n_genes - n_marker_genes - n_mito
    assert n_background > 0

    gene_ids = (
        [f"STATE{s}_M{j:03d}" for s in range(n_states) for j in range(n_markers)]
        + [f"MT-{j}" for j in range(n_mito)]
        + [f"GENE_{j:05d}" for j in range(n_background)]
    )
    base = np.concatenate([
        np.exp(rng.uniform(np.log(0.3), np.log(3.0), size=n_marker_genes)),
        np.full(n_mito, 3.0),
        np.exp(rng.normal(-0.5, 1.0, size=n_background)),
    ])

    states = rng.permutation(np.arange(n_cells) % n_states)
    batches = rng.permutation(np.arange(n_cells) % n_batches)

    rate = np.tile(base[:, None], (1, n_cells))
    for s in range(n_states):
        rows = slice(s * n_markers, (s + 1) * n_markers)
        rate[rows, states == s] *= marker_fold

    batch_shift = rng.normal(0.0, batch_sd, size=(n_genes, n_batches))
    rate *= np.exp(batch_shift[:, batches])
    rate *= rng.lognormal(0.0, 0.2, size=n_cells)[None, :]

    counts = rng.poisson(rate).astype(float)

    cell_ids = pd.Index([f"cell_{i:04d}" for i in range(n_cells)])
    metadata = pd.DataFrame({
        'state': states,
        'batch': [f"b{b}" for b in batches],
    }, index=cell_ids)

    return ExpressionMatrix(
        data=counts,
        gene_ids=pd.Index(gene_ids),
        cell_ids=cell_ids,
        cell_metadata=metadata,
    )


def embedding_from_array(coords: np.ndarray, cell_ids=None, kind=EmbeddingKind.PCA) -> Embedding:
    """Wrap raw coordinates as an Embedding with generated cell ids."""
    if cell_ids is None:
        cell_ids = [f"cell_{i:04d}" for i in range(coords.shape[0])]
    return Embedding.from_array(kind, coords, cell_ids=pd.Index(cell_ids))


@pytest.fixture
def small_counts():
    """300 genes × 150 cells, 3 states, 2 batches."""
    return generate_synthetic_counts(
        n_genes=300, n_cells=150, n_markers=20, n_mito=5, seed=1
    )


@pytest.fixture
def small_normalized(small_counts):
    """Log-normalized small_counts."""
    return LogNormalize().run(small_counts)


@pytest.fixture
def small_selection(small_normalized):
    """Variable genes of small_normalized.

    With only 300 genes each gene takes a large share of the 1e4 target sum,
    so log1p means sit above the default mean_high of 3.
    """
    return find_variable_genes(small_normalized, mean_high=8.0)


@pytest.fixture
def small_scaled(small_normalized, small_selection):
    """Scaled variable genes of small_normalized."""
    return ScaleData(genes=small_selection.genes).run(small_normalized)


@pytest.fixture
def blobs():
    """Three well-separated Gaussian blobs in 5 dims (90 cells) and their labels."""
    rng = np.random.default_rng(7)
    centers = np.array([
        [0, 0, 0, 0, 0],
        [12, 0, 0, 0, 0],
        [0, 12, 0, 0, 0],
    ], dtype=float)
    labels = np.repeat(np.arange(3), 30)
    coords = centers[labels] + rng.normal(0, 1.0, size=(90, 5))
    return embedding_from_array(coords), labels


@pytest.fixture
def arc():
    """200 cells along a noisy half circle, with their position t in [0, 1]."""
    rng = np.random.default_rng(3)
    t = np.sort(rng.uniform(0, 1, size=200))
    coords = np.column_stack([np.cos(np.pi * t), np.sin(np.pi * t)])
    coords += rng.normal(0, 0.01, size=coords.shape)
    return embedding_from_array(coords), t

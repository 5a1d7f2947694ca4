"""
Batch mixing in an embedding, measured dimension by dimension.

For each of the leading dimensions, the per-batch coordinate distributions
are compared with the two-sample Kolmogorov-Smirnov statistic; the reported
distance is the largest statistic over dimensions and batch pairs. 0 means
the batches are indistinguishable along every dimension, 1 means some
dimension separates two batches completely.
"""

from __future__ import annotations

import logging
from itertools import combinations
from typing import Optional

import numpy as np
import pandas as pd
from scipy.stats import ks_2samp

from cellstate.core.embedding import Embedding
from cellstate.exceptions import ConfigurationError, InvalidInputError

logger = logging.getLogger(__name__)

__all__ = ['batch_distance', 'batch_distance_per_dim']


def batch_distance_per_dim(
    embedding: Embedding,
    batches: pd.Series,
    n_dims: Optional[int] = None,
) -> pd.Series:
    """
    Maximum pairwise KS statistic between batches, per dimension.

    Args:
        embedding: Any embedding
        batches: Batch label per cell, indexed by cell id
        n_dims: Leading dimensions to compare (all if None)

    Returns:
        Series indexed by the embedding's column names

    Raises:
        InvalidInputError: If labels do not cover the embedding's cells
        ConfigurationError: If there are fewer than two batches
    """
    batches = batches.copy()
    batches.index = batches.index.astype(str)
    missing = embedding.cell_ids.difference(batches.index)
    if len(missing) > 0:
        raise InvalidInputError(f"No batch label for {len(missing)} cells")
    labels = batches.loc[embedding.cell_ids].astype(str).values
    groups = sorted(set(labels))
    if len(groups) < 2:
        raise ConfigurationError(f"batch distance needs at least two batches, found {groups}")

    coords = embedding.as_array(n_dims)
    distances = np.zeros(coords.shape[1])
    for d in range(coords.shape[1]):
        column = coords[:, d]
        for a, b in combinations(groups, 2):
            stat = ks_2samp(column[labels == a], column[labels == b]).statistic
            distances[d] = max(distances[d], stat)

    return pd.Series(distances, index=embedding.coordinates.columns[:coords.shape[1]])


def batch_distance(
    embedding: Embedding,
    batches: pd.Series,
    n_dims: Optional[int] = None,
) -> float:
    """Largest per-dimension KS statistic between any two batches."""
    per_dim = batch_distance_per_dim(embedding, batches, n_dims)
    logger.debug(f"Batch KS distance per dim ({embedding.kind.value}): {per_dim.round(3).to_dict()}")
    return float(per_dim.max())

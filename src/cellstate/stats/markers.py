"""
One-vs-rest marker gene ranking.

For each cluster, genes are compared between the cluster's cells and all
other cells:

    pct_in / pct_out  fraction of cells with a non-zero count
    avg_logFC         log(mean(expm1(x_in)) + 1) - log(mean(expm1(x_out)) + 1)
                      (natural log; means of normalized expression in linear space)
    p_val             two-sided Wilcoxon rank-sum test on normalized expression
    p_val_adj         Bonferroni over every gene in the matrix

Genes are tested only when detected in at least `min_pct` of either group
and when |avg_logFC| exceeds `logfc_threshold` (avg_logFC > threshold with
only_positive). Both prefilters are speed-ups: untested genes count toward
the Bonferroni denominator as if their p-value were 1.

Clusters are independent and run in parallel with joblib.

Usage:
    >>> table = find_markers(normalized, clusters.labels, raw=raw)
    >>> table.for_cluster(0).sorted_by("avg_logFC", ascending=False).frame.head()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from numpy.typing import NDArray
from scipy.stats import mannwhitneyu
from statsmodels.stats.multitest import multipletests

from cellstate.core.flags import ProcessingFlag
from cellstate.core.matrix import ExpressionMatrix
from cellstate.exceptions import ConfigurationError, InvalidInputError

logger = logging.getLogger(__name__)

__all__ = ['MARKER_COLUMNS', 'MarkerTable', 'find_markers']

MARKER_COLUMNS = ["cluster", "gene", "avg_logFC", "p_val", "p_val_adj", "pct_in", "pct_out"]


@dataclass(frozen=True)
class MarkerTable:
    """
    Ranked marker genes.

    Rows are ordered by cluster, then p_val ascending, then avg_logFC
    descending. Use sorted_by() for other orderings.
    """

    frame: pd.DataFrame
    params: dict[str, Any] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.frame)

    @property
    def clusters(self) -> list:
        return list(pd.unique(self.frame["cluster"]))

    def sorted_by(self, column: str, ascending: bool = True) -> MarkerTable:
        """Re-sort rows by one column (stable, within the current order)."""
        if column not in self.frame.columns:
            raise InvalidInputError(f"Unknown marker column '{column}'. Valid: {MARKER_COLUMNS}")
        frame = self.frame.sort_values(column, ascending=ascending, kind='mergesort')
        return MarkerTable(frame=frame.reset_index(drop=True), params=self.params)

    def for_cluster(self, cluster: Any) -> MarkerTable:
        """Rows for one cluster."""
        frame = self.frame[self.frame["cluster"] == cluster]
        return MarkerTable(frame=frame.reset_index(drop=True), params=self.params)

    def top(self, n: int = 10) -> pd.DataFrame:
        """First n rows of every cluster, in the current order."""
        return self.frame.groupby("cluster", sort=False).head(n).reset_index(drop=True)


def _rank_cluster(
    cluster: Any,
    normalized: NDArray[np.float64],
    detected: NDArray[np.bool_],
    in_mask: NDArray[np.bool_],
    gene_ids: pd.Index,
    min_pct: float,
    logfc_threshold: float,
    only_positive: bool,
) -> pd.DataFrame:
    """Markers for one cluster vs the rest, unadjusted."""
    out_mask = ~in_mask
    pct_in = detected[:, in_mask].mean(axis=1)
    pct_out = detected[:, out_mask].mean(axis=1)

    linear = np.expm1(normalized)
    avg_logfc = (
        np.log(linear[:, in_mask].mean(axis=1) + 1.0)
        - np.log(linear[:, out_mask].mean(axis=1) + 1.0)
    )

    keep = np.maximum(pct_in, pct_out) >= min_pct
    if only_positive:
        keep &= avg_logfc > logfc_threshold
    else:
        keep &= np.abs(avg_logfc) > logfc_threshold
    idx = np.flatnonzero(keep)

    if len(idx) == 0:
        return pd.DataFrame(columns=MARKER_COLUMNS[:4] + MARKER_COLUMNS[5:])

    _, p_values = mannwhitneyu(
        normalized[np.ix_(idx, np.flatnonzero(in_mask))],
        normalized[np.ix_(idx, np.flatnonzero(out_mask))],
        alternative='two-sided',
        axis=1,
    )
    p_values = np.where(np.isnan(p_values), 1.0, p_values)

    return pd.DataFrame({
        "cluster": cluster,
        "gene": gene_ids[idx],
        "avg_logFC": avg_logfc[idx],
        "p_val": p_values,
        "pct_in": pct_in[idx],
        "pct_out": pct_out[idx],
    })


def find_markers(
    normalized: ExpressionMatrix,
    clusters: pd.Series,
    raw: Optional[ExpressionMatrix] = None,
    cluster: Optional[Any] = None,
    min_pct: float = 0.1,
    logfc_threshold: float = 0.25,
    only_positive: bool = False,
    n_jobs: int = 1,
) -> MarkerTable:
    """
    Rank marker genes for every cluster (or one) against all other cells.

    Args:
        normalized: Log-normalized ExpressionMatrix (unscaled)
        clusters: Cluster label per cell, indexed by cell id
        raw: Raw counts used for detection rates (normalized > 0 if None)
        cluster: Restrict to one cluster
        min_pct: Minimum detection rate in either group
        logfc_threshold: |avg_logFC| must exceed this
        only_positive: Keep only genes up-regulated in the cluster
        n_jobs: joblib workers over clusters

    Returns:
        MarkerTable with columns cluster, gene, avg_logFC, p_val, p_val_adj,
        pct_in, pct_out

    Raises:
        InvalidInputError: If the matrix is not log-normalized, labels do not
            cover the cells, `cluster` is unknown, or there is no "rest" group
        ConfigurationError: If thresholds are out of range
    """
    if not normalized.flags & ProcessingFlag.LOG_NORMALIZED or normalized.flags & ProcessingFlag.SCALED:
        raise InvalidInputError("find_markers expects a log-normalized, unscaled matrix")
    if not 0 <= min_pct <= 1:
        raise ConfigurationError(f"min_pct must be in [0, 1], got {min_pct}")
    if logfc_threshold < 0:
        raise ConfigurationError(f"logfc_threshold must be >= 0, got {logfc_threshold}")

    labels = clusters.copy()
    labels.index = labels.index.astype(str)
    missing = normalized.cell_ids.difference(labels.index)
    if len(missing) > 0:
        raise InvalidInputError(f"No cluster label for {len(missing)} cells")
    labels = labels.loc[normalized.cell_ids]

    if raw is None:
        detected = normalized.data > 0
    else:
        if not raw.gene_ids.equals(normalized.gene_ids):
            raw = raw.select_genes(list(normalized.gene_ids))
        detected = raw.select_cells(list(normalized.cell_ids)).data > 0

    available = sorted(pd.unique(labels))
    if cluster is not None:
        if cluster not in available:
            raise InvalidInputError(f"Unknown cluster {cluster!r}. Available: {available}")
        targets = [cluster]
    else:
        targets = available
    if len(available) < 2:
        raise InvalidInputError("Marker ranking needs at least two clusters")

    values = normalized.data
    label_values = labels.values
    args = (normalized.gene_ids, min_pct, logfc_threshold, only_positive)
    if n_jobs == 1 or len(targets) == 1:
        parts = [_rank_cluster(c, values, detected, label_values == c, *args) for c in targets]
    else:
        parts = Parallel(n_jobs=n_jobs)(
            delayed(_rank_cluster)(c, values, detected, label_values == c, *args)
            for c in targets
        )

    n_total = normalized.n_genes
    frames = []
    for frame in parts:
        if frame.empty:
            continue
        padded = np.ones(n_total)
        padded[:len(frame)] = frame["p_val"].to_numpy(dtype=float)
        _, adjusted, _, _ = multipletests(padded, method='bonferroni')
        frame = frame.assign(p_val_adj=adjusted[:len(frame)])
        frame = frame.sort_values(["p_val", "avg_logFC"], ascending=[True, False], kind='mergesort')
        frames.append(frame[MARKER_COLUMNS])

    table = (
        pd.concat(frames, ignore_index=True) if frames
        else pd.DataFrame(columns=MARKER_COLUMNS)
    )

    logger.info(
        f"Markers: {len(table)} genes across {len(targets)} clusters "
        f"(min_pct={min_pct}, logfc_threshold={logfc_threshold}, only_positive={only_positive})"
    )

    return MarkerTable(
        frame=table,
        params={
            "min_pct": min_pct,
            "logfc_threshold": logfc_threshold,
            "only_positive": only_positive,
            "n_genes_tested_against": n_total,
        },
    )

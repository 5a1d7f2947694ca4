"""
Library-size normalization and variable-gene selection for single-cell counts.

Implements the log-normalization used by standard single-cell workflows:
- LogNormalize: scale every cell to a common total, then log1p
- find_variable_genes: mean/dispersion feature selection with the
  mean-variance trend removed by binning genes on mean expression

The fundamental assumption underlying library-size normalization is that
differences in total counts between cells reflect capture efficiency and
sequencing depth rather than biology.

References:
    - Satija et al. (2015) Nat Biotechnol 33:495-502 (Seurat)
    - Macosko et al. (2015) Cell 161:1202-1214 (dispersion-based selection)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from numpy.typing import NDArray

from cellstate.core.flags import ProcessingFlag
from cellstate.core.matrix import ExpressionMatrix
from cellstate.core.transform import Transform
from cellstate.exceptions import ConfigurationError, InvalidInputError

logger = logging.getLogger(__name__)

__all__ = ['LogNormalize', 'FeatureSelection', 'find_variable_genes']

_GENE_CHUNK = 2000


class LogNormalize(Transform):
    """
    Per-cell library-size scaling followed by log1p.

    normalized[g, c] = log(1 + counts[g, c] / total[c] * target_sum)

    so that sum_g expm1(normalized[g, c]) == target_sum for every cell.

    Not idempotent: running it on a matrix already flagged LOG_NORMALIZED is
    rejected rather than compressing the data a second time.

    Examples:
        >>> normalized = LogNormalize(target_sum=1e4).run(raw)
        >>> np.allclose(np.expm1(normalized.data).sum(axis=0), 1e4)
        True
    """

    def __init__(self, target_sum: float = 1e4):
        if target_sum <= 0:
            raise ConfigurationError(f"target_sum must be > 0, got {target_sum}")
        super().__init__(name="LogNormalize", params={"target_sum": float(target_sum)})
        self.target_sum = float(target_sum)

    def apply(self, matrix: ExpressionMatrix) -> ExpressionMatrix:
        totals = matrix.data.sum(axis=0)
        scaled = matrix.data * (self.target_sum / totals)[np.newaxis, :]
        return matrix.derive(
            np.log1p(scaled),
            step=repr(self),
            flags=matrix.flags | ProcessingFlag.LOG_NORMALIZED,
        )

    def validate(self, matrix: ExpressionMatrix) -> list[str]:
        errors = super().validate(matrix)
        if matrix.flags & ProcessingFlag.LOG_NORMALIZED:
            errors.append(
                "matrix is already log-normalized; normalization is not idempotent"
            )
        if matrix.flags & ProcessingFlag.SCALED:
            errors.append("matrix is scaled; normalize raw counts instead")
        totals = matrix.data.sum(axis=0)
        zero = np.flatnonzero(totals <= 0)
        if len(zero) > 0:
            errors.append(
                f"{len(zero)} cells have zero total counts (e.g. {matrix.cell_ids[zero[0]]}); "
                "filter them before normalizing"
            )
        return errors


@dataclass(frozen=True)
class FeatureSelection:
    """
    Result of variable-gene selection.

    Attributes:
        genes: Variable gene ids, ordered by scaled dispersion (descending)
        table: Per-gene statistics for every gene (mean, dispersion,
            dispersion_scaled, bin, variable), indexed by gene id
        params: Thresholds used
        source_lineage: Lineage of the normalized matrix the statistics were
            computed from; a selection is only valid for that matrix
    """

    genes: tuple[str, ...]
    table: pd.DataFrame
    params: dict = field(default_factory=dict)
    source_lineage: tuple[str, ...] = ()

    @property
    def n_selected(self) -> int:
        return len(self.genes)

    def matches(self, matrix: ExpressionMatrix) -> bool:
        """True if this selection was computed from `matrix`."""
        return self.source_lineage == matrix.lineage


def _gene_statistics(values: NDArray[np.float64]) -> tuple[NDArray, NDArray]:
    """log1p(mean) and log(variance / mean) in linear space for one gene chunk."""
    linear = np.expm1(values)
    mean = linear.mean(axis=1)
    var = linear.var(axis=1, ddof=1) if linear.shape[1] > 1 else np.zeros(len(mean))
    with np.errstate(divide='ignore', invalid='ignore'):
        dispersion = np.where(mean > 0, var / mean, 0.0)
        log_dispersion = np.where(dispersion > 0, np.log(dispersion), 0.0)
    return np.log1p(mean), log_dispersion


def find_variable_genes(
    matrix: ExpressionMatrix,
    mean_low: float = 0.0125,
    mean_high: float = 3.0,
    dispersion_cutoff: float = 0.5,
    n_bins: int = 10,
    n_jobs: int = 1,
) -> FeatureSelection:
    """
    Select highly variable genes by binned, z-scored dispersion.

    Algorithm:
        1. Per gene, mean and variance-to-mean ratio of expm1(normalized)
        2. mean -> log1p(mean), dispersion -> log(dispersion)
        3. Bin genes into n_bins quantile bins of mean (deciles by default)
        4. Within each bin, z-score the log dispersion; bins with fewer than
           two genes or zero spread give z = 0
        5. Variable iff mean_low <= mean <= mean_high and z > dispersion_cutoff

    Args:
        matrix: Log-normalized ExpressionMatrix
        mean_low: Lower bound on log1p(mean)
        mean_high: Upper bound on log1p(mean)
        dispersion_cutoff: Minimum within-bin z-scored dispersion
        n_bins: Number of mean-expression quantile bins
        n_jobs: Parallel workers for per-gene statistics

    Returns:
        FeatureSelection with the ordered variable genes and the full table

    Raises:
        InvalidInputError: If the matrix is not log-normalized
        ConfigurationError: If thresholds are inconsistent
    """
    if not matrix.flags & ProcessingFlag.LOG_NORMALIZED:
        raise InvalidInputError("find_variable_genes expects a log-normalized matrix")
    if mean_low >= mean_high:
        raise ConfigurationError(f"mean_low ({mean_low}) must be < mean_high ({mean_high})")
    if n_bins < 1:
        raise ConfigurationError(f"n_bins must be >= 1, got {n_bins}")

    data = matrix.data
    starts = range(0, matrix.n_genes, _GENE_CHUNK)
    if n_jobs == 1:
        chunks = [_gene_statistics(data[s:s + _GENE_CHUNK]) for s in starts]
    else:
        chunks = Parallel(n_jobs=n_jobs)(
            delayed(_gene_statistics)(data[s:s + _GENE_CHUNK]) for s in starts
        )
    mean = np.concatenate([c[0] for c in chunks])
    dispersion = np.concatenate([c[1] for c in chunks])

    expressed = mean > 0
    bins = np.full(matrix.n_genes, -1, dtype=int)
    if expressed.any() and np.unique(mean[expressed]).size < 2:
        bins[expressed] = 0
    elif expressed.any():
        bins[expressed] = pd.qcut(
            mean[expressed], q=n_bins, labels=False, duplicates='drop'
        ).astype(int)

    scaled = np.zeros(matrix.n_genes)
    for b in np.unique(bins[bins >= 0]):
        in_bin = bins == b
        d = dispersion[in_bin]
        sd = d.std(ddof=1) if len(d) > 1 else 0.0
        if sd > 0:
            scaled[in_bin] = (d - d.mean()) / sd

    variable = (
        expressed
        & (mean >= mean_low)
        & (mean <= mean_high)
        & (scaled > dispersion_cutoff)
    )

    table = pd.DataFrame({
        'mean': mean,
        'dispersion': dispersion,
        'dispersion_scaled': scaled,
        'bin': bins,
        'variable': variable,
    }, index=matrix.gene_ids)

    ordered = table[table['variable']].sort_values(
        ['dispersion_scaled'], ascending=False, kind='mergesort'
    )
    genes = tuple(ordered.index.tolist())

    logger.info(
        f"Variable genes: {len(genes)}/{matrix.n_genes} selected "
        f"(mean in [{mean_low}, {mean_high}], scaled dispersion > {dispersion_cutoff})"
    )
    if not genes:
        logger.warning("No variable genes selected; check feature-selection thresholds")

    return FeatureSelection(
        genes=genes,
        table=table,
        params={
            "mean_low": mean_low,
            "mean_high": mean_high,
            "dispersion_cutoff": dispersion_cutoff,
            "n_bins": n_bins,
        },
        source_lineage=matrix.lineage,
    )

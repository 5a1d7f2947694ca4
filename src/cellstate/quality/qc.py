"""
Per-cell quality metrics and quality filtering transforms.

Computes the standard single-cell QC metrics and removes cells and genes
that would make downstream stages ill-defined (empty cells have no
library-size scale factor; genes seen in almost no cell carry no signal).

Engineering Design:
    - compute_qc_metrics returns a new matrix with metrics appended to metadata
    - FilterCells / FilterGenes are Transforms: input matrix -> lineage subset
    - Filters operate on raw counts only
"""

from __future__ import annotations

import logging
from typing import Optional
import numpy as np

from cellstate.core.flags import ProcessingFlag
from cellstate.core.matrix import ExpressionMatrix
from cellstate.core.transform import Transform

logger = logging.getLogger(__name__)

__all__ = ['compute_qc_metrics', 'FilterCells', 'FilterGenes']


def compute_qc_metrics(matrix: ExpressionMatrix, mito_prefix: str = "MT-") -> ExpressionMatrix:
    """
    Append n_genes, total_counts and percent_mito to cell metadata.

    Args:
        matrix: Raw count matrix
        mito_prefix: Gene-name prefix identifying mitochondrial genes
            (case-insensitive; "MT-" matches human, "mt-" mouse)

    Returns:
        New ExpressionMatrix with the three metric columns (overwritten if present)
    """
    counts = matrix.data
    total_counts = counts.sum(axis=0)
    n_genes = (counts > 0).sum(axis=0)

    mito_mask = matrix.gene_ids.str.upper().str.startswith(mito_prefix.upper())
    mito_counts = counts[np.asarray(mito_mask), :].sum(axis=0)
    with np.errstate(divide='ignore', invalid='ignore'):
        percent_mito = np.where(total_counts > 0, 100.0 * mito_counts / total_counts, 0.0)

    logger.info(
        f"QC metrics: {int(mito_mask.sum())} mitochondrial genes, "
        f"median total_counts={np.median(total_counts):.0f}, "
        f"median n_genes={np.median(n_genes):.0f}"
    )

    return matrix.with_metadata(
        n_genes=n_genes.astype(int),
        total_counts=total_counts,
        percent_mito=percent_mito,
    )


class FilterCells(Transform):
    """
    Keep cells within detected-gene and mitochondrial-fraction bounds.

    Params:
        min_genes: Minimum number of genes with count > 0
        max_genes: Maximum number of detected genes (doublet guard), or None
        max_percent_mito: Maximum mitochondrial percentage, or None

    Cells with zero total counts are always removed.

    Examples:
        >>> filtered = FilterCells(min_genes=200, max_percent_mito=5.0).run(matrix)
    """

    def __init__(
        self,
        min_genes: int = 200,
        max_genes: Optional[int] = None,
        max_percent_mito: Optional[float] = None,
        mito_prefix: str = "MT-",
    ):
        super().__init__(
            name="FilterCells",
            params={
                "min_genes": min_genes,
                "max_genes": max_genes,
                "max_percent_mito": max_percent_mito,
            }
        )
        self.min_genes = min_genes
        self.max_genes = max_genes
        self.max_percent_mito = max_percent_mito
        self.mito_prefix = mito_prefix

    def apply(self, matrix: ExpressionMatrix) -> ExpressionMatrix:
        measured = compute_qc_metrics(matrix, self.mito_prefix)
        metadata = measured.cell_metadata

        keep = (metadata["total_counts"].values > 0) & (metadata["n_genes"].values >= self.min_genes)
        if self.max_genes is not None:
            keep &= metadata["n_genes"].values <= self.max_genes
        if self.max_percent_mito is not None:
            keep &= metadata["percent_mito"].values <= self.max_percent_mito

        n_kept = int(keep.sum())
        logger.info(
            f"FilterCells: kept {n_kept}/{matrix.n_cells} cells "
            f"({100 * n_kept / matrix.n_cells:.1f}%)"
        )
        return measured.select_cells(keep)

    def validate(self, matrix: ExpressionMatrix) -> list[str]:
        errors = super().validate(matrix)
        if matrix.flags != ProcessingFlag.RAW:
            errors.append("FilterCells expects raw counts")
        return errors


class FilterGenes(Transform):
    """
    Keep genes detected (count > 0) in at least min_cells cells.
    """

    def __init__(self, min_cells: int = 3):
        super().__init__(name="FilterGenes", params={"min_cells": min_cells})
        self.min_cells = min_cells

    def apply(self, matrix: ExpressionMatrix) -> ExpressionMatrix:
        detected = (matrix.data > 0).sum(axis=1)
        keep = detected >= self.min_cells
        n_kept = int(keep.sum())
        logger.info(
            f"FilterGenes: kept {n_kept}/{matrix.n_genes} genes "
            f"({100 * n_kept / matrix.n_genes:.1f}%), removed {matrix.n_genes - n_kept}"
        )
        return matrix.select_genes(keep)

    def validate(self, matrix: ExpressionMatrix) -> list[str]:
        errors = super().validate(matrix)
        if matrix.flags != ProcessingFlag.RAW:
            errors.append("FilterGenes expects raw counts")
        return errors

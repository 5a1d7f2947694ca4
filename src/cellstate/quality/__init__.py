"""
Quality control: per-cell QC metrics, cell/gene filters and cell-cycle scores.
"""

from cellstate.quality.cell_cycle import score_cell_cycle, score_genes
from cellstate.quality.qc import FilterCells, FilterGenes, compute_qc_metrics

__all__ = [
    'compute_qc_metrics',
    'FilterCells',
    'FilterGenes',
    'score_genes',
    'score_cell_cycle',
]

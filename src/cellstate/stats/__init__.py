"""
Statistical stages: normalization, variable-gene selection, scaling,
marker ranking and batch-mixing distance.
"""

from cellstate.stats.markers import MarkerTable, find_markers
from cellstate.stats.mixing import batch_distance, batch_distance_per_dim
from cellstate.stats.normalization import FeatureSelection, LogNormalize, find_variable_genes
from cellstate.stats.scaling import CovariateRegressor, ResidualDiagnostics, ScaleData

__all__ = [
    'LogNormalize',
    'FeatureSelection',
    'find_variable_genes',
    'CovariateRegressor',
    'ResidualDiagnostics',
    'ScaleData',
    'MarkerTable',
    'find_markers',
    'batch_distance',
    'batch_distance_per_dim',
]

"""
Dimensionality reduction: PCA, CCA batch alignment, t-SNE and diffusion maps.

Each method returns an Embedding tagged with its EmbeddingKind.
"""

from cellstate.reduction.cca import align_subspace, run_cca
from cellstate.reduction.diffusion import BandwidthPolicy, run_diffusion_map
from cellstate.reduction.pca import run_pca
from cellstate.reduction.tsne import run_tsne

__all__ = [
    'run_pca',
    'run_cca',
    'align_subspace',
    'run_tsne',
    'BandwidthPolicy',
    'run_diffusion_map',
]

"""
cellstate - Cell-State Discovery for Single-Cell Expression Data

Recovers latent cell-state structure from genes × cells count matrices:
log-normalization and variable-gene selection, PCA, shared-nearest-neighbor
graph clustering, CCA batch alignment, t-SNE layouts, diffusion-map
trajectories and one-vs-rest marker genes.
"""

__version__ = "0.1.0"

from cellstate.config import PipelineConfig, load_config
from cellstate.core.embedding import Embedding, EmbeddingKind
from cellstate.core.flags import ProcessingFlag
from cellstate.core.matrix import ExpressionMatrix
from cellstate.core.state import PipelineState
from cellstate.exceptions import (
    CellStateError,
    ConfigurationError,
    ConvergenceWarning,
    DegenerateKernelError,
    DisconnectedGraphError,
    InvalidInputError,
)
from cellstate.pipeline import run_diffusion, run_pipeline, subset_state

__all__ = [
    "ExpressionMatrix",
    "ProcessingFlag",
    "Embedding",
    "EmbeddingKind",
    "PipelineState",
    "PipelineConfig",
    "load_config",
    "run_pipeline",
    "subset_state",
    "run_diffusion",
    "CellStateError",
    "InvalidInputError",
    "ConfigurationError",
    "DisconnectedGraphError",
    "DegenerateKernelError",
    "ConvergenceWarning",
]

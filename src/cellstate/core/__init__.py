"""
Core data structures shared by every stage.

1. ExpressionMatrix: genes × cells values with per-cell metadata and lineage
2. ProcessingFlag: bitwise record of the value-changing steps applied
3. Transform: abstract base class for immutable matrix transformations
4. Embedding / EmbeddingKind: low-dimensional coordinates tagged by method
5. PipelineState: immutable snapshot threaded through the pipeline

Design Philosophy:
    - Immutability: all operations return new instances
    - Provenance: subsets and transforms keep a reference to their parent
    - Closed dispatch: embeddings are looked up by EmbeddingKind, not by string
"""

from cellstate.core.embedding import Embedding, EmbeddingKind
from cellstate.core.flags import ProcessingFlag
from cellstate.core.matrix import ExpressionMatrix
from cellstate.core.state import PipelineState, StageRecord
from cellstate.core.transform import Transform

__all__ = [
    'ExpressionMatrix',
    'ProcessingFlag',
    'Transform',
    'Embedding',
    'EmbeddingKind',
    'PipelineState',
    'StageRecord',
]

"""
Immutable analysis state threaded through the pipeline stages.

A PipelineState holds everything computed so far for one dataset. Stages
never modify a state; they return a new one built with dataclasses.replace,
so a failing stage leaves the caller's state exactly as it was and earlier
states remain valid snapshots.

Examples:
    >>> state = PipelineState(raw=matrix)
    >>> state = normalize(state, config)
    >>> state.normalized.flags
    <ProcessingFlag.LOG_NORMALIZED: 1>
    >>> [record.stage for record in state.history]
    ['normalize']
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any, Mapping, Optional

import pandas as pd

from cellstate.core.embedding import Embedding, EmbeddingKind
from cellstate.core.matrix import ExpressionMatrix
from cellstate.exceptions import InvalidInputError

if TYPE_CHECKING:
    from cellstate.graph.louvain import ClusterAssignment
    from cellstate.graph.neighbors import NeighborGraph
    from cellstate.stats.markers import MarkerTable
    from cellstate.stats.normalization import FeatureSelection

__all__ = ['StageRecord', 'PipelineState']


@dataclass(frozen=True)
class StageRecord:
    """One completed stage: its name, parameters and completion time."""
    stage: str
    params: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class PipelineState:
    """
    Snapshot of one dataset's analysis.

    Attributes:
        raw: Raw counts (after QC filtering, if run)
        normalized: Log-normalized matrix
        scaled: Scaled matrix over the selected genes
        features: Variable-gene selection
        embeddings: Embeddings keyed by kind; adding one never removes another
        graph: SNN graph
        clusters: Cluster assignment
        markers: Marker table
        history: Completed stages, oldest first
    """

    raw: ExpressionMatrix
    normalized: Optional[ExpressionMatrix] = None
    scaled: Optional[ExpressionMatrix] = None
    features: Optional[FeatureSelection] = None
    embeddings: Mapping[EmbeddingKind, Embedding] = field(default_factory=dict)
    graph: Optional[NeighborGraph] = None
    clusters: Optional[ClusterAssignment] = None
    markers: Optional[MarkerTable] = None
    history: tuple[StageRecord, ...] = ()

    @property
    def cell_ids(self) -> pd.Index:
        return self.raw.cell_ids

    @property
    def n_cells(self) -> int:
        return self.raw.n_cells

    @property
    def stages(self) -> list[str]:
        return [record.stage for record in self.history]

    def require(self, name: str) -> Any:
        """
        Return a computed attribute, raising if the producing stage has not run.

        Raises:
            InvalidInputError: If the attribute is still None
        """
        value = getattr(self, name)
        if value is None:
            raise InvalidInputError(
                f"PipelineState.{name} is not available; run the stage that produces it first "
                f"(completed: {self.stages or 'none'})"
            )
        return value

    def embedding(self, kind: EmbeddingKind | str) -> Embedding:
        """
        Look up an embedding by kind.

        Raises:
            ConfigurationError: If kind is not a valid EmbeddingKind value
            InvalidInputError: If no embedding of that kind has been computed
        """
        kind = EmbeddingKind.parse(kind)
        if kind not in self.embeddings:
            available = [k.value for k in self.embeddings]
            raise InvalidInputError(
                f"No '{kind.value}' embedding in state. Available: {available}"
            )
        return self.embeddings[kind]

    def evolve(self, stage: str, params: Optional[dict[str, Any]] = None, **changes: Any) -> PipelineState:
        """New state with `changes` applied and the stage appended to history."""
        record = StageRecord(stage=stage, params=dict(params or {}))
        return replace(self, history=self.history + (record,), **changes)

    def with_embeddings(self, *embeddings: Embedding) -> dict[EmbeddingKind, Embedding]:
        """Embedding mapping with the given embeddings added (or replaced by kind)."""
        merged = dict(self.embeddings)
        for embedding in embeddings:
            merged[embedding.kind] = embedding
        return merged

    def __repr__(self) -> str:
        parts = [f"{self.raw.n_genes} genes × {self.n_cells} cells"]
        if self.features is not None:
            parts.append(f"{self.features.n_selected} variable genes")
        if self.embeddings:
            parts.append(f"embeddings={[k.value for k in self.embeddings]}")
        if self.clusters is not None:
            parts.append(f"{self.clusters.n_clusters} clusters")
        return f"PipelineState({', '.join(parts)}; stages={self.stages})"

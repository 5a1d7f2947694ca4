"""
Low-dimensional cell embeddings as a closed set of tagged kinds.

Each reduction stage produces an Embedding tagged with an EmbeddingKind.
Consumers look embeddings up by kind (never by free-form strings), and
several embeddings of different kinds coexist on one PipelineState.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Sequence

import numpy as np
import pandas as pd

from cellstate.exceptions import ConfigurationError, InvalidInputError

__all__ = ['EmbeddingKind', 'Embedding']


class EmbeddingKind(Enum):
    """Available embedding kinds."""

    PCA = "pca"
    CCA = "cca"
    CCA_ALIGNED = "cca.aligned"
    TSNE = "tsne"
    DIFFMAP = "diffmap"

    @property
    def column_prefix(self) -> str:
        return _PREFIXES[self]

    @classmethod
    def parse(cls, value: str | EmbeddingKind) -> EmbeddingKind:
        """Accept an EmbeddingKind or its string value (as found in config files)."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            valid = [k.value for k in cls]
            raise ConfigurationError(f"Unknown embedding kind '{value}'. Valid: {valid}") from None


_PREFIXES = {
    EmbeddingKind.PCA: "PC_",
    EmbeddingKind.CCA: "CC_",
    EmbeddingKind.CCA_ALIGNED: "ACC_",
    EmbeddingKind.TSNE: "tSNE_",
    EmbeddingKind.DIFFMAP: "DC_",
}


@dataclass(frozen=True)
class Embedding:
    """
    Cell coordinates produced by one reduction method.

    Attributes:
        kind: Which method produced the coordinates
        coordinates: Cells × k table indexed by cell id
        loadings: Genes × k weights (PCA only)
        values: Per-dimension values: explained variance (PCA), canonical
            correlations (CCA), eigenvalues (diffusion map)
        params: Parameters used to compute the embedding
    """

    kind: EmbeddingKind
    coordinates: pd.DataFrame
    loadings: Optional[pd.DataFrame] = None
    values: Optional[np.ndarray] = None
    params: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_array(
        cls,
        kind: EmbeddingKind,
        coords: np.ndarray,
        cell_ids: pd.Index,
        loadings: Optional[np.ndarray] = None,
        gene_ids: Optional[pd.Index] = None,
        values: Optional[np.ndarray] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Embedding:
        """Wrap raw coordinate arrays with kind-specific column names."""
        columns = [f"{kind.column_prefix}{i + 1}" for i in range(coords.shape[1])]
        coordinates = pd.DataFrame(coords, index=pd.Index(cell_ids), columns=columns)
        loading_frame = None
        if loadings is not None:
            loading_frame = pd.DataFrame(loadings, index=pd.Index(gene_ids), columns=columns)
        return cls(
            kind=kind,
            coordinates=coordinates,
            loadings=loading_frame,
            values=None if values is None else np.asarray(values, dtype=np.float64),
            params=dict(params or {}),
        )

    @property
    def dim(self) -> int:
        return self.coordinates.shape[1]

    @property
    def cell_ids(self) -> pd.Index:
        return self.coordinates.index

    def as_array(self, n_dims: Optional[int] = None) -> np.ndarray:
        """
        Coordinates as a cells × n_dims array.

        Raises:
            ConfigurationError: If more dimensions are requested than exist
        """
        if n_dims is None:
            n_dims = self.dim
        if n_dims < 1 or n_dims > self.dim:
            raise ConfigurationError(
                f"Requested {n_dims} dims from {self.kind.value} embedding with {self.dim} dims"
            )
        return self.coordinates.iloc[:, :n_dims].to_numpy(dtype=np.float64)

    def subset(self, cell_ids: Sequence[str]) -> Embedding:
        """Restrict to the given cells (in the given order)."""
        cell_ids = pd.Index(cell_ids)
        missing = cell_ids.difference(self.coordinates.index)
        if len(missing) > 0:
            raise InvalidInputError(
                f"{len(missing)} cells not present in {self.kind.value} embedding"
            )
        return Embedding(
            kind=self.kind,
            coordinates=self.coordinates.loc[cell_ids],
            loadings=self.loadings,
            values=self.values,
            params=self.params,
        )

"""
Core data structure for single-cell expression matrices.

ExpressionMatrix unifies numerical data (counts or transformed values) with
per-cell metadata (batch, QC metrics, scores, cluster labels) and processing
provenance (which value-changing steps were applied, and which matrix this
one was derived from).

Biological Context:
    Single-cell count matrices are the input to every downstream stage:
    - Rows = genes
    - Columns = cells
    - Values = UMI counts, later log-normalized or scaled values

    Unlike generic dataframes, they require:
    - Tight coupling between values and per-cell metadata
    - Processing flags so non-idempotent steps are never applied twice
    - Subsetting that records where a subset came from
    - Immutability so stages compose without hidden state changes

Engineering Design:
    - Immutable: the backing array is marked read-only and every operation
      returns a new instance
    - Shared storage: read-only arrays are passed through without copying
    - Lineage: subsets and transforms keep a non-owning reference to their
      parent plus a tuple of step descriptions
    - Validated: constructor checks shapes, identifier uniqueness and values

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from cellstate.core.matrix import ExpressionMatrix
    >>>
    >>> counts = np.array([[0, 3, 1], [5, 0, 2]])
    >>> matrix = ExpressionMatrix(
    ...     data=counts,
    ...     gene_ids=pd.Index(["CD3E", "MS4A1"]),
    ...     cell_ids=pd.Index(["AAAC-1", "AAAG-1", "AACT-1"]),
    ...     cell_metadata=pd.DataFrame(
    ...         {"batch": ["b1", "b1", "b2"]},
    ...         index=pd.Index(["AAAC-1", "AAAG-1", "AACT-1"]),
    ...     ),
    ... )
    >>>
    >>> b1 = matrix.select_cells(matrix.cell_metadata["batch"] == "b1")
    >>> b1.parent is matrix
    True
"""

from __future__ import annotations

from typing import Any, Iterable, Optional, Sequence
import numpy as np
import pandas as pd

from cellstate.core.flags import ProcessingFlag
from cellstate.exceptions import InvalidInputError

__all__ = ['ExpressionMatrix']


def _freeze(data: np.ndarray) -> np.ndarray:
    """Return a read-only float64 array, copying only if the input is writable."""
    if data.dtype == np.float64 and not data.flags.writeable:
        return data
    frozen = np.array(data, dtype=np.float64, copy=True)
    frozen.setflags(write=False)
    return frozen


def _positions(selector: Any, index: pd.Index, axis_name: str) -> np.ndarray:
    """Resolve a boolean mask or an identifier list into integer positions."""
    if isinstance(selector, pd.Series):
        selector = selector.values
    selector = np.asarray(selector)

    if selector.dtype == bool:
        if len(selector) != len(index):
            raise InvalidInputError(
                f"mask length ({len(selector)}) must match n_{axis_name} ({len(index)})"
            )
        return np.flatnonzero(selector)

    positions = index.get_indexer(selector)
    if np.any(positions < 0):
        missing = [str(s) for s, p in zip(selector, positions) if p < 0]
        raise InvalidInputError(
            f"Unknown {axis_name} identifiers: {missing[:5]}"
            + (f" (+{len(missing) - 5} more)" if len(missing) > 5 else "")
        )
    if len(np.unique(positions)) != len(positions):
        raise InvalidInputError(f"Duplicate {axis_name} identifiers in selection")
    return positions


class ExpressionMatrix:
    """
    Immutable container for a genes × cells matrix plus per-cell metadata.

    Attributes:
        data: Read-only expression values (genes × cells)
        gene_ids: Row identifiers (unique gene names)
        cell_ids: Column identifiers (unique cell barcodes)
        cell_metadata: Per-cell annotations indexed by cell id
        flags: ProcessingFlag describing applied value-changing steps
        parent: Matrix this one was derived from (None for loaded data)
        lineage: Descriptions of every step since loading

    Shape Invariants:
        - data.shape == (len(gene_ids), len(cell_ids))
        - cell_metadata.index equals cell_ids
        - gene_ids and cell_ids contain no duplicates
        - data is finite; and non-negative while flags == RAW
    """

    def __init__(
        self,
        data: np.ndarray,
        gene_ids: pd.Index,
        cell_ids: pd.Index,
        cell_metadata: Optional[pd.DataFrame] = None,
        flags: ProcessingFlag = ProcessingFlag.RAW,
        parent: Optional[ExpressionMatrix] = None,
        lineage: Sequence[str] = (),
    ):
        """
        Initialize ExpressionMatrix with validation.

        Args:
            data: Expression values (genes × cells)
            gene_ids: Row identifiers
            cell_ids: Column identifiers
            cell_metadata: DataFrame indexed by cell_ids (empty frame if None)
            flags: Processing already applied to data
            parent: Source matrix for derived instances (provenance only)
            lineage: Step descriptions inherited from the parent

        Raises:
            InvalidInputError: If shapes, identifiers or values are inconsistent
        """
        if not isinstance(data, np.ndarray):
            raise InvalidInputError(f"data must be np.ndarray, got {type(data)}")
        gene_ids = pd.Index(gene_ids).astype(str)
        cell_ids = pd.Index(cell_ids).astype(str)
        if cell_metadata is None:
            cell_metadata = pd.DataFrame(index=cell_ids)
        if not isinstance(cell_metadata, pd.DataFrame):
            raise InvalidInputError(
                f"cell_metadata must be pd.DataFrame, got {type(cell_metadata)}"
            )

        if data.ndim != 2:
            raise InvalidInputError(f"data must be 2D, got shape {data.shape}")

        n_genes, n_cells = data.shape
        if len(gene_ids) != n_genes:
            raise InvalidInputError(
                f"gene_ids length ({len(gene_ids)}) must match data rows ({n_genes})"
            )
        if len(cell_ids) != n_cells:
            raise InvalidInputError(
                f"cell_ids length ({len(cell_ids)}) must match data columns ({n_cells})"
            )
        if gene_ids.has_duplicates:
            dupes = gene_ids[gene_ids.duplicated()].unique().tolist()
            raise InvalidInputError(f"Duplicate gene identifiers: {dupes[:5]}")
        if cell_ids.has_duplicates:
            dupes = cell_ids[cell_ids.duplicated()].unique().tolist()
            raise InvalidInputError(f"Duplicate cell identifiers: {dupes[:5]}")

        cell_metadata = cell_metadata.copy()
        cell_metadata.index = cell_metadata.index.astype(str)
        if not cell_metadata.index.equals(cell_ids):
            raise InvalidInputError(
                "cell_metadata.index must match cell_ids exactly. "
                f"Got {len(cell_metadata.index)} metadata rows for {n_cells} cells."
            )

        data = _freeze(data)
        if not np.all(np.isfinite(data)):
            raise InvalidInputError("data contains NaN or infinite values")
        if flags == ProcessingFlag.RAW and data.size and data.min() < 0:
            raise InvalidInputError("Raw counts must be non-negative")

        self._data = data
        self._gene_ids = gene_ids
        self._cell_ids = cell_ids
        self._cell_metadata = cell_metadata
        self._flags = ProcessingFlag(flags)
        self._parent = parent
        self._lineage = tuple(lineage)

    @classmethod
    def from_dataframe(
        cls,
        frame: pd.DataFrame,
        cell_metadata: Optional[pd.DataFrame] = None,
    ) -> ExpressionMatrix:
        """
        Build a raw matrix from a genes × cells DataFrame.

        Args:
            frame: Counts with gene ids as index and cell ids as columns
            cell_metadata: Optional per-cell annotations; reindexed to the
                frame's columns, so every cell must be present

        Raises:
            InvalidInputError: If metadata lacks any of the frame's cells
        """
        cell_ids = pd.Index(frame.columns).astype(str)
        if cell_metadata is not None:
            cell_metadata = cell_metadata.copy()
            cell_metadata.index = cell_metadata.index.astype(str)
            missing = cell_ids.difference(cell_metadata.index)
            if len(missing) > 0:
                raise InvalidInputError(
                    f"cell_metadata is missing {len(missing)} cells, e.g. {missing[:3].tolist()}"
                )
            cell_metadata = cell_metadata.loc[cell_ids]
        return cls(
            data=frame.to_numpy(dtype=np.float64),
            gene_ids=pd.Index(frame.index),
            cell_ids=cell_ids,
            cell_metadata=cell_metadata,
        )

    @property
    def data(self) -> np.ndarray:
        """Read-only expression values (genes × cells)."""
        return self._data

    @property
    def gene_ids(self) -> pd.Index:
        return self._gene_ids

    @property
    def cell_ids(self) -> pd.Index:
        return self._cell_ids

    @property
    def cell_metadata(self) -> pd.DataFrame:
        """Per-cell annotations (a copy; use with_metadata to change them)."""
        return self._cell_metadata.copy()

    @property
    def flags(self) -> ProcessingFlag:
        return self._flags

    @property
    def parent(self) -> Optional[ExpressionMatrix]:
        return self._parent

    @property
    def lineage(self) -> tuple[str, ...]:
        return self._lineage

    @property
    def shape(self) -> tuple[int, int]:
        """Matrix dimensions (n_genes, n_cells)."""
        return self._data.shape

    @property
    def n_genes(self) -> int:
        return self._data.shape[0]

    @property
    def n_cells(self) -> int:
        return self._data.shape[1]

    def metadata_column(self, name: str) -> pd.Series:
        """Return one metadata column, raising InvalidInputError if absent."""
        if name not in self._cell_metadata.columns:
            raise InvalidInputError(
                f"Metadata column '{name}' not found. "
                f"Available: {list(self._cell_metadata.columns)}"
            )
        return self._cell_metadata[name].copy()

    def select_cells(self, selector: Any) -> ExpressionMatrix:
        """
        Subset matrix by cells (columns).

        Args:
            selector: Boolean mask/Series over cells, or a list of cell ids

        Returns:
            New ExpressionMatrix whose parent is this matrix

        Raises:
            InvalidInputError: If the mask length is wrong or ids are unknown

        Examples:
            >>> b1 = matrix.select_cells(matrix.cell_metadata["batch"] == "b1")
            >>> first = matrix.select_cells(matrix.cell_ids[:10])
        """
        positions = _positions(selector, self._cell_ids, "cells")
        if len(positions) == 0:
            raise InvalidInputError("Cell selection is empty")
        cell_ids = self._cell_ids[positions]
        return ExpressionMatrix(
            data=_freeze(self._data[:, positions]),
            gene_ids=self._gene_ids,
            cell_ids=cell_ids,
            cell_metadata=self._cell_metadata.iloc[positions],
            flags=self._flags,
            parent=self,
            lineage=self._lineage + (f"select_cells(n={len(positions)})",),
        )

    def select_genes(self, selector: Any) -> ExpressionMatrix:
        """
        Subset matrix by genes (rows).

        Args:
            selector: Boolean mask/Series over genes, or a list of gene ids
                (order of the list is kept)

        Returns:
            New ExpressionMatrix whose parent is this matrix
        """
        positions = _positions(selector, self._gene_ids, "genes")
        if len(positions) == 0:
            raise InvalidInputError("Gene selection is empty")
        return ExpressionMatrix(
            data=_freeze(self._data[positions, :]),
            gene_ids=self._gene_ids[positions],
            cell_ids=self._cell_ids,
            cell_metadata=self._cell_metadata,
            flags=self._flags,
            parent=self,
            lineage=self._lineage + (f"select_genes(n={len(positions)})",),
        )

    def derive(
        self,
        data: np.ndarray,
        step: str,
        flags: Optional[ProcessingFlag] = None,
        gene_ids: Optional[pd.Index] = None,
    ) -> ExpressionMatrix:
        """
        Create a derived matrix with new values and the same cells.

        Used by transforms. Metadata is carried over; lineage records `step`.

        Args:
            data: New values (genes × cells)
            step: Description appended to lineage, e.g. "LogNormalize(target_sum=10000)"
            flags: Processing flags of the result (defaults to this matrix's flags)
            gene_ids: Row ids when the gene set changes (defaults to this matrix's)
        """
        return ExpressionMatrix(
            data=data,
            gene_ids=self._gene_ids if gene_ids is None else gene_ids,
            cell_ids=self._cell_ids,
            cell_metadata=self._cell_metadata,
            flags=self._flags if flags is None else flags,
            parent=self,
            lineage=self._lineage + (step,),
        )

    def with_metadata(self, **columns: Iterable[Any]) -> ExpressionMatrix:
        """
        Return a new matrix with metadata columns added or overwritten.

        Values are aligned by cell id when given as a Series, positionally
        otherwise. All columns are validated before any is applied.

        Examples:
            >>> labelled = matrix.with_metadata(cluster=labels)
        """
        metadata = self._cell_metadata.copy()
        prepared = {}
        for name, values in columns.items():
            if isinstance(values, pd.Series):
                values = values.copy()
                values.index = values.index.astype(str)
                missing = self._cell_ids.difference(values.index)
                if len(missing) > 0:
                    raise InvalidInputError(
                        f"Column '{name}' has no value for {len(missing)} cells"
                    )
                prepared[name] = values.loc[self._cell_ids].values
            else:
                values = np.asarray(list(values))
                if len(values) != self.n_cells:
                    raise InvalidInputError(
                        f"Column '{name}' length ({len(values)}) must match n_cells ({self.n_cells})"
                    )
                prepared[name] = values
        for name, values in prepared.items():
            metadata[name] = values

        return ExpressionMatrix(
            data=self._data,
            gene_ids=self._gene_ids,
            cell_ids=self._cell_ids,
            cell_metadata=metadata,
            flags=self._flags,
            parent=self._parent,
            lineage=self._lineage,
        )

    def to_dataframe(self) -> pd.DataFrame:
        """Values as a genes × cells DataFrame."""
        return pd.DataFrame(self._data, index=self._gene_ids, columns=self._cell_ids)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"ExpressionMatrix({self.n_genes} genes × {self.n_cells} cells, "
            f"flags={self._flags!r})\n"
            f"  Genes: {self.gene_ids[0]}...{self.gene_ids[-1]}\n"
            f"  Cells: {self.cell_ids[0]}...{self.cell_ids[-1]}\n"
            f"  Metadata columns: {list(self._cell_metadata.columns)}\n"
            f"  Lineage: {' -> '.join(self._lineage) or '(loaded)'}"
        )

    def __str__(self) -> str:
        return self.__repr__()

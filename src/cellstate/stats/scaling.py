"""
Covariate regression and per-gene standardization.

Technical covariates (total counts, mitochondrial fraction, batch) can drive
much of the variance in single-cell data. ScaleData optionally replaces each
gene's normalized expression by its OLS residuals against those covariates,
then standardizes every gene to zero mean and unit variance across cells.

Regression is vectorized: the design matrix depends only on the cells, so its
pseudo-inverse is computed ONCE and applied to all genes in batches instead
of fitting one model per gene.

Mathematical Foundation:
    For OLS regression y = Xβ + ε (one gene, all cells):
        β̂ = X⁺y        (X⁺ = Moore-Penrose pseudo-inverse)
        ε̂ = y - Xβ̂

    For the genes × cells matrix Y, all genes at once:
        B = Y X⁺ᵀ      (genes × covariates)
        E = Y - B Xᵀ

    All covariates enter one joint model fitted on the unscaled normalized
    values; there is no sequential per-covariate residualization.

Usage:
    >>> regressor = CovariateRegressor(matrix.cell_metadata, ["total_counts", "percent_mito"])
    >>> residuals, diag = regressor.compute_residuals(matrix.data)
    >>>
    >>> scaled = ScaleData(genes=selection.genes, covariates=["total_counts"]).run(normalized)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import patsy

from cellstate.core.flags import ProcessingFlag
from cellstate.core.matrix import ExpressionMatrix
from cellstate.core.transform import Transform
from cellstate.exceptions import ConfigurationError, InvalidInputError

logger = logging.getLogger(__name__)

__all__ = ['ResidualDiagnostics', 'CovariateRegressor', 'ScaleData']


@dataclass
class ResidualDiagnostics:
    """Lightweight diagnostics for residual computation."""
    r_squared: np.ndarray           # R² per gene (n_genes,)
    residual_variance: np.ndarray   # Residual variance per gene

    def summary(self) -> Dict[str, float]:
        """Summary statistics across all genes."""
        return {
            'median_r_squared': float(np.nanmedian(self.r_squared)),
            'mean_r_squared': float(np.nanmean(self.r_squared)),
            'pct_r2_above_0.3': float(100 * np.nanmean(self.r_squared > 0.3)),
            'n_genes': len(self.r_squared),
        }


class CovariateRegressor:
    """
    Vectorized OLS residuals of every gene against per-cell covariates.

    Attributes:
        design_matrix_: Design matrix X (n_cells × n_terms), intercept included
        pinv_: Pseudo-inverse of X (n_terms × n_cells)
        term_names_: Names of the design columns
    """

    def __init__(
        self,
        metadata: pd.DataFrame,
        covariates: Sequence[str],
        batch_size: int = 1000,
    ):
        """
        Build the design matrix and its pseudo-inverse.

        Numeric covariates enter linearly; string/categorical columns are
        dummy-coded (patsy treats them as categorical), so "batch" is a valid
        covariate.

        Args:
            metadata: Per-cell metadata (n_cells rows)
            covariates: Metadata column names to regress out
            batch_size: Number of genes processed per batch

        Raises:
            ConfigurationError: If a covariate is not a metadata column
            InvalidInputError: If a covariate has missing values
        """
        if not covariates:
            raise ConfigurationError("At least one covariate is required for regression")
        missing = [c for c in covariates if c not in metadata.columns]
        if missing:
            raise ConfigurationError(
                f"Covariates not found in cell metadata: {missing}. "
                f"Available: {list(metadata.columns)}"
            )

        self.covariates = list(covariates)
        self.batch_size = batch_size
        self.n_cells = len(metadata)

        self.design_matrix_, self.term_names_ = self._build_design_matrix(metadata)
        self.pinv_ = np.linalg.pinv(self.design_matrix_)

        self.df_model = self.design_matrix_.shape[1]
        self.df_resid = self.n_cells - self.df_model
        if self.df_resid < 1:
            raise ConfigurationError(
                f"Design has {self.df_model} terms for {self.n_cells} cells; "
                "too many covariates for the number of cells"
            )

    def _build_design_matrix(self, metadata: pd.DataFrame) -> Tuple[np.ndarray, List[str]]:
        """
        Build the design matrix with an intercept using patsy, once for all genes.
        """
        data = metadata[self.covariates].copy()
        data.columns = [f"cov{i}" for i in range(len(self.covariates))]
        formula = " + ".join(data.columns)
        try:
            X = patsy.dmatrix(formula, data=data, return_type='dataframe', NA_action='raise')
        except patsy.PatsyError as e:
            raise InvalidInputError(f"Cannot build covariate design from {self.covariates}: {e}") from e

        names = []
        for term in X.columns:
            for i, original in enumerate(self.covariates):
                term = term.replace(f"cov{i}", original)
            names.append(term)
        return X.values.astype(np.float64), names

    def compute_residuals(self, Y: np.ndarray) -> Tuple[np.ndarray, ResidualDiagnostics]:
        """
        Residuals for every gene.

        Args:
            Y: Expression values (n_genes × n_cells)

        Returns:
            (residuals with the shape of Y, diagnostics)
        """
        if Y.shape[1] != self.n_cells:
            raise InvalidInputError(
                f"Expression has {Y.shape[1]} cells, design has {self.n_cells}"
            )

        residuals = np.empty_like(Y, dtype=np.float64)
        for start in range(0, Y.shape[0], self.batch_size):
            block = Y[start:start + self.batch_size]
            coefficients = block @ self.pinv_.T
            residuals[start:start + self.batch_size] = block - coefficients @ self.design_matrix_.T

        ss_res = np.sum(residuals ** 2, axis=1)
        centered = Y - Y.mean(axis=1, keepdims=True)
        ss_tot = np.sum(centered ** 2, axis=1)
        with np.errstate(divide='ignore', invalid='ignore'):
            r_squared = np.where(ss_tot > 0, 1.0 - ss_res / ss_tot, np.nan)

        return residuals, ResidualDiagnostics(
            r_squared=r_squared,
            residual_variance=ss_res / self.df_resid,
        )


class ScaleData(Transform):
    """
    Optional covariate regression followed by per-gene standardization.

    Params:
        genes: Genes to keep (e.g. the variable-gene selection); all if None
        covariates: Metadata columns to regress out before scaling
        max_value: Clip scaled values to [-max_value, max_value]; None disables

    Genes with zero variance (after regression) are set to 0 rather than NaN.

    Examples:
        >>> scaled = ScaleData(
        ...     genes=selection.genes,
        ...     covariates=["total_counts", "percent_mito"],
        ... ).run(normalized)
    """

    def __init__(
        self,
        genes: Optional[Sequence[str]] = None,
        covariates: Optional[Sequence[str]] = None,
        max_value: Optional[float] = 10.0,
    ):
        if max_value is not None and max_value <= 0:
            raise ConfigurationError(f"max_value must be > 0, got {max_value}")
        super().__init__(
            name="ScaleData",
            params={
                "n_genes": None if genes is None else len(genes),
                "covariates": list(covariates or []),
                "max_value": max_value,
            }
        )
        self.genes = None if genes is None else list(genes)
        self.covariates = list(covariates or [])
        self.max_value = max_value

    def apply(self, matrix: ExpressionMatrix) -> ExpressionMatrix:
        source = matrix if self.genes is None else matrix.select_genes(self.genes)
        values = source.data
        flags = matrix.flags | ProcessingFlag.SCALED

        if self.covariates:
            regressor = CovariateRegressor(matrix.cell_metadata, self.covariates)
            values, diagnostics = regressor.compute_residuals(values)
            flags |= ProcessingFlag.COVARIATES_REGRESSED
            summary = diagnostics.summary()
            logger.info(
                f"Regressed {self.covariates} from {source.n_genes} genes "
                f"(median R²={summary['median_r_squared']:.3f}, "
                f"{summary['pct_r2_above_0.3']:.1f}% of genes with R² > 0.3)"
            )

        mean = values.mean(axis=1, keepdims=True)
        std = values.std(axis=1, ddof=1, keepdims=True) if matrix.n_cells > 1 else np.zeros_like(mean)
        constant = std[:, 0] <= 1e-12
        if constant.any():
            logger.warning(f"{int(constant.sum())} genes have zero variance; scaled to 0")
        std[constant] = 1.0
        scaled = (values - mean) / std
        scaled[constant, :] = 0.0

        if self.max_value is not None:
            scaled = np.clip(scaled, -self.max_value, self.max_value)

        return source.derive(scaled, step=repr(self), flags=flags)

    def validate(self, matrix: ExpressionMatrix) -> list[str]:
        errors = super().validate(matrix)
        if not matrix.flags & ProcessingFlag.LOG_NORMALIZED:
            errors.append("ScaleData expects a log-normalized matrix")
        if matrix.flags & ProcessingFlag.SCALED:
            errors.append("matrix is already scaled")
        if self.genes is not None and len(self.genes) == 0:
            errors.append("gene list is empty (no variable genes selected?)")
        if matrix.n_cells < 2:
            errors.append("at least two cells are required to standardize")
        return errors

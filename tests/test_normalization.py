"""Tests for log-normalization and variable-gene selection."""

import numpy as np
import pandas as pd
import pytest

from cellstate.core.flags import ProcessingFlag
from cellstate.core.matrix import ExpressionMatrix
from cellstate.exceptions import ConfigurationError, InvalidInputError
from cellstate.stats.normalization import LogNormalize, find_variable_genes


class TestLogNormalize:
    """LogNormalize transform."""

    @pytest.mark.parametrize("target_sum", [1e4, 1e6, 50.0])
    def test_expm1_sums_to_target(self, small_counts, target_sum):
        normalized = LogNormalize(target_sum=target_sum).run(small_counts)
        np.testing.assert_allclose(
            np.expm1(normalized.data).sum(axis=0), target_sum, rtol=1e-10
        )

    def test_shape_and_flags(self, small_counts, small_normalized):
        assert small_normalized.shape == small_counts.shape
        assert small_normalized.flags == ProcessingFlag.LOG_NORMALIZED
        assert small_normalized.parent is small_counts
        assert small_normalized.lineage[-1].startswith("LogNormalize(")

    def test_metadata_carried_over(self, small_counts, small_normalized):
        pd.testing.assert_frame_equal(
            small_normalized.cell_metadata, small_counts.cell_metadata
        )

    def test_double_application_rejected(self, small_normalized):
        with pytest.raises(InvalidInputError, match="not idempotent"):
            LogNormalize().run(small_normalized)

    def test_validate_reports_log_normalized_input(self, small_normalized, small_counts):
        errors = LogNormalize().validate(small_normalized)
        assert any("not idempotent" in e for e in errors)
        assert LogNormalize().validate(small_counts) == []

    def test_zero_total_cell_rejected(self):
        data = np.array([[1, 0, 2], [3, 0, 1]], dtype=float)
        matrix = ExpressionMatrix(data, pd.Index(["g1", "g2"]), pd.Index(["c1", "c2", "c3"]))
        with pytest.raises(InvalidInputError, match="zero total counts"):
            LogNormalize().run(matrix)

    def test_input_not_modified(self, small_counts):
        before = small_counts.data.copy()
        LogNormalize().run(small_counts)
        np.testing.assert_array_equal(small_counts.data, before)

    def test_invalid_target_sum(self):
        with pytest.raises(ConfigurationError):
            LogNormalize(target_sum=0)


class TestFindVariableGenes:
    """Binned dispersion feature selection."""

    def test_requires_log_normalized(self, small_counts):
        with pytest.raises(InvalidInputError, match="log-normalized"):
            find_variable_genes(small_counts)

    def test_inconsistent_bounds(self, small_normalized):
        with pytest.raises(ConfigurationError):
            find_variable_genes(small_normalized, mean_low=3.0, mean_high=1.0)

    def test_table_covers_every_gene(self, small_normalized, small_selection):
        table = small_selection.table
        assert list(table.index) == list(small_normalized.gene_ids)
        assert set(table.columns) == {"mean", "dispersion", "dispersion_scaled", "bin", "variable"}

    def test_selected_genes_meet_thresholds(self, small_selection):
        table = small_selection.table.loc[list(small_selection.genes)]
        assert (table["mean"] >= 0.0125).all()
        assert (table["mean"] <= small_selection.params["mean_high"]).all()
        assert (table["dispersion_scaled"] > 0.5).all()
        assert table["variable"].all()
        assert small_selection.n_selected == int(small_selection.table["variable"].sum())

    def test_ordered_by_scaled_dispersion(self, small_selection):
        scaled = small_selection.table.loc[list(small_selection.genes), "dispersion_scaled"].values
        assert np.all(np.diff(scaled) <= 0)

    def test_marker_genes_selected(self, small_selection):
        markers = [g for g in small_selection.table.index if g.startswith("STATE")]
        selected = set(small_selection.genes)
        recovered = np.mean([g in selected for g in markers])
        assert recovered >= 0.75

    def test_bins_are_quantiles(self, small_normalized):
        selection = find_variable_genes(small_normalized, n_bins=10)
        bins = selection.table["bin"]
        expressed = bins[bins >= 0]
        assert expressed.nunique() <= 10
        assert expressed.value_counts().max() <= 2 * expressed.value_counts().min() + 2

    def test_unexpressed_genes_never_variable(self):
        rng = np.random.default_rng(0)
        counts = rng.poisson(5.0, size=(20, 30)).astype(float)
        counts[0] = 0.0
        matrix = ExpressionMatrix(
            counts,
            pd.Index([f"g{i}" for i in range(20)]),
            pd.Index([f"c{i}" for i in range(30)]),
        )
        selection = find_variable_genes(LogNormalize().run(matrix), mean_low=0.0, dispersion_cutoff=-10)
        assert "g0" not in selection.genes
        assert selection.table.loc["g0", "bin"] == -1

    def test_constant_genes_get_zero_z(self):
        counts = np.full((6, 10), 4.0)
        matrix = ExpressionMatrix(
            counts,
            pd.Index([f"g{i}" for i in range(6)]),
            pd.Index([f"c{i}" for i in range(10)]),
        )
        selection = find_variable_genes(LogNormalize().run(matrix))
        np.testing.assert_array_equal(selection.table["dispersion_scaled"].values, 0.0)
        assert selection.n_selected == 0

    @pytest.mark.parametrize("cutoff", [0.0, 0.5, 1.5])
    def test_higher_cutoff_selects_subset(self, small_normalized, cutoff):
        loose = find_variable_genes(small_normalized, dispersion_cutoff=cutoff)
        strict = find_variable_genes(small_normalized, dispersion_cutoff=cutoff + 0.5)
        assert set(strict.genes) <= set(loose.genes)

    def test_parallel_matches_serial(self, small_normalized):
        serial = find_variable_genes(small_normalized, n_jobs=1)
        parallel = find_variable_genes(small_normalized, n_jobs=2)
        assert serial.genes == parallel.genes

    def test_selection_tied_to_source_matrix(self, small_normalized, small_selection):
        assert small_selection.matches(small_normalized)
        subset = small_normalized.select_cells(small_normalized.cell_ids[:100])
        assert not small_selection.matches(subset)

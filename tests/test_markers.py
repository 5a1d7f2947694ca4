"""Tests for one-vs-rest marker ranking."""

import numpy as np
import pandas as pd
import pytest

from cellstate.core.matrix import ExpressionMatrix
from cellstate.exceptions import ConfigurationError, InvalidInputError
from cellstate.stats.markers import MARKER_COLUMNS, find_markers
from cellstate.stats.normalization import LogNormalize


@pytest.fixture
def two_groups():
    """
    20 vs 20 cells. UP is high in group A, DOWN is low in A, ONLY is
    detected in A alone and RARE is almost never seen.
    """
    rng = np.random.default_rng(0)
    n_background = 30
    in_a = np.repeat([True, False], 20)

    counts = rng.poisson(2.0, size=(n_background + 4, 40)).astype(float)
    counts[0] = np.where(in_a, rng.poisson(20.0, 40), rng.poisson(1.0, 40))
    counts[1] = np.where(in_a, 0.0, rng.poisson(10.0, 40))
    counts[2] = 0.0
    counts[2, 25] = 1.0
    counts[3] = np.where(in_a, rng.poisson(5.0, 40) + 1.0, 0.0)

    genes = pd.Index(["UP", "DOWN", "RARE", "ONLY"] + [f"BG{i:02d}" for i in range(n_background)])
    cells = pd.Index([f"cell_{i:02d}" for i in range(40)])
    raw = ExpressionMatrix(counts, genes, cells)
    labels = pd.Series(np.where(in_a, "A", "B"), index=cells)
    return raw, LogNormalize().run(raw), labels


class TestFindMarkers:

    def test_columns_and_clusters(self, two_groups):
        raw, normalized, labels = two_groups
        table = find_markers(normalized, labels, raw=raw)
        assert list(table.frame.columns) == MARKER_COLUMNS
        assert table.clusters == ["A", "B"]

    def test_up_and_down_markers(self, two_groups):
        _, normalized, labels = two_groups
        frame = find_markers(normalized, labels).for_cluster("A").frame.set_index("gene")

        assert frame.loc["UP", "avg_logFC"] > 1.0
        assert frame.loc["DOWN", "avg_logFC"] < -1.0
        assert frame.loc["UP", "p_val_adj"] < 1e-4
        assert frame.loc["DOWN", "pct_in"] == 0.0
        assert frame.loc["DOWN", "pct_out"] == 1.0

    def test_exclusive_gene(self, two_groups):
        _, normalized, labels = two_groups
        row = find_markers(normalized, labels).for_cluster("A").frame.set_index("gene").loc["ONLY"]
        assert row["pct_in"] == 1.0
        assert row["pct_out"] == 0.0
        assert row["avg_logFC"] > 0

    def test_top_ranked_are_true_markers(self, two_groups):
        _, normalized, labels = two_groups
        table = find_markers(normalized, labels)
        assert set(table.for_cluster("A").frame["gene"][:3]) == {"UP", "DOWN", "ONLY"}

    def test_rare_gene_filtered_by_min_pct(self, two_groups):
        _, normalized, labels = two_groups
        table = find_markers(normalized, labels, min_pct=0.1)
        assert "RARE" not in set(table.frame["gene"])

    def test_only_positive(self, two_groups):
        _, normalized, labels = two_groups
        frame = find_markers(normalized, labels, only_positive=True).frame
        assert (frame["avg_logFC"] >= 0.25).all()
        a_genes = set(frame.loc[frame["cluster"] == "A", "gene"])
        assert "UP" in a_genes and "DOWN" not in a_genes

    @pytest.mark.parametrize("threshold", [0.0, 0.25, 1.0])
    def test_logfc_threshold(self, two_groups, threshold):
        _, normalized, labels = two_groups
        frame = find_markers(normalized, labels, logfc_threshold=threshold).frame
        assert (frame["avg_logFC"].abs() > threshold).all()

    def test_logfc_equal_to_threshold_excluded(self, two_groups):
        _, normalized, labels = two_groups
        full = find_markers(normalized, labels, logfc_threshold=0.0).for_cluster("A").frame
        value = float(full.set_index("gene").loc["UP", "avg_logFC"])

        strict = find_markers(normalized, labels, logfc_threshold=value).for_cluster("A").frame
        assert "UP" not in set(strict["gene"])
        assert (strict["avg_logFC"].abs() > value).all()

    def test_bonferroni_over_all_genes(self, two_groups):
        _, normalized, labels = two_groups
        frame = find_markers(normalized, labels).frame
        expected = np.minimum(frame["p_val"] * normalized.n_genes, 1.0)
        np.testing.assert_allclose(frame["p_val_adj"], expected)

    def test_rows_sorted_within_cluster(self, two_groups):
        _, normalized, labels = two_groups
        table = find_markers(normalized, labels, logfc_threshold=0.0)
        for cluster in table.clusters:
            p = table.for_cluster(cluster).frame["p_val"].to_numpy()
            assert np.all(np.diff(p) >= 0)

    def test_single_cluster_request(self, two_groups):
        _, normalized, labels = two_groups
        table = find_markers(normalized, labels, cluster="B")
        assert table.clusters == ["B"]

    def test_parallel_matches_serial(self, two_groups):
        _, normalized, labels = two_groups
        serial = find_markers(normalized, labels).frame
        parallel = find_markers(normalized, labels, n_jobs=2).frame
        pd.testing.assert_frame_equal(serial, parallel)

    def test_labels_aligned_by_cell_id(self, two_groups):
        _, normalized, labels = two_groups
        forward = find_markers(normalized, labels).frame
        backward = find_markers(normalized, labels.iloc[::-1]).frame
        pd.testing.assert_frame_equal(forward, backward)

    def test_unknown_cluster(self, two_groups):
        _, normalized, labels = two_groups
        with pytest.raises(InvalidInputError, match="Unknown cluster"):
            find_markers(normalized, labels, cluster="C")

    def test_single_cluster_rejected(self, two_groups):
        _, normalized, labels = two_groups
        with pytest.raises(InvalidInputError, match="at least two clusters"):
            find_markers(normalized, pd.Series("A", index=labels.index))

    def test_missing_labels(self, two_groups):
        _, normalized, labels = two_groups
        with pytest.raises(InvalidInputError, match="No cluster label"):
            find_markers(normalized, labels.iloc[:10])

    def test_requires_unscaled_normalized(self, two_groups):
        raw, _, labels = two_groups
        with pytest.raises(InvalidInputError, match="log-normalized"):
            find_markers(raw, labels)

    def test_invalid_thresholds(self, two_groups):
        _, normalized, labels = two_groups
        with pytest.raises(ConfigurationError):
            find_markers(normalized, labels, min_pct=2.0)


class TestMarkerTable:

    def test_sorted_by(self, two_groups):
        _, normalized, labels = two_groups
        table = find_markers(normalized, labels).sorted_by("avg_logFC", ascending=False)
        assert np.all(np.diff(table.frame["avg_logFC"].to_numpy()) <= 0)

    def test_sorted_by_unknown_column(self, two_groups):
        _, normalized, labels = two_groups
        with pytest.raises(InvalidInputError, match="Unknown marker column"):
            find_markers(normalized, labels).sorted_by("score")

    def test_top(self, two_groups):
        _, normalized, labels = two_groups
        table = find_markers(normalized, labels, logfc_threshold=0.0)
        top = table.top(1)
        assert list(top["cluster"]) == table.clusters
        assert len(table) >= len(top)

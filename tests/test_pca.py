"""Tests for PCA over the scaled variable-gene matrix."""

import numpy as np
import pytest

from cellstate.core.embedding import EmbeddingKind
from cellstate.exceptions import ConfigurationError, InvalidInputError
from cellstate.reduction.pca import run_pca


class TestRunPCA:

    def test_shapes_and_labels(self, small_scaled, small_selection):
        emb = run_pca(small_scaled, small_selection.genes, n_components=10)
        assert emb.kind is EmbeddingKind.PCA
        assert emb.coordinates.shape == (small_scaled.n_cells, 10)
        assert list(emb.coordinates.columns[:2]) == ["PC_1", "PC_2"]
        assert list(emb.cell_ids) == list(small_scaled.cell_ids)
        assert list(emb.loadings.index) == list(small_selection.genes)
        assert emb.loadings.shape == (small_selection.n_selected, 10)

    def test_variance_ordered(self, small_scaled, small_selection):
        emb = run_pca(small_scaled, small_selection.genes, n_components=10)
        assert np.all(np.diff(emb.values) <= 1e-12)
        ratios = emb.params["variance_ratio"]
        assert 0 < sum(ratios) <= 1.0 + 1e-12

    def test_scores_orthogonal(self, small_scaled, small_selection):
        coords = run_pca(small_scaled, small_selection.genes, n_components=8).as_array()
        gram = coords.T @ coords
        off_diagonal = gram - np.diag(np.diag(gram))
        assert np.abs(off_diagonal).max() < 1e-8 * np.abs(gram).max()

    def test_sign_convention(self, small_scaled, small_selection):
        emb = run_pca(small_scaled, small_selection.genes, n_components=5)
        loadings = emb.loadings.to_numpy()
        largest = loadings[np.argmax(np.abs(loadings), axis=0), np.arange(5)]
        assert np.all(largest > 0)

    def test_deterministic(self, small_scaled, small_selection):
        first = run_pca(small_scaled, small_selection.genes, n_components=5)
        second = run_pca(small_scaled, small_selection.genes, n_components=5)
        np.testing.assert_array_equal(first.as_array(), second.as_array())

    def test_randomized_solver_reproducible_with_seed(self, small_scaled, small_selection):
        first = run_pca(small_scaled, small_selection.genes, n_components=5, solver="randomized", seed=3)
        second = run_pca(small_scaled, small_selection.genes, n_components=5, solver="randomized", seed=3)
        np.testing.assert_allclose(first.as_array(), second.as_array())

    def test_randomized_solver_requires_seed(self, small_scaled, small_selection):
        with pytest.raises(ConfigurationError, match="seed"):
            run_pca(small_scaled, small_selection.genes, solver="randomized")

    def test_unknown_solver(self, small_scaled, small_selection):
        with pytest.raises(ConfigurationError):
            run_pca(small_scaled, small_selection.genes, n_components=2, solver="arpack")

    def test_separates_states(self, small_scaled, small_selection):
        emb = run_pca(small_scaled, small_selection.genes, n_components=5)
        coords = emb.as_array(2)
        states = small_scaled.cell_metadata["state"].to_numpy()

        centroids = np.array([coords[states == s].mean(axis=0) for s in range(3)])
        spread = np.mean([coords[states == s].std(axis=0).mean() for s in range(3)])
        gaps = [
            np.linalg.norm(centroids[a] - centroids[b])
            for a in range(3) for b in range(a + 1, 3)
        ]
        assert min(gaps) > 2 * spread

    def test_requires_scaled_matrix(self, small_normalized, small_selection):
        with pytest.raises(InvalidInputError, match="scaled"):
            run_pca(small_normalized, small_selection.genes)

    def test_missing_genes(self, small_scaled):
        with pytest.raises(InvalidInputError, match="not in the scaled matrix"):
            run_pca(small_scaled, ["NOT_A_GENE"], n_components=1)

    def test_empty_gene_list(self, small_scaled):
        with pytest.raises(InvalidInputError):
            run_pca(small_scaled, [])

    def test_too_many_components(self, small_scaled, small_selection):
        with pytest.raises(ConfigurationError, match="n_components"):
            run_pca(small_scaled, small_selection.genes, n_components=small_selection.n_selected + 1)

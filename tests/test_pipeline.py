"""Tests for stage functions, run_pipeline and subset_state."""

import logging

import numpy as np
import pandas as pd
import pytest
from sklearn.metrics import adjusted_rand_score

from cellstate import pipeline
from cellstate.config import PipelineConfig
from cellstate.core.embedding import EmbeddingKind
from cellstate.core.state import PipelineState
from cellstate.exceptions import ConfigurationError, InvalidInputError
from cellstate.stats.normalization import find_variable_genes

from conftest import generate_synthetic_counts


def _config(**sections):
    values = {
        "features": {"mean_high": 8.0},
        "pca": {"n_components": 10},
        "neighbors": {"k": 10, "n_dims": 10},
        "clustering": {"resolution": 0.5, "n_starts": 2},
        "alignment": {"batch_key": "batch", "n_components": 5},
        "tsne": {"perplexity": 10, "n_iter": 250},
        "diffusion": {"n_components": 3, "k": 5},
    }
    values.update(sections)
    return PipelineConfig.from_dict(values)


@pytest.fixture(scope="module")
def counts():
    return generate_synthetic_counts(n_genes=300, n_cells=150, n_markers=20, n_mito=5, seed=1)


@pytest.fixture(scope="module")
def final_state(counts):
    return pipeline.run_pipeline(counts, _config(), run_qc=False)


class TestRunPipeline:

    def test_stage_order(self, final_state):
        assert final_state.stages == [
            "normalize", "select_features", "scale", "run_pca", "align_batches",
            "build_graph", "cluster", "run_tsne", "find_markers",
        ]

    def test_all_results_present(self, final_state):
        assert set(final_state.embeddings) == {
            EmbeddingKind.PCA, EmbeddingKind.CCA, EmbeddingKind.CCA_ALIGNED, EmbeddingKind.TSNE,
        }
        assert final_state.graph is not None
        assert final_state.features.n_selected > 10
        assert len(final_state.markers) > 0

    def test_recovers_states(self, final_state):
        truth = final_state.raw.cell_metadata["state"].values
        labels = final_state.clusters.labels.loc[final_state.cell_ids].values
        assert adjusted_rand_score(truth, labels) > 0.9

    def test_cluster_column_on_every_matrix(self, final_state):
        labels = final_state.clusters.labels
        for matrix in (final_state.raw, final_state.normalized, final_state.scaled):
            np.testing.assert_array_equal(
                matrix.cell_metadata["cluster"].values, labels.loc[matrix.cell_ids].values
            )

    def test_labelling_keeps_lineage(self, final_state):
        assert final_state.features.matches(final_state.normalized)
        assert final_state.normalized.parent is not None

    def test_top_markers_are_state_genes(self, final_state):
        top = final_state.markers.top(5)
        assert top["gene"].str.startswith("STATE").all()

    def test_history_records_params(self, final_state):
        records = {r.stage: r.params for r in final_state.history}
        assert records["cluster"]["resolution"] == 0.5
        assert records["cluster"]["n_clusters"] == final_state.clusters.n_clusters
        assert records["normalize"]["target_sum"] == 1e4

    def test_single_batch_skips_alignment(self, counts, caplog):
        one_batch = counts.with_metadata(batch=["b0"] * counts.n_cells)
        with caplog.at_level(logging.WARNING):
            state = pipeline.run_pipeline(one_batch, _config(), run_qc=False)
        assert "align_batches" not in state.stages
        assert "Skipping batch alignment" in caplog.text
        assert state.embedding("tsne").params["source"] == "pca"

    def test_tsne_lays_out_aligned_space(self, final_state):
        assert final_state.embedding("tsne").params["source"] == "cca.aligned"

    def test_graph_built_in_aligned_space(self, counts):
        config = _config(neighbors={"k": 10, "n_dims": 2, "embedding": "cca.aligned"})
        state = pipeline.run_pipeline(counts, config, run_qc=False)
        assert state.graph.source is EmbeddingKind.CCA_ALIGNED
        assert state.stages.index("align_batches") < state.stages.index("build_graph")
        truth = state.raw.cell_metadata["state"].values
        labels = state.clusters.labels.loc[state.cell_ids].values
        assert adjusted_rand_score(truth, labels) > 0.9

    def test_aligned_graph_needs_two_batches(self, counts):
        one_batch = counts.with_metadata(batch=["b0"] * counts.n_cells)
        config = _config(neighbors={"k": 10, "n_dims": 5, "embedding": "cca.aligned"})
        with pytest.raises(InvalidInputError, match="at least two"):
            pipeline.run_pipeline(one_batch, config, run_qc=False)

    def test_with_qc(self, counts):
        config = _config(qc={"min_genes": 50, "min_cells": 3})
        state = pipeline.run_pipeline(counts, config)
        assert state.stages[0] == "qc"
        assert "percent_mito" in state.raw.cell_metadata.columns
        assert state.raw.parent is not None


class TestStages:

    def test_stages_do_not_modify_input(self, counts):
        start = PipelineState(raw=counts)
        after = pipeline.normalize(start, _config())
        assert start.normalized is None
        assert start.history == ()
        assert after.normalized is not None
        assert after.raw is counts

    def test_double_normalization_rejected(self, counts):
        state = pipeline.normalize(PipelineState(raw=counts), _config())
        with pytest.raises(InvalidInputError, match="not idempotent"):
            pipeline.normalize(state, _config())

    def test_qc_after_normalization_rejected(self, counts):
        state = pipeline.normalize(PipelineState(raw=counts), _config())
        with pytest.raises(InvalidInputError, match="before normalization"):
            pipeline.qc(state, _config())

    def test_missing_prerequisite(self, counts):
        with pytest.raises(InvalidInputError, match="scaled is not available"):
            pipeline.run_pca(PipelineState(raw=counts), _config())

    def test_missing_embedding(self, final_state):
        config = _config(neighbors={"k": 10, "n_dims": 5, "embedding": "diffmap"})
        with pytest.raises(InvalidInputError, match="No 'diffmap' embedding"):
            pipeline.build_graph(final_state, config)

    def test_stale_feature_selection_rejected(self, counts):
        state = pipeline.normalize(PipelineState(raw=counts), _config())
        other = state.normalized.select_cells(state.cell_ids[:100])
        state = state.evolve("select_features", features=find_variable_genes(other, mean_high=8.0))
        with pytest.raises(InvalidInputError, match="different matrix"):
            pipeline.scale(state, _config())

    def test_graph_on_aligned_embedding(self, final_state):
        config = _config(neighbors={"k": 10, "n_dims": 5, "embedding": "cca.aligned"})
        state = pipeline.build_graph(final_state, config)
        assert state.graph.source is EmbeddingKind.CCA_ALIGNED
        assert final_state.graph.source is EmbeddingKind.PCA

    def test_align_requires_batch_key(self, final_state):
        config = _config(alignment={"batch_key": None})
        with pytest.raises(ConfigurationError, match="batch_key"):
            pipeline.align_batches(final_state, config)

    def test_markers_for_one_cluster(self, final_state):
        state = pipeline.find_markers(final_state, _config(), cluster=1)
        assert state.markers.clusters == [1]
        assert final_state.markers.clusters != [1]

    def test_invalid_config_rejected_before_work(self, final_state):
        config = _config()
        config.clustering.resolution = -1.0
        with pytest.raises(ConfigurationError, match="resolution"):
            pipeline.cluster(final_state, config)


class TestSubsetState:

    def test_subset_by_clusters(self, final_state):
        subset = pipeline.subset_state(final_state, clusters=[0, 1])
        keep = final_state.clusters.labels.isin([0, 1])
        assert subset.n_cells == int(keep.sum())
        assert set(subset.clusters.labels.unique()) == {0, 1}
        assert subset.raw.parent is final_state.raw
        assert subset.normalized.parent is final_state.normalized
        assert subset.stages[-1] == "subset"

    def test_subset_drops_population_results(self, final_state):
        subset = pipeline.subset_state(final_state, clusters=[0])
        assert subset.graph is None
        assert subset.features is None
        assert subset.markers is None
        for kind, emb in subset.embeddings.items():
            assert list(emb.cell_ids) == list(subset.cell_ids)
            pd.testing.assert_frame_equal(
                emb.coordinates, final_state.embeddings[kind].coordinates.loc[subset.cell_ids]
            )

    def test_subset_by_cells(self, final_state):
        cells = list(final_state.cell_ids[10:40])
        subset = pipeline.subset_state(final_state, cells=cells)
        assert list(subset.cell_ids) == cells
        np.testing.assert_array_equal(
            subset.scaled.data, final_state.scaled.data[:, 10:40]
        )

    def test_diffusion_on_subset(self, final_state):
        subset = pipeline.subset_state(final_state, clusters=[0, 1])
        result = pipeline.run_diffusion(subset, _config())
        dm = result.embedding("diffmap")
        assert dm.dim == 3
        assert list(dm.cell_ids) == list(subset.cell_ids)
        assert EmbeddingKind.DIFFMAP not in final_state.embeddings

    def test_diffusion_from_scaled_matrix(self, final_state):
        subset = pipeline.subset_state(final_state, clusters=[0])
        config = _config(diffusion={"n_components": 2, "k": 5, "embedding": None})
        dm = pipeline.run_diffusion(subset, config).embedding(EmbeddingKind.DIFFMAP)
        assert dm.params["source"] == "scaled"

    def test_recluster_subset(self, final_state):
        subset = pipeline.subset_state(final_state, clusters=[0, 1])
        state = pipeline.build_graph(subset, _config())
        state = pipeline.cluster(state, _config())
        assert state.clusters.labels.index.equals(subset.cell_ids)

    def test_exactly_one_selector(self, final_state):
        with pytest.raises(ConfigurationError, match="exactly one"):
            pipeline.subset_state(final_state)
        with pytest.raises(ConfigurationError, match="exactly one"):
            pipeline.subset_state(final_state, clusters=[0], cells=["cell_0000"])

    def test_unknown_cluster(self, final_state):
        with pytest.raises(InvalidInputError, match="Unknown clusters"):
            pipeline.subset_state(final_state, clusters=[99])

    def test_unknown_cells(self, final_state):
        with pytest.raises(InvalidInputError, match="not in the state"):
            pipeline.subset_state(final_state, cells=["cell_0000", "nope"])

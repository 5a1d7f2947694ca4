"""
Stage functions and the end-to-end pipeline.

Every stage takes a PipelineState and a PipelineConfig and returns a new
PipelineState; inputs are never modified. Stages check that what they need
has been computed and raise otherwise, so a stage either completes fully or
leaves no trace.

Standard order (run_pipeline):

    qc -> normalize -> select_features -> scale -> run_pca -> [align_batches]
       -> build_graph -> cluster -> run_tsne -> find_markers

align_batches runs when config.alignment.batch_key is set and the data has
at least two batches. Its aligned space then feeds the t-SNE layout, and
the graph when neighbors.embedding is "cca.aligned". run_diffusion is not
part of the standard order: it is meant for a continuous sub-population,
selected with subset_state.

Usage:
    >>> from cellstate import PipelineConfig, run_pipeline, subset_state, run_diffusion
    >>> config = load_config(Path("pipeline.yaml"))
    >>> state = run_pipeline(matrix, config)
    >>> lineage = subset_state(state, clusters=[0, 2])
    >>> lineage = run_diffusion(lineage, config)
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from cellstate.config import PipelineConfig
from cellstate.core.embedding import EmbeddingKind
from cellstate.core.matrix import ExpressionMatrix
from cellstate.core.state import PipelineState
from cellstate.exceptions import ConfigurationError, InvalidInputError
from cellstate.graph import louvain, neighbors
from cellstate.graph.louvain import ClusterAssignment
from cellstate.quality.qc import FilterCells, FilterGenes
from cellstate.reduction import cca, diffusion, pca, tsne
from cellstate.stats import markers
from cellstate.stats.normalization import LogNormalize, find_variable_genes
from cellstate.stats.scaling import ScaleData

logger = logging.getLogger(__name__)

__all__ = [
    'qc',
    'normalize',
    'select_features',
    'scale',
    'run_pca',
    'build_graph',
    'cluster',
    'align_batches',
    'run_tsne',
    'run_diffusion',
    'find_markers',
    'run_pipeline',
    'subset_state',
]


def _config(config: Optional[PipelineConfig]) -> PipelineConfig:
    if config is None:
        config = PipelineConfig()
    config.validate()
    return config


def qc(state: PipelineState, config: Optional[PipelineConfig] = None) -> PipelineState:
    """Filter genes detected in too few cells, then low-quality cells."""
    config = _config(config)
    c = config.qc
    if state.normalized is not None:
        raise InvalidInputError("qc must run before normalization")
    filtered = FilterGenes(min_cells=c.min_cells).run(state.raw)
    filtered = FilterCells(
        min_genes=c.min_genes,
        max_genes=c.max_genes,
        max_percent_mito=c.max_percent_mito,
        mito_prefix=c.mito_prefix,
    ).run(filtered)
    return state.evolve(
        "qc",
        {"n_genes": filtered.n_genes, "n_cells": filtered.n_cells, **vars(c)},
        raw=filtered,
    )


def normalize(state: PipelineState, config: Optional[PipelineConfig] = None) -> PipelineState:
    """Log-normalize the raw counts."""
    config = _config(config)
    if state.normalized is not None:
        raise InvalidInputError("state is already normalized; normalization is not idempotent")
    normalized = LogNormalize(target_sum=config.normalization.target_sum).run(state.raw)
    return state.evolve("normalize", vars(config.normalization), normalized=normalized)


def select_features(state: PipelineState, config: Optional[PipelineConfig] = None) -> PipelineState:
    """Select highly variable genes from the normalized matrix."""
    config = _config(config)
    c = config.features
    selection = find_variable_genes(
        state.require("normalized"),
        mean_low=c.mean_low,
        mean_high=c.mean_high,
        dispersion_cutoff=c.dispersion_cutoff,
        n_bins=c.n_bins,
        n_jobs=config.n_jobs,
    )
    return state.evolve(
        "select_features",
        {**vars(c), "n_selected": selection.n_selected},
        features=selection,
    )


def scale(state: PipelineState, config: Optional[PipelineConfig] = None) -> PipelineState:
    """Regress covariates and standardize the selected genes."""
    config = _config(config)
    normalized = state.require("normalized")
    selection = state.require("features")
    if not selection.matches(normalized):
        raise InvalidInputError(
            "Feature selection was computed from a different matrix; rerun select_features"
        )
    if selection.n_selected == 0:
        raise InvalidInputError("No variable genes selected; relax the feature-selection thresholds")
    scaled = ScaleData(
        genes=selection.genes,
        covariates=config.scaling.covariates,
        max_value=config.scaling.max_value,
    ).run(normalized)
    return state.evolve("scale", vars(config.scaling), scaled=scaled)


def run_pca(state: PipelineState, config: Optional[PipelineConfig] = None) -> PipelineState:
    """PCA over the scaled variable genes."""
    config = _config(config)
    c = config.pca
    scaled = state.require("scaled")
    embedding = pca.run_pca(
        scaled,
        genes=list(scaled.gene_ids),
        n_components=c.n_components,
        solver=c.solver,
        seed=c.seed,
    )
    return state.evolve("run_pca", vars(c), embeddings=state.with_embeddings(embedding))


def build_graph(state: PipelineState, config: Optional[PipelineConfig] = None) -> PipelineState:
    """SNN graph in the configured embedding."""
    config = _config(config)
    c = config.neighbors
    graph = neighbors.build_snn_graph(
        state.embedding(c.embedding),
        k=c.k,
        n_dims=c.n_dims,
        prune=c.prune,
        edge_mode=c.edge_mode,
        n_jobs=config.n_jobs,
    )
    return state.evolve("build_graph", {**vars(c), "n_edges": graph.n_edges}, graph=graph)


def cluster(state: PipelineState, config: Optional[PipelineConfig] = None) -> PipelineState:
    """Louvain clustering; labels go to every matrix's `cluster` column at once."""
    config = _config(config)
    c = config.clustering
    graph = state.require("graph")
    assignment = louvain.cluster_graph(
        graph,
        resolution=c.resolution,
        seed=c.seed,
        n_starts=c.n_starts,
        max_levels=c.max_levels,
        threshold=c.threshold,
        n_jobs=config.n_jobs,
    )
    labels = assignment.labels
    if not labels.index.equals(state.cell_ids):
        raise InvalidInputError("Graph cells do not match the state's cells; rebuild the graph")

    labelled = {}
    for name in ("raw", "normalized", "scaled"):
        matrix = getattr(state, name)
        if matrix is not None:
            labelled[name] = matrix.with_metadata(cluster=labels)
    return state.evolve(
        "cluster",
        {**vars(c), "n_clusters": assignment.n_clusters, "modularity": assignment.modularity},
        clusters=assignment,
        **labelled,
    )


def align_batches(state: PipelineState, config: Optional[PipelineConfig] = None) -> PipelineState:
    """CCA across batches, then quantile alignment of the canonical dims."""
    config = _config(config)
    c = config.alignment
    if c.batch_key is None:
        raise ConfigurationError("align_batches requires alignment.batch_key")
    scaled = state.require("scaled")
    canonical = cca.run_cca(
        scaled,
        batch_key=c.batch_key,
        n_components=c.n_components,
        max_iter=c.max_iter,
        tol=c.tol,
    )
    aligned = cca.align_subspace(canonical, scaled.metadata_column(c.batch_key))
    return state.evolve(
        "align_batches",
        vars(c),
        embeddings=state.with_embeddings(canonical, aligned),
    )


def run_tsne(state: PipelineState, config: Optional[PipelineConfig] = None) -> PipelineState:
    """2-D t-SNE layout of the configured embedding (aligned space if present by default)."""
    config = _config(config)
    c = config.tsne
    if c.embedding is not None:
        source = state.embedding(c.embedding)
    elif EmbeddingKind.CCA_ALIGNED in state.embeddings:
        source = state.embedding(EmbeddingKind.CCA_ALIGNED)
    else:
        source = state.embedding(EmbeddingKind.PCA)
    layout = tsne.run_tsne(
        source,
        n_dims=min(c.n_dims, source.dim),
        perplexity=c.perplexity,
        n_iter=c.n_iter,
        learning_rate=c.learning_rate,
        seed=c.seed,
        method=c.method,
        n_jobs=config.n_jobs,
    )
    return state.evolve("run_tsne", vars(c), embeddings=state.with_embeddings(layout))


def run_diffusion(state: PipelineState, config: Optional[PipelineConfig] = None) -> PipelineState:
    """
    Diffusion map of the state's cells.

    Uses the configured embedding, or the scaled matrix when
    config.diffusion.embedding is None.
    """
    config = _config(config)
    c = config.diffusion
    source = state.require("scaled") if c.embedding is None else state.embedding(c.embedding)
    embedding = diffusion.run_diffusion_map(
        source,
        n_components=c.n_components,
        bandwidth=c.bandwidth,
        k=c.k,
        bandwidth_value=c.bandwidth_value,
        alpha=c.alpha,
        min_bandwidth=c.min_bandwidth,
        n_dims=c.n_dims,
    )
    return state.evolve("run_diffusion", vars(c), embeddings=state.with_embeddings(embedding))


def find_markers(
    state: PipelineState,
    config: Optional[PipelineConfig] = None,
    cluster: Optional[Any] = None,
) -> PipelineState:
    """Marker genes for every cluster (or one) against the rest."""
    config = _config(config)
    c = config.markers
    table = markers.find_markers(
        state.require("normalized"),
        state.require("clusters").labels,
        raw=state.raw,
        cluster=cluster,
        min_pct=c.min_pct,
        logfc_threshold=c.logfc_threshold,
        only_positive=c.only_positive,
        n_jobs=config.n_jobs,
    )
    return state.evolve(
        "find_markers",
        {**vars(c), "cluster": cluster, "n_markers": len(table)},
        markers=table,
    )


def run_pipeline(
    matrix: ExpressionMatrix,
    config: Optional[PipelineConfig] = None,
    run_qc: bool = True,
) -> PipelineState:
    """
    Run the standard analysis on a raw count matrix.

    Args:
        matrix: Raw counts with cell metadata (including the batch column
            when alignment is configured)
        config: Pipeline configuration (defaults if None)
        run_qc: Apply QC filters first

    Returns:
        Final PipelineState; intermediate results are its fields

    Raises:
        CellStateError: From the first stage that fails
    """
    config = _config(config)
    state = PipelineState(raw=matrix)
    logger.info(f"Pipeline start: {matrix.n_genes} genes × {matrix.n_cells} cells")

    if run_qc:
        state = qc(state, config)
    for stage in (normalize, select_features, scale, run_pca):
        state = stage(state, config)

    batch_key = config.alignment.batch_key
    if batch_key is not None:
        n_batches = state.raw.metadata_column(batch_key).nunique()
        if n_batches >= 2:
            state = align_batches(state, config)
        elif config.neighbors.embedding in (EmbeddingKind.CCA.value, EmbeddingKind.CCA_ALIGNED.value):
            raise InvalidInputError(
                f"neighbors.embedding='{config.neighbors.embedding}' needs at least two "
                f"batches in '{batch_key}', found {n_batches}"
            )
        else:
            logger.warning(f"Skipping batch alignment: '{batch_key}' has {n_batches} batch")

    for stage in (build_graph, cluster, run_tsne):
        state = stage(state, config)
    state = find_markers(state, config)
    logger.info(f"Pipeline done: {state!r}")
    return state


def subset_state(
    state: PipelineState,
    clusters: Optional[Sequence[Any]] = None,
    cells: Optional[Sequence[str]] = None,
) -> PipelineState:
    """
    Restrict a state to some clusters or cells.

    Matrices become lineage subsets of the originals (parent set) and
    embeddings keep their coordinates for the retained cells. The graph and
    marker table are dropped because they describe the full population, and
    the feature selection is dropped because it is tied to the full
    normalized matrix; rerun those stages on the subset as needed.

    Args:
        state: Source state
        clusters: Cluster ids to keep (requires clustering)
        cells: Cell ids to keep

    Raises:
        ConfigurationError: Unless exactly one of clusters / cells is given
        InvalidInputError: If a cluster is unknown or the selection is empty
    """
    if (clusters is None) == (cells is None):
        raise ConfigurationError("subset_state takes exactly one of clusters or cells")

    if clusters is not None:
        assignment = state.require("clusters")
        unknown = sorted(set(clusters) - set(assignment.labels.unique()))
        if unknown:
            raise InvalidInputError(f"Unknown clusters {unknown}")
        mask = assignment.labels.loc[state.cell_ids].isin(list(clusters)).values
        keep = state.cell_ids[mask]
    else:
        keep = state.cell_ids[state.cell_ids.isin(list(cells))]
        missing = len(set(cells)) - len(keep)
        if missing:
            raise InvalidInputError(f"{missing} requested cells are not in the state")
    if len(keep) == 0:
        raise InvalidInputError("Subset selection is empty")

    mask = state.cell_ids.isin(keep)
    subset = {}
    for name in ("raw", "normalized", "scaled"):
        matrix = getattr(state, name)
        if matrix is not None:
            subset[name] = matrix.select_cells(mask)

    assignment = None
    if state.clusters is not None:
        old = state.clusters
        assignment = ClusterAssignment(
            labels=old.labels.loc[keep],
            modularity=old.modularity,
            resolution=old.resolution,
            seed=old.seed,
            params={**old.params, "subset_of": state.n_cells},
        )

    return state.evolve(
        "subset",
        {"n_cells": len(keep), "clusters": None if clusters is None else list(clusters)},
        embeddings={kind: emb.subset(keep) for kind, emb in state.embeddings.items()},
        features=None,
        graph=None,
        markers=None,
        clusters=assignment,
        **subset,
    )


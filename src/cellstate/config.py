"""
Configuration for the cellstate pipeline.

Every tunable threshold is an explicit dataclass field with a documented
default; nothing falls back to a hidden value. Configurations can be built in
code or loaded from YAML/JSON files whose structure mirrors the dataclasses:

    normalization:
      target_sum: 10000
    features:
      mean_low: 0.0125
      mean_high: 3.0
      dispersion_cutoff: 0.5
    clustering:
      resolution: 0.8
      seed: 0

Defaults for covariates, clustering resolution and marker thresholds are
starting points, not tuned values; they are expected to be adjusted per
dataset.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from cellstate.core.embedding import EmbeddingKind
from cellstate.exceptions import ConfigurationError

__all__ = [
    'QCConfig',
    'NormalizationConfig',
    'FeatureSelectionConfig',
    'ScalingConfig',
    'PCAConfig',
    'NeighborConfig',
    'ClusteringConfig',
    'AlignmentConfig',
    'TSNEConfig',
    'DiffusionConfig',
    'MarkerConfig',
    'PipelineConfig',
    'load_config',
]


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigurationError(message)


@dataclass
class QCConfig:
    """Cell and gene quality filters."""
    min_genes: int = 200
    max_genes: Optional[int] = None
    max_percent_mito: Optional[float] = None
    min_cells: int = 3
    mito_prefix: str = "MT-"

    def validate(self) -> None:
        _require(self.min_genes >= 0, "qc.min_genes must be >= 0")
        _require(self.min_cells >= 0, "qc.min_cells must be >= 0")
        if self.max_genes is not None:
            _require(self.max_genes > self.min_genes, "qc.max_genes must exceed qc.min_genes")
        if self.max_percent_mito is not None:
            _require(0 < self.max_percent_mito <= 100, "qc.max_percent_mito must be in (0, 100]")


@dataclass
class NormalizationConfig:
    """Library-size normalization."""
    target_sum: float = 1e4

    def validate(self) -> None:
        _require(self.target_sum > 0, "normalization.target_sum must be > 0")


@dataclass
class FeatureSelectionConfig:
    """
    Variable-gene selection thresholds.

    mean_low / mean_high bound log1p(mean) of normalized expression;
    dispersion_cutoff bounds the within-bin z-scored log dispersion.
    """
    mean_low: float = 0.0125
    mean_high: float = 3.0
    dispersion_cutoff: float = 0.5
    n_bins: int = 10

    def validate(self) -> None:
        _require(self.mean_low < self.mean_high, "features.mean_low must be < features.mean_high")
        _require(self.n_bins >= 1, "features.n_bins must be >= 1")


@dataclass
class ScalingConfig:
    """Covariate regression and standardization."""
    covariates: List[str] = field(default_factory=list)
    max_value: Optional[float] = 10.0

    def validate(self) -> None:
        if self.max_value is not None:
            _require(self.max_value > 0, "scaling.max_value must be > 0")


@dataclass
class PCAConfig:
    """Linear reduction."""
    n_components: int = 30
    solver: str = "full"
    seed: Optional[int] = None

    def validate(self) -> None:
        _require(self.n_components >= 1, "pca.n_components must be >= 1")
        _require(self.solver in ("full", "randomized"), "pca.solver must be 'full' or 'randomized'")
        if self.solver == "randomized":
            _require(self.seed is not None, "pca.seed is required for the randomized solver")


@dataclass
class NeighborConfig:
    """Shared-nearest-neighbor graph construction."""
    k: int = 20
    n_dims: int = 10
    prune: float = 1 / 15
    edge_mode: str = "either"
    embedding: str = "pca"

    def validate(self) -> None:
        _require(self.k >= 2, "neighbors.k must be >= 2")
        _require(self.n_dims >= 1, "neighbors.n_dims must be >= 1")
        _require(0 <= self.prune < 1, "neighbors.prune must be in [0, 1)")
        _require(
            self.edge_mode in ("either", "mutual", "shared"),
            "neighbors.edge_mode must be 'either', 'mutual' or 'shared'",
        )


@dataclass
class ClusteringConfig:
    """Louvain modularity clustering."""
    resolution: float = 0.8
    seed: int = 0
    n_starts: int = 10
    max_levels: int = 10
    threshold: float = 1e-7

    def validate(self) -> None:
        _require(self.resolution > 0, "clustering.resolution must be > 0")
        _require(self.n_starts >= 1, "clustering.n_starts must be >= 1")
        _require(self.max_levels >= 1, "clustering.max_levels must be >= 1")
        _require(self.threshold >= 0, "clustering.threshold must be >= 0")


@dataclass
class AlignmentConfig:
    """CCA batch alignment; skipped when batch_key is None."""
    batch_key: Optional[str] = None
    n_components: int = 20
    max_iter: int = 100
    tol: float = 1e-6

    def validate(self) -> None:
        _require(self.n_components >= 1, "alignment.n_components must be >= 1")
        _require(self.max_iter >= 1, "alignment.max_iter must be >= 1")
        _require(self.tol > 0, "alignment.tol must be > 0")


@dataclass
class TSNEConfig:
    """
    2-D visualization layout.

    embedding=None lays out the batch-aligned space when alignment has run
    and the PCA space otherwise.
    """
    perplexity: float = 30.0
    n_iter: int = 1000
    learning_rate: float = 200.0
    seed: int = 0
    n_dims: int = 10
    method: str = "barnes_hut"
    embedding: Optional[str] = None

    def validate(self) -> None:
        _require(self.perplexity > 1, "tsne.perplexity must be > 1")
        _require(self.n_iter >= 250, "tsne.n_iter must be >= 250 (early exaggeration phase)")
        _require(self.learning_rate > 0, "tsne.learning_rate must be > 0")
        _require(self.n_dims >= 1, "tsne.n_dims must be >= 1")
        _require(self.method in ("barnes_hut", "exact"), "tsne.method must be 'barnes_hut' or 'exact'")


@dataclass
class DiffusionConfig:
    """
    Diffusion map.

    bandwidth selects the policy: "knn" (per-cell distance to the k-th
    neighbor), "median_knn" (one global bandwidth, the median of those
    distances) or "fixed" (bandwidth_value for every cell).
    """
    bandwidth: str = "knn"
    k: int = 10
    bandwidth_value: Optional[float] = None
    n_components: int = 10
    alpha: float = 1.0
    min_bandwidth: float = 1e-8
    n_dims: Optional[int] = None
    embedding: Optional[str] = "pca"

    def validate(self) -> None:
        _require(
            self.bandwidth in ("knn", "median_knn", "fixed"),
            "diffusion.bandwidth must be 'knn', 'median_knn' or 'fixed'",
        )
        if self.bandwidth == "fixed":
            _require(
                self.bandwidth_value is not None and self.bandwidth_value > 0,
                "diffusion.bandwidth_value must be > 0 for the fixed policy",
            )
        _require(self.k >= 1, "diffusion.k must be >= 1")
        _require(self.n_components >= 1, "diffusion.n_components must be >= 1")
        _require(0 <= self.alpha <= 1, "diffusion.alpha must be in [0, 1]")
        _require(self.min_bandwidth > 0, "diffusion.min_bandwidth must be > 0")


@dataclass
class MarkerConfig:
    """One-vs-rest marker ranking."""
    min_pct: float = 0.1
    logfc_threshold: float = 0.25
    only_positive: bool = False

    def validate(self) -> None:
        _require(0 <= self.min_pct <= 1, "markers.min_pct must be in [0, 1]")
        _require(self.logfc_threshold >= 0, "markers.logfc_threshold must be >= 0")


@dataclass
class PipelineConfig:
    """
    Complete configuration for run_pipeline().

    Mirrors the stage structure for consistency with the config file layout.
    """
    qc: QCConfig = field(default_factory=QCConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    features: FeatureSelectionConfig = field(default_factory=FeatureSelectionConfig)
    scaling: ScalingConfig = field(default_factory=ScalingConfig)
    pca: PCAConfig = field(default_factory=PCAConfig)
    neighbors: NeighborConfig = field(default_factory=NeighborConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    alignment: AlignmentConfig = field(default_factory=AlignmentConfig)
    tsne: TSNEConfig = field(default_factory=TSNEConfig)
    diffusion: DiffusionConfig = field(default_factory=DiffusionConfig)
    markers: MarkerConfig = field(default_factory=MarkerConfig)
    n_jobs: int = 1

    def validate(self) -> None:
        """
        Validate every section and cross-section constraints.

        Raises:
            ConfigurationError: On the first invalid value
        """
        for f in fields(self):
            value = getattr(self, f.name)
            if is_dataclass(value):
                value.validate()
        _require(self.n_jobs != 0, "n_jobs must be non-zero (-1 for all cores)")

        requested = {
            "neighbors": self.neighbors.embedding,
            "tsne": self.tsne.embedding,
            "diffusion": self.diffusion.embedding,
        }
        kinds = {kind.value for kind in EmbeddingKind}
        for section, name in requested.items():
            if name is None:
                continue
            _require(name in kinds, f"{section}.embedding must be one of {sorted(kinds)}, got '{name}'")
            if name in (EmbeddingKind.CCA.value, EmbeddingKind.CCA_ALIGNED.value):
                _require(
                    self.alignment.batch_key is not None,
                    f"{section}.embedding='{name}' requires alignment.batch_key",
                )

        dims = {
            EmbeddingKind.PCA.value: ("pca.n_components", self.pca.n_components),
            EmbeddingKind.CCA.value: ("alignment.n_components", self.alignment.n_components),
            EmbeddingKind.CCA_ALIGNED.value: ("alignment.n_components", self.alignment.n_components),
        }
        if self.neighbors.embedding in dims:
            label, available = dims[self.neighbors.embedding]
            _require(self.neighbors.n_dims <= available, f"neighbors.n_dims cannot exceed {label}")

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> PipelineConfig:
        """
        Build a validated config from a nested dictionary.

        Raises:
            ConfigurationError: On unknown sections/keys or invalid values
        """
        kwargs: Dict[str, Any] = {}
        sections = {f.name: f for f in fields(cls)}
        for key, value in values.items():
            if key not in sections:
                raise ConfigurationError(
                    f"Unknown config section '{key}'. Valid: {sorted(sections)}"
                )
            default = sections[key].default_factory() if callable(sections[key].default_factory) else None
            if is_dataclass(default):
                if not isinstance(value, dict):
                    raise ConfigurationError(f"Config section '{key}' must be a mapping")
                kwargs[key] = _build_section(type(default), key, value)
            else:
                kwargs[key] = value
        config = cls(**kwargs)
        config.validate()
        return config


def _build_section(section_cls: type, name: str, values: Dict[str, Any]) -> Any:
    valid = {f.name for f in fields(section_cls)}
    unknown = set(values) - valid
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in config section '{name}': {sorted(unknown)}. Valid: {sorted(valid)}"
        )
    return section_cls(**values)


def load_config(config_path: Path) -> PipelineConfig:
    """
    Load configuration from YAML or JSON file.

    Parameters:
        config_path: Path to config file (.yaml, .yml, or .json)

    Returns:
        Validated PipelineConfig (sections missing from the file keep defaults)

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigurationError: If file format is unsupported or contents invalid

    Examples:
        >>> config = load_config(Path("pipeline.yaml"))
        >>> config.clustering.resolution
        0.8
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()

    try:
        with open(config_path, 'r') as f:
            if suffix in ('.yaml', '.yml'):
                values = yaml.safe_load(f)
            elif suffix == '.json':
                values = json.load(f)
            else:
                raise ConfigurationError(
                    f"Unsupported config format: {suffix}. "
                    f"Use .yaml, .yml, or .json"
                )
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config file: {e}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in config file: {e}")

    if values is None:
        values = {}

    if not isinstance(values, dict):
        raise ConfigurationError("Config file must contain a dictionary/mapping at top level")

    return PipelineConfig.from_dict(values)

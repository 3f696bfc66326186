"""
Configuration File Support for StableClust

Allows project-specific configuration via stableclust.yaml.
"""

from pathlib import Path
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field, asdict
import logging

import yaml

from config import settings
from stableclust.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class ProjectConfig:
    """Project-specific configuration."""

    # Reproducibility / execution
    random_seed: int = settings.RANDOM_SEED
    parallel_workers: int = settings.PARALLEL_WORKERS  # 0=sequential, -1=auto

    # Subsampling
    n_subsample: int = settings.N_SUBSAMPLE
    subsample_fraction: float = settings.SUBSAMPLE_FRACTION
    subsample_function: str = settings.SUBSAMPLE_FUNCTION
    final_function: str = settings.FINAL_DISTANCE_FUNCTION
    missing_dissimilarity: Optional[float] = settings.MISSING_DISSIMILARITY

    # clusterMany grid
    reduce_methods: List[str] = field(default_factory=lambda: ["pca"])
    dims: List[int] = field(default_factory=lambda: [10])
    cluster_functions: List[str] = field(default_factory=lambda: ["hierarchical01"])
    ks: List[int] = field(default_factory=lambda: [4, 6, 8])
    alphas: List[float] = field(default_factory=lambda: [settings.DEFAULT_ALPHA])
    betas: List[float] = field(default_factory=lambda: [settings.SEQ_BETA])
    min_sizes: List[int] = field(default_factory=lambda: [settings.MIN_CLUSTER_SIZE])
    subsample: List[bool] = field(default_factory=lambda: [True])
    sequential: List[bool] = field(default_factory=lambda: [False])

    # Sequential extraction
    k_steps: int = settings.SEQ_K_STEPS
    similarity: float = settings.SEQ_SIMILARITY
    remain_n: int = settings.SEQ_REMAIN_N
    top_can: int = settings.SEQ_TOP_CAN

    # Consensus
    combine_proportion: float = settings.COMBINE_PROPORTION
    combine_min_size: int = settings.COMBINE_MIN_SIZE
    prop_unassigned: float = settings.COMBINE_PROP_UNASSIGNED
    tie_break: str = settings.TIE_BREAK

    # Dendrogram
    dendro_reduce: str = settings.DENDRO_REDUCE
    dendro_dims: Optional[int] = settings.DENDRO_DIMS
    dendro_linkage: str = settings.DENDRO_LINKAGE
    dendro_representative: str = settings.DENDRO_REPRESENTATIVE

    # Merge
    merge_method: str = settings.MERGE_METHOD
    merge_cutoff: float = settings.MERGE_CUTOFF

    # Features
    contrast_type: str = settings.CONTRAST_TYPES[0]  # OneAgainstAll
    top_features: int = settings.TOP_FEATURES

    def validate(self) -> "ProjectConfig":
        """Fail fast on values no stage can run with."""
        if not 0 < self.subsample_fraction <= 1:
            raise ConfigurationError(
                f"subsample_fraction must be in (0, 1], got {self.subsample_fraction}"
            )
        if self.n_subsample < 0:
            raise ConfigurationError(f"n_subsample must be >= 0, got {self.n_subsample}")
        if any(k <= 0 for k in self.ks):
            raise ConfigurationError(f"all ks must be positive, got {self.ks}")
        if any(not 0 <= a <= 1 for a in self.alphas):
            raise ConfigurationError(f"alphas must lie in [0, 1], got {self.alphas}")
        if any(not 0 < b <= 1 for b in self.betas):
            raise ConfigurationError(f"betas must lie in (0, 1], got {self.betas}")
        if not 0 <= self.combine_proportion <= 1:
            raise ConfigurationError(
                f"combine_proportion must be in [0, 1], got {self.combine_proportion}"
            )
        if self.tie_break not in ("index", "none"):
            raise ConfigurationError(f"Unknown tie_break policy: {self.tie_break}")
        if self.dendro_representative not in ("medoid", "mean"):
            raise ConfigurationError(
                f"Unknown representative: {self.dendro_representative}"
            )
        if self.contrast_type not in settings.CONTRAST_TYPES:
            raise ConfigurationError(f"Unknown contrast type: {self.contrast_type}")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Nested YAML section -> fields it may set
_SECTIONS = {
    'execution': ['random_seed', 'parallel_workers'],
    'subsampling': [
        'n_subsample', 'subsample_fraction', 'subsample_function',
        'final_function', 'missing_dissimilarity',
    ],
    'cluster_many': [
        'reduce_methods', 'dims', 'cluster_functions', 'ks', 'alphas',
        'betas', 'min_sizes', 'subsample', 'sequential',
    ],
    'sequential': ['k_steps', 'similarity', 'remain_n', 'top_can'],
    'consensus': ['combine_proportion', 'combine_min_size', 'prop_unassigned', 'tie_break'],
    'dendrogram': ['dendro_reduce', 'dendro_dims', 'dendro_linkage', 'dendro_representative'],
    'merge': ['merge_method', 'merge_cutoff'],
    'features': ['contrast_type', 'top_features'],
}


def _find_config_file() -> Optional[Path]:
    """Search for a config file in the current and parent directories."""
    current_dir = Path.cwd()
    search_dirs = [current_dir] + list(current_dir.parents)

    for directory in search_dirs:
        for name in ("stableclust.yaml", ".stableclust.yaml", "stableclust.yml"):
            path = directory / name
            if path.exists():
                return path
    return None


def load_config(config_path: Optional[Path] = None) -> ProjectConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to config file. If None, searches for stableclust.yaml
                    in current directory and parent directories.

    Returns:
        ProjectConfig with loaded or default values
    """
    if config_path is None:
        config_path = _find_config_file()

    if config_path is None or not Path(config_path).exists():
        logger.debug("No config file found, using defaults")
        return ProjectConfig()

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Failed to load config: {e}, using defaults")
        return ProjectConfig()

    if not isinstance(data, dict):
        logger.warning(f"Config {config_path} is not a mapping, using defaults")
        return ProjectConfig()

    logger.info(f"Loaded config from {config_path}")

    # Flatten nested config
    values = {}
    for section, names in _SECTIONS.items():
        section_data = data.get(section) or {}
        for name in names:
            if name in section_data:
                values[name] = section_data[name]

    try:
        return ProjectConfig(**values)
    except TypeError as e:
        logger.warning(f"Invalid config values: {e}, using defaults")
        return ProjectConfig()


def save_default_config(output_path: Path) -> Path:
    """
    Save a default configuration file as a template.

    Args:
        output_path: Where to save the config

    Returns:
        Path to saved config file
    """
    default_config = """# StableClust Configuration
# Copy to your project root as stableclust.yaml

execution:
  random_seed: 42
  parallel_workers: 0       # 0 = sequential (default), -1 = auto-detect

# Co-clustering over random subsamples
subsampling:
  n_subsample: 100          # B, iterations
  subsample_fraction: 0.7   # p, fraction drawn per iteration
  subsample_function: kmeans
  final_function: hierarchical01
  missing_dissimilarity: 1.0   # null = fail on never co-sampled pairs

# Parameter grid; every combination produces one clustering
cluster_many:
  reduce_methods: [pca]     # none, pca, var, tsne
  dims: [10]
  cluster_functions: [hierarchical01]
  ks: [4, 6, 8]
  alphas: [0.1]
  betas: [0.7]
  min_sizes: [5]
  subsample: [true]
  sequential: [false]

sequential:
  k_steps: 4
  similarity: 0.7
  remain_n: 30
  top_can: 5

consensus:
  combine_proportion: 0.7
  combine_min_size: 5
  prop_unassigned: 0.5
  tie_break: index          # index or none

dendrogram:
  dendro_reduce: pca
  dendro_dims: 50
  dendro_linkage: average
  dendro_representative: medoid

merge:
  merge_method: adjP        # adjP or pvalue
  merge_cutoff: 0.1

features:
  contrast_type: OneAgainstAll   # OneAgainstAll, Pairs, Dendro
  top_features: 25
"""

    output_path = Path(output_path)
    output_path.write_text(default_config)
    return output_path


# Preset configurations
PRESETS = {
    'quick': ProjectConfig(
        n_subsample=20,
        ks=[4, 6],
        k_steps=3,
    ),
    'default': ProjectConfig(),
    'thorough': ProjectConfig(
        n_subsample=200,
        subsample_fraction=0.8,
        reduce_methods=['pca', 'var'],
        dims=[10, 50],
        ks=list(range(3, 11)),
        alphas=[0.1, 0.2, 0.3],
        combine_proportion=0.8,
    ),
}


def get_preset(name: str) -> ProjectConfig:
    """Get a preset configuration by name."""
    if name not in PRESETS:
        raise ValueError(f"Unknown preset: {name}. Available: {list(PRESETS.keys())}")
    return PRESETS[name]

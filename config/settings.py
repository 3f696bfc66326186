"""
StableClust Configuration Settings
Central configuration for all modules.
"""

import os
from pathlib import Path

# =============================================================================
# Path Configuration
# =============================================================================
BASE_DIR = Path(__file__).parent.parent.absolute()
OUTPUTS_DIR = Path(os.environ.get("STABLECLUST_OUTPUTS", BASE_DIR / "outputs"))

# =============================================================================
# Reproducibility
# =============================================================================
RANDOM_SEED = 42

# =============================================================================
# Subsampling / Co-clustering Configuration
# =============================================================================
N_SUBSAMPLE = 100           # B, subsample iterations per co-clustering run
SUBSAMPLE_FRACTION = 0.7    # p, fraction of samples drawn per iteration
SUBSAMPLE_FUNCTION = "kmeans"
FINAL_DISTANCE_FUNCTION = "hierarchical01"
DEFAULT_ALPHA = 0.1         # cut height on 1 - co-clustering
MIN_CLUSTER_SIZE = 5

# Dissimilarity used for pairs that were never subsampled together.
# None means "raise InsufficientSubsampleCoverage" instead.
MISSING_DISSIMILARITY = 1.0

# =============================================================================
# Clustering Function Defaults
# =============================================================================
KMEANS_MAX_ITER = 300
KMEANS_N_INIT = 10
HIERARCHICAL_LINKAGE = "ward"
HIERARCHICAL01_LINKAGE = "average"
DBSCAN_MIN_SAMPLES = 3

# =============================================================================
# Sequential Extraction Configuration
# =============================================================================
SEQ_K0 = 4
SEQ_K_STEPS = 4             # k values tried per round: k0 .. k0 + steps - 1
SEQ_BETA = 0.7              # fraction of k values a cluster must persist in
SEQ_SIMILARITY = 0.7        # |A & B| / |A | B| for "near-identical" clusters
SEQ_REMAIN_N = 30
SEQ_TOP_CAN = 5
SEQ_MAX_ROUNDS = 50

# =============================================================================
# Dimensionality Reduction
# =============================================================================
TSNE_PERPLEXITY = 30

# =============================================================================
# Consensus (combineMany) Configuration
# =============================================================================
COMBINE_PROPORTION = 0.7
COMBINE_MIN_SIZE = 5
COMBINE_PROP_UNASSIGNED = 0.5
TIE_BREAK = "index"         # "index" or "none"

# =============================================================================
# Dendrogram Configuration
# =============================================================================
DENDRO_REDUCE = "pca"
DENDRO_DIMS = 50
DENDRO_LINKAGE = "average"
DENDRO_REPRESENTATIVE = "medoid"   # "medoid" or "mean"

# =============================================================================
# Merge Configuration
# =============================================================================
MERGE_METHOD = "adjP"
MERGE_CUTOFF = 0.1
MERGE_DE_LEVEL = 0.05       # adjusted p below which a feature counts as DE

# =============================================================================
# Feature Ranking
# =============================================================================
CONTRAST_TYPES = ["OneAgainstAll", "Pairs", "Dendro"]
TOP_FEATURES = 25

# =============================================================================
# Parallelism
# =============================================================================
PARALLEL_WORKERS = 0        # 0 = sequential, -1 = auto

# =============================================================================
# Persistence
# =============================================================================
HISTORY_SCHEMA = "stableclust.history/1"

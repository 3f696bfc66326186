"""Clustering package: registries, co-clustering, sequential extraction and consensus."""
from .registry import ClusterFunctionRegistry, FunctionKind, default_registry
from .reduction import ReductionRegistry, default_reductions
from .coclustering import CoClusteringBuilder, CoClusteringMatrix, cluster_subsampled
from .sequential import SequentialClusterExtractor
from .cluster_many import ClusterMany, ClusterParams, ClusteringMatrix
from .consensus import ConsensusResult, combine_many

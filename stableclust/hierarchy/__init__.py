"""Hierarchy package: cluster dendrograms and statistical merging."""
from .dendrogram import Dendrogram, make_dendrogram
from .merge import MergeResult, merge_clusters
from .stat_tests import MergeTestRegistry, MergeTestResult, ResultKind, default_merge_tests

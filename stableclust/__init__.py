"""
StableClust: Ensemble Clustering with Stable Consensus

Run many clusterings over a parameter grid, combine them into a
co-clustering consensus, and merge the result along a cluster hierarchy.
"""

__version__ = "0.1.0"
__author__ = "StableClust Team"

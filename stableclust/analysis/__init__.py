"""Analysis package for ranking discriminative features."""
from .features import build_contrasts, rank_features

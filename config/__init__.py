"""Configuration package for StableClust."""

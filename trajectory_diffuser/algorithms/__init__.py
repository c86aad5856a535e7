"""Algorithms for trajectory diffusion."""

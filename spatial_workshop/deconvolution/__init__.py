"""Spot deconvolution against a single-cell reference."""

from .reference import build_reference_signatures
from .nnls import deconvolve_spots, proportions_to_adata, dominant_cell_type

__all__ = [
    "build_reference_signatures",
    "deconvolve_spots",
    "proportions_to_adata",
    "dominant_cell_type",
]

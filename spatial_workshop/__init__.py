"""
spatial-workshop: Visium and Xenium spatial transcriptomics workflows on AnnData.

This package provides tools to:
- Import Space Ranger and Xenium output directories and RDS references
- Apply quality control filters
- Normalize, reduce and cluster expression profiles
- Deconvolve spots against a single-cell reference
- Build spatial neighbor graphs, find niches and Getis-Ord hotspots
- Register samples onto a reference with landmarks
- Plot results and export them for downstream analysis
"""

__version__ = "0.1.0"
__author__ = "EISA Science"

from . import io, qc, spatial, modeling, deconvolution, niche, cluster_interpretation, viz, export
from . import workflow

__all__ = [
    "io",
    "qc",
    "spatial",
    "modeling",
    "deconvolution",
    "niche",
    "cluster_interpretation",
    "viz",
    "export",
    "workflow",
    "__version__",
]

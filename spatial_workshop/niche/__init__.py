"""Niche analysis: neighborhood composition and niche clustering."""

from .composition import (
    compute_neighborhood_composition,
    add_composition_to_adata,
    compute_diversity_metrics,
    build_niche_assay,
)
from .clustering import (
    cluster_niches,
    assign_niche_labels,
    summarize_niche_composition,
    compute_niche_enrichment,
    export_niche_results,
    run_niche_clustering,
)

__all__ = [
    "compute_neighborhood_composition",
    "add_composition_to_adata",
    "compute_diversity_metrics",
    "build_niche_assay",
    "cluster_niches",
    "assign_niche_labels",
    "summarize_niche_composition",
    "compute_niche_enrichment",
    "export_niche_results",
    "run_niche_clustering",
]

"""Cluster interpretation and marker gene analysis."""

from .markers import (
    compute_marker_genes,
    compute_fold_change,
    compute_group_means,
    top_markers_per_group,
)
from .summaries import compute_cluster_summary, compute_group_composition, compare_qc_metrics
from .utils import get_candidate_label_columns, get_qc_columns, prepare_expression_data

__all__ = [
    "compute_marker_genes",
    "compute_fold_change",
    "compute_group_means",
    "top_markers_per_group",
    "compute_cluster_summary",
    "compute_group_composition",
    "compare_qc_metrics",
    "get_candidate_label_columns",
    "get_qc_columns",
    "prepare_expression_data",
]

"""Quality control utilities."""

from .filters import (
    calculate_qc_metrics,
    apply_qc_filters,
    create_filter_mask,
    filter_features,
    filter_by_boolean_flags,
    filter_by_sample,
    filter_outliers_mad,
)
from .summaries import (
    compute_qc_summary,
    compute_cell_statistics,
    compute_filter_stats,
    identify_problematic_cells,
    compare_pre_post_filtering,
)

__all__ = [
    "calculate_qc_metrics",
    "apply_qc_filters",
    "create_filter_mask",
    "filter_features",
    "filter_by_boolean_flags",
    "filter_by_sample",
    "filter_outliers_mad",
    "compute_qc_summary",
    "compute_cell_statistics",
    "compute_filter_stats",
    "identify_problematic_cells",
    "compare_pre_post_filtering",
]

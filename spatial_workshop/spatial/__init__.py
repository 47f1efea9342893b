"""Spatial analysis utilities."""

from .neighbors import build_spatial_graph, compute_neighbors
from .diagnostics import (
    graph_diagnostics,
    compute_degree_distribution,
    plot_degree_distribution,
    identify_isolated_cells,
    get_neighbor_edges_for_visualization,
)
from .hotspots import getis_ord_hotspots, get_feature_values
from .registration import (
    estimate_transform,
    apply_transform,
    registration_error,
    load_landmarks,
    register_spatial_data,
    warp_image,
)
from .transfer import aggregate_cells_to_spots
from ..utils.stats import adjust_pvalues

__all__ = [
    "build_spatial_graph",
    "compute_neighbors",
    "graph_diagnostics",
    "compute_degree_distribution",
    "plot_degree_distribution",
    "identify_isolated_cells",
    "get_neighbor_edges_for_visualization",
    "getis_ord_hotspots",
    "get_feature_values",
    "adjust_pvalues",
    "estimate_transform",
    "apply_transform",
    "registration_error",
    "load_landmarks",
    "register_spatial_data",
    "warp_image",
    "aggregate_cells_to_spots",
]

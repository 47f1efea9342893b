"""Visualization utilities."""

from .spatial_plots import (
    plot_spatial_scatter,
    plot_qc_spatial,
    plot_spatial_with_edges,
    plot_hotspots,
    plot_proportions,
    add_image_underlay,
)
from .embedding_plots import plot_embedding, plot_pca, plot_umap, plot_variance_explained
from .heatmaps import plot_heatmap, plot_marker_heatmap, plot_niche_heatmap
from .summary_plots import compute_composition_table, plot_composition_bars, save_figure

__all__ = [
    "plot_spatial_scatter",
    "plot_qc_spatial",
    "plot_spatial_with_edges",
    "plot_hotspots",
    "plot_proportions",
    "add_image_underlay",
    "plot_embedding",
    "plot_pca",
    "plot_umap",
    "plot_variance_explained",
    "plot_heatmap",
    "plot_marker_heatmap",
    "plot_niche_heatmap",
    "compute_composition_table",
    "plot_composition_bars",
    "save_figure",
]

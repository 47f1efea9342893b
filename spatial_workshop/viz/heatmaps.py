"""Clustered heatmaps of group-level summaries."""

import logging
from typing import List, Literal, Optional

import anndata
import numpy as np
import pandas as pd
import plotly.graph_objects as go
from scipy.cluster import hierarchy

from ..cluster_interpretation import compute_group_means, top_markers_per_group

logger = logging.getLogger(__name__)


def _zscore(matrix: pd.DataFrame, axis: int) -> pd.DataFrame:
    """Standardize rows (axis=1) or columns (axis=0); constant vectors become 0."""
    mean = matrix.mean(axis=axis)
    std = matrix.std(axis=axis, ddof=0).replace(0, 1)
    return matrix.sub(mean, axis=1 - axis).div(std, axis=1 - axis)


def _leaf_order(values: np.ndarray) -> np.ndarray:
    """Average-linkage dendrogram order of the rows of ``values``."""
    if values.shape[0] < 3:
        return np.arange(values.shape[0])
    linkage = hierarchy.linkage(values, method="average", metric="euclidean")
    return hierarchy.leaves_list(linkage)


def plot_heatmap(
    matrix: pd.DataFrame,
    scale: Optional[Literal["row", "column"]] = "row",
    cluster_rows: bool = True,
    cluster_cols: bool = True,
    colorscale: str = "RdBu_r",
    title: Optional[str] = None,
    width: int = 800,
    height: int = 600,
) -> go.Figure:
    """
    Heatmap with optional z-scaling and hierarchical ordering.

    Parameters
    ----------
    matrix : pd.DataFrame
        Values to show; index and columns become the axis labels.
    scale : {'row', 'column', None}
        Z-score each row or column before plotting.
    cluster_rows, cluster_cols : bool
        Reorder rows / columns by average-linkage clustering.
    colorscale : str
        Plotly colorscale. Scaled heatmaps are centered on 0.
    title : str, optional
        Plot title.
    width, height : int
        Figure size.

    Returns
    -------
    plotly.graph_objects.Figure
        Plotly figure object.
    """
    if matrix.empty:
        raise ValueError("Cannot draw a heatmap of an empty matrix")
    if scale not in ("row", "column", None):
        raise ValueError(f"Unknown scale: {scale}")

    values = matrix.astype(float)
    if scale == "row":
        values = _zscore(values, axis=1)
    elif scale == "column":
        values = _zscore(values, axis=0)

    if cluster_rows:
        values = values.iloc[_leaf_order(values.to_numpy())]
    if cluster_cols:
        values = values.iloc[:, _leaf_order(values.to_numpy().T)]

    heatmap = go.Heatmap(
        z=values.to_numpy(),
        x=[str(c) for c in values.columns],
        y=[str(i) for i in values.index],
        colorscale=colorscale,
        colorbar=dict(title="z-score" if scale else "value"),
    )
    if scale is not None:
        heatmap.update(zmid=0)

    fig = go.Figure(heatmap)
    fig.update_layout(
        title=title,
        width=width,
        height=height,
        xaxis=dict(tickangle=-45),
        yaxis=dict(autorange="reversed"),
    )
    return fig


def plot_marker_heatmap(
    adata: anndata.AnnData,
    groupby: str,
    features: Optional[List[str]] = None,
    n_genes: int = 5,
    layer: Optional[str] = None,
    **kwargs,
) -> go.Figure:
    """
    Row-scaled heatmap of mean expression, genes x groups.

    Without ``features`` the top ``n_genes`` markers of every group are shown.
    """
    if features is None:
        markers = top_markers_per_group(adata, groupby, n_genes=n_genes, use_layer=layer)
        features = list(dict.fromkeys(markers["gene"]))
        if not features:
            raise ValueError(f"No marker genes found for '{groupby}'")

    means = compute_group_means(adata, groupby, features=features, layer=layer)
    logger.info(f"Marker heatmap: {len(features)} genes x {means.shape[0]} groups")

    kwargs.setdefault("title", f"Markers by {groupby}")
    return plot_heatmap(means.T, **kwargs)


def plot_niche_heatmap(
    adata: anndata.AnnData,
    niche_col: str = "niche",
    scale: Optional[Literal["row", "column"]] = "column",
    **kwargs,
) -> go.Figure:
    """Heatmap of the mean composition of each niche (niches x labels)."""
    key = f"{niche_col}_composition"
    if key not in adata.uns:
        raise ValueError(f"'{key}' not found in adata.uns. Run niche clustering first.")

    composition = pd.DataFrame(adata.uns[key])
    kwargs.setdefault("title", f"Niche composition ({niche_col})")
    kwargs.setdefault("cluster_rows", False)
    return plot_heatmap(composition, scale=scale, **kwargs)

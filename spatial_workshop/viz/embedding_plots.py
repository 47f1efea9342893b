"""Embedding plots (PCA, UMAP)."""

import logging
from typing import Optional, Sequence

import anndata
import numpy as np
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go

from .spatial_plots import _color_frame

logger = logging.getLogger(__name__)


def plot_embedding(
    adata: anndata.AnnData,
    basis: str = "X_umap",
    color_by: Optional[str] = None,
    components: Sequence[int] = (0, 1),
    size: float = 3,
    opacity: float = 0.7,
    title: Optional[str] = None,
    color_map: Optional[str] = None,
    width: int = 700,
    height: int = 600,
    layer: Optional[str] = None,
) -> go.Figure:
    """
    Plot two dimensions of an embedding colored by metadata or expression.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    basis : str
        Key in adata.obsm for embedding coordinates.
    color_by : str, optional
        Column in adata.obs or gene to color by.
    components : sequence of int
        The two (0-indexed) dimensions to plot.
    size : float
        Marker size.
    opacity : float
        Marker opacity.
    title : str, optional
        Plot title.
    color_map : str, optional
        Continuous colormap name.
    width, height : int
        Figure size.
    layer : str, optional
        Layer to read gene values from.

    Returns
    -------
    plotly.graph_objects.Figure
        Plotly figure object.
    """
    if basis not in adata.obsm:
        raise ValueError(f"Basis '{basis}' not found in adata.obsm")

    embedding = np.asarray(adata.obsm[basis])
    components = list(components)
    if len(components) != 2:
        raise ValueError(f"Exactly two components are needed, got {components}")
    if max(components) >= embedding.shape[1]:
        raise ValueError(
            f"Embedding '{basis}' has {embedding.shape[1]} dimensions, cannot plot {components}"
        )

    plot_data, color_col = _color_frame(adata, embedding[:, components], color_by, layer)
    if title is None:
        title = f"{basis}: {color_by}" if color_by else basis

    if pd.api.types.is_numeric_dtype(plot_data[color_col]):
        fig = px.scatter(
            plot_data,
            x="x",
            y="y",
            color=color_col,
            color_continuous_scale=color_map or "viridis",
            opacity=opacity,
            title=title,
        )
    else:
        fig = px.scatter(plot_data, x="x", y="y", color=color_col, opacity=opacity, title=title)

    fig.update_traces(marker=dict(size=size))
    fig.update_layout(
        width=width,
        height=height,
        xaxis_title=f"{basis}_{components[0] + 1}",
        yaxis_title=f"{basis}_{components[1] + 1}",
        plot_bgcolor="white",
        xaxis=dict(showgrid=True, gridcolor="lightgray"),
        yaxis=dict(showgrid=True, gridcolor="lightgray"),
    )
    return fig


def plot_pca(
    adata: anndata.AnnData,
    color_by: Optional[str] = None,
    components: tuple = (0, 1),
    **kwargs,
) -> go.Figure:
    """Plot two principal components from obsm['X_pca']."""
    if "X_pca" not in adata.obsm:
        raise ValueError("PCA not found. Run preprocessing first.")

    return plot_embedding(
        adata,
        basis="X_pca",
        color_by=color_by,
        components=components,
        title=kwargs.pop("title", f"PCA (PC{components[0] + 1} vs PC{components[1] + 1})"),
        **kwargs,
    )


def plot_umap(
    adata: anndata.AnnData, color_by: Optional[str] = None, **kwargs
) -> go.Figure:
    """Plot the UMAP embedding from obsm['X_umap']."""
    if "X_umap" not in adata.obsm:
        raise ValueError("UMAP not found. Run UMAP computation first.")

    return plot_embedding(
        adata, basis="X_umap", color_by=color_by, title=kwargs.pop("title", "UMAP"), **kwargs
    )


def plot_variance_explained(
    adata: anndata.AnnData, n_comps: int = 50, width: int = 800, height: int = 400
) -> go.Figure:
    """
    Plot PCA variance explained, per component and cumulative.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object with uns['pca']['variance_ratio'].
    n_comps : int
        Number of components to plot.
    width, height : int
        Figure size.

    Returns
    -------
    plotly.graph_objects.Figure
        Plotly figure object.
    """
    if "pca" not in adata.uns or "variance_ratio" not in adata.uns["pca"]:
        raise ValueError("PCA variance not found. Run PCA first.")

    variance_ratio = np.asarray(adata.uns["pca"]["variance_ratio"])[:n_comps]
    components = np.arange(1, len(variance_ratio) + 1)

    fig = go.Figure()
    fig.add_trace(
        go.Bar(
            x=components,
            y=variance_ratio * 100,
            name="Variance Explained",
            marker_color="steelblue",
        )
    )
    fig.add_trace(
        go.Scatter(
            x=components,
            y=np.cumsum(variance_ratio) * 100,
            name="Cumulative Variance",
            mode="lines+markers",
            line=dict(color="red", width=2),
            marker=dict(size=5),
            yaxis="y2",
        )
    )

    fig.update_layout(
        title="PCA Variance Explained",
        xaxis_title="Principal Component",
        yaxis_title="Variance Explained (%)",
        yaxis2=dict(
            title="Cumulative Variance (%)",
            overlaying="y",
            side="right",
            range=[0, 100],
        ),
        width=width,
        height=height,
        plot_bgcolor="white",
        xaxis=dict(showgrid=True, gridcolor="lightgray"),
        yaxis=dict(showgrid=True, gridcolor="lightgray"),
    )
    return fig

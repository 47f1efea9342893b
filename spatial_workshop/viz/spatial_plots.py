"""Spatial scatter plots."""

import logging
from typing import Optional, Tuple

import anndata
import numpy as np
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
from PIL import Image

from ..io.readers import get_image
from ..spatial.hotspots import get_feature_values

logger = logging.getLogger(__name__)

HOTSPOT_COLORS = {"hot": "#d62728", "cold": "#1f77b4", "ns": "#d3d3d3"}


def _color_frame(
    adata: anndata.AnnData,
    coords: np.ndarray,
    color_by: Optional[str],
    layer: Optional[str] = None,
) -> Tuple[pd.DataFrame, str]:
    """Plot table with x, y and the colouring column (obs column or gene)."""
    plot_data = pd.DataFrame({"x": coords[:, 0], "y": coords[:, 1]})

    if color_by is None:
        plot_data["cell"] = "Cell"
        return plot_data, "cell"

    if color_by in adata.obs.columns:
        values = adata.obs[color_by]
        if isinstance(values.dtype, pd.CategoricalDtype):
            values = values.astype(str)
        plot_data[color_by] = values.to_numpy()
    else:
        # Raises for names that are neither genes nor obs columns
        plot_data[color_by] = get_feature_values(adata, color_by, layer)
    return plot_data, color_by


def _data_marker_size(x: np.ndarray, y: np.ndarray, size: float) -> float:
    """Marker diameter as a fraction of the data range."""
    avg_range = (float(np.ptp(x)) + float(np.ptp(y))) / 2
    return max(avg_range * (size / 300.0), 1e-6)


def _to_pil(image: np.ndarray) -> Image.Image:
    """8-bit PIL image of a stored tissue image."""
    image = np.asarray(image)
    if image.ndim == 3 and image.shape[2] > 4:
        image = image[..., :3]
    if image.dtype != np.uint8:
        image = image.astype(np.float64)
        upper = 1.0 if image.max() <= 1.0 else image.max()
        image = np.clip(image / upper * 255, 0, 255).astype(np.uint8)
    return Image.fromarray(image)


def add_image_underlay(
    fig: go.Figure, adata: anndata.AnnData, img_key: str, opacity: float = 1.0
) -> go.Figure:
    """
    Draw a stored tissue image beneath the figure's traces.

    The image is stretched to full-resolution coordinates using
    ``tissue_{img_key}_scalef`` and the y axis is flipped to image
    orientation.
    """
    _, image, scalef = get_image(adata, img_key)
    height, width = image.shape[:2]

    fig.add_layout_image(
        dict(
            source=_to_pil(image),
            xref="x",
            yref="y",
            x=0,
            y=0,
            sizex=width / scalef,
            sizey=height / scalef,
            xanchor="left",
            yanchor="top",
            sizing="stretch",
            opacity=opacity,
            layer="below",
        )
    )
    fig.update_yaxes(autorange="reversed")
    return fig


def _spatial_layout(fig: go.Figure, width: int, height: int, title: Optional[str] = None) -> go.Figure:
    fig.update_layout(
        width=width,
        height=height,
        xaxis_title="X",
        yaxis_title="Y",
        plot_bgcolor="white",
        xaxis=dict(showgrid=True, gridcolor="lightgray"),
        yaxis=dict(showgrid=True, gridcolor="lightgray", scaleanchor="x", scaleratio=1),
        dragmode="zoom",
    )
    if title is not None:
        fig.update_layout(title=title)
    return fig


def plot_spatial_scatter(
    adata: anndata.AnnData,
    color_by: Optional[str] = None,
    spatial_key: str = "spatial",
    size: float = 3,
    opacity: float = 0.7,
    title: Optional[str] = None,
    color_map: Optional[str] = None,
    width: int = 800,
    height: int = 600,
    scale_with_zoom: bool = True,
    img_key: Optional[str] = None,
    layer: Optional[str] = None,
    color_discrete_map: Optional[dict] = None,
) -> go.Figure:
    """
    Create spatial scatter plot colored by metadata or expression.

    When scale_with_zoom=True, markers are sized in data coordinates so they
    scale proportionally when zooming in/out.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    color_by : str, optional
        Column in adata.obs or gene in adata.var_names to color by.
    spatial_key : str
        Key in adata.obsm for spatial coordinates.
    size : float
        Marker size. When scale_with_zoom=True, this is interpreted as a
        fraction of the data range (default 3). When False, it's pixels.
    opacity : float
        Marker opacity.
    title : str, optional
        Plot title.
    color_map : str, optional
        Continuous colormap name (e.g., 'viridis').
    width : int
        Figure width in pixels.
    height : int
        Figure height in pixels.
    scale_with_zoom : bool
        If True, markers scale in data coordinates (grow/shrink with zoom).
    img_key : str, optional
        Stored tissue image (e.g. 'hires', 'lowres') to draw underneath.
    layer : str, optional
        Layer to read gene values from.
    color_discrete_map : dict, optional
        Fixed colors for categorical values.

    Returns
    -------
    plotly.graph_objects.Figure
        Plotly figure object.
    """
    if spatial_key not in adata.obsm:
        raise ValueError(f"Spatial key '{spatial_key}' not found in adata.obsm")

    coords = np.asarray(adata.obsm[spatial_key], dtype=float)
    plot_data, color_col = _color_frame(adata, coords, color_by, layer)
    if title is None:
        title = f"Spatial: {color_by}" if color_by else "Spatial"

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
        category_orders = None
        if color_by in adata.obs.columns and isinstance(adata.obs[color_by].dtype, pd.CategoricalDtype):
            category_orders = {color_col: [str(c) for c in adata.obs[color_by].cat.categories]}
        fig = px.scatter(
            plot_data,
            x="x",
            y="y",
            color=color_col,
            color_discrete_map=color_discrete_map,
            color_discrete_sequence=px.colors.qualitative.Set1 if color_discrete_map is None else None,
            category_orders=category_orders,
            opacity=opacity,
            title=title,
        )

    if scale_with_zoom:
        fig.update_traces(
            marker=dict(
                size=_data_marker_size(coords[:, 0], coords[:, 1], size),
                sizemode="diameter",
                sizeref=1,
            )
        )
    else:
        fig.update_traces(marker=dict(size=size))

    _spatial_layout(fig, width, height)
    if img_key is not None:
        add_image_underlay(fig, adata, img_key)
    return fig


def plot_qc_spatial(
    adata: anndata.AnnData,
    qc_mask: np.ndarray,
    spatial_key: str = "spatial",
    size: float = 3,
    opacity: float = 0.7,
    title: str = "QC Filtering: Kept vs. Filtered",
    width: int = 800,
    height: int = 600,
    scale_with_zoom: bool = True,
) -> go.Figure:
    """Plot spatial coordinates colored by QC pass/fail."""
    if spatial_key not in adata.obsm:
        raise ValueError(f"Spatial key '{spatial_key}' not found in adata.obsm")

    qc_mask = np.asarray(qc_mask, dtype=bool)
    if qc_mask.shape[0] != adata.n_obs:
        raise ValueError(f"QC mask length {qc_mask.shape[0]} does not match n_obs {adata.n_obs}")

    coords = np.asarray(adata.obsm[spatial_key], dtype=float)
    plot_data = pd.DataFrame({
        "x": coords[:, 0],
        "y": coords[:, 1],
        "QC Status": np.where(qc_mask, "Kept", "Filtered"),
    })

    fig = px.scatter(
        plot_data,
        x="x",
        y="y",
        color="QC Status",
        color_discrete_map={"Kept": "blue", "Filtered": "red"},
        opacity=opacity,
        title=title,
        category_orders={"QC Status": ["Kept", "Filtered"]},
    )

    if scale_with_zoom:
        fig.update_traces(
            marker=dict(
                size=_data_marker_size(coords[:, 0], coords[:, 1], size),
                sizemode="diameter",
                sizeref=1,
            )
        )
    else:
        fig.update_traces(marker=dict(size=size))

    return _spatial_layout(fig, width, height)


def plot_spatial_with_edges(
    adata: anndata.AnnData,
    spatial_key: str = "spatial",
    connectivities_key: str = "spatial_connectivities",
    color_by: Optional[str] = None,
    max_edges: int = 5000,
    size: float = 3,
    opacity: float = 0.7,
    edge_width: float = 0.5,
    edge_color: str = "gray",
    width: int = 800,
    height: int = 600,
) -> go.Figure:
    """
    Plot spatial coordinates with neighbor edges overlaid.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    spatial_key : str
        Key in adata.obsm for spatial coordinates.
    connectivities_key : str
        Key in adata.obsp for connectivity matrix.
    color_by : str, optional
        Column in adata.obs to color points by.
    max_edges : int
        Maximum number of edges to plot (downsampled).
    size, opacity : float
        Marker size and opacity.
    edge_width : float
        Edge line width.
    edge_color : str
        Edge color.
    width, height : int
        Figure size.

    Returns
    -------
    plotly.graph_objects.Figure
        Plotly figure object.
    """
    from ..spatial.diagnostics import get_neighbor_edges_for_visualization

    edge_x, edge_y = get_neighbor_edges_for_visualization(
        adata, spatial_key, connectivities_key, max_edges
    )
    coords = np.asarray(adata.obsm[spatial_key], dtype=float)

    fig = go.Figure()
    fig.add_trace(
        go.Scatter(
            x=edge_x,
            y=edge_y,
            mode="lines",
            line=dict(color=edge_color, width=edge_width),
            hoverinfo="skip",
            showlegend=False,
            name="Edges",
        )
    )

    marker = dict(size=size, opacity=opacity)
    hover = "X: %{x}<br>Y: %{y}<extra></extra>"
    text = None
    if color_by is not None:
        if color_by not in adata.obs.columns:
            raise ValueError(f"Column '{color_by}' not found in adata.obs")
        values = adata.obs[color_by]
        text = values.astype(str)
        marker["color"] = values.cat.codes if isinstance(values.dtype, pd.CategoricalDtype) else values.to_numpy()
        hover = "<b>%{text}</b><br>" + hover

    fig.add_trace(
        go.Scatter(
            x=coords[:, 0],
            y=coords[:, 1],
            mode="markers",
            marker=marker,
            text=text,
            hovertemplate=hover,
            name="Observations",
        )
    )

    return _spatial_layout(fig, width, height, title="Spatial Neighbor Graph")


def plot_hotspots(
    adata: anndata.AnnData,
    feature: str,
    spatial_key: str = "spatial",
    img_key: Optional[str] = None,
    **kwargs,
) -> go.Figure:
    """
    Spatial map of Getis-Ord hot and cold spots of one feature.

    Reads ``obs[f'{feature}_hotspot_flag']``; hot spots are red, cold spots
    blue and non-significant observations grey.
    """
    flag_col = f"{feature}_hotspot_flag"
    if flag_col not in adata.obs.columns:
        raise ValueError(
            f"Hotspot column '{flag_col}' not found in adata.obs. Run hotspot detection first."
        )

    fig = plot_spatial_scatter(
        adata,
        color_by=flag_col,
        spatial_key=spatial_key,
        img_key=img_key,
        color_discrete_map=HOTSPOT_COLORS,
        title=kwargs.pop("title", f"Hotspots: {feature}"),
        **kwargs,
    )
    fig.update_layout(legend_title_text="Gi*")
    return fig


def plot_proportions(
    adata: anndata.AnnData,
    cell_type: str,
    key: str = "deconvolution",
    spatial_key: str = "spatial",
    img_key: Optional[str] = None,
    **kwargs,
) -> go.Figure:
    """Spatial feature plot of one cell type's estimated proportion."""
    if spatial_key not in adata.obsm:
        raise ValueError(f"Spatial key '{spatial_key}' not found in adata.obsm")
    if key not in adata.obsm:
        raise ValueError(f"Proportions '{key}' not found in adata.obsm. Run deconvolution first.")

    proportions = adata.obsm[key]
    if not isinstance(proportions, pd.DataFrame):
        raise ValueError(f"obsm['{key}'] must be a DataFrame of cell type proportions")
    if cell_type not in proportions.columns:
        raise ValueError(
            f"Cell type '{cell_type}' not found in obsm['{key}']. Available: {list(proportions.columns)}"
        )

    # Plot from a lightweight view so obs is not modified
    view = anndata.AnnData(
        obs=pd.DataFrame({cell_type: proportions[cell_type].to_numpy()}, index=adata.obs_names),
        obsm={spatial_key: np.asarray(adata.obsm[spatial_key])},
        uns={"spatial": adata.uns["spatial"]} if "spatial" in adata.uns else None,
    )
    return plot_spatial_scatter(
        view,
        color_by=cell_type,
        spatial_key=spatial_key,
        img_key=img_key,
        title=kwargs.pop("title", f"Proportion: {cell_type}"),
        **kwargs,
    )

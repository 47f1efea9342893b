"""Group composition plots and figure export."""

import logging
from pathlib import Path
from typing import Optional, Union

import anndata
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go

logger = logging.getLogger(__name__)


def compute_composition_table(
    adata: anndata.AnnData,
    groupby: str,
    label_col: Optional[str] = None,
    proportions_key: Optional[str] = None,
) -> pd.DataFrame:
    """
    Fraction of each label (or mean proportion of each cell type) per group.

    Returns
    -------
    pd.DataFrame
        Groups x labels; every row sums to 1.
    """
    if groupby not in adata.obs.columns:
        raise ValueError(f"Group column '{groupby}' not found in adata.obs")
    if (label_col is None) == (proportions_key is None):
        raise ValueError("Provide exactly one of 'label_col' or 'proportions_key'")

    groups = adata.obs[groupby].astype(str)
    if label_col is not None:
        if label_col not in adata.obs.columns:
            raise ValueError(f"Label column '{label_col}' not found in adata.obs")
        table = pd.crosstab(groups, adata.obs[label_col].astype(str), normalize="index")
    else:
        if proportions_key not in adata.obsm:
            raise ValueError(f"Proportions '{proportions_key}' not found in adata.obsm")
        proportions = pd.DataFrame(adata.obsm[proportions_key], index=adata.obs_names)
        table = proportions.groupby(groups.to_numpy()).mean()
        table = table.div(table.sum(axis=1).replace(0, 1), axis=0)

    if isinstance(adata.obs[groupby].dtype, pd.CategoricalDtype):
        order = [str(c) for c in adata.obs[groupby].cat.categories if str(c) in table.index]
        table = table.loc[order]
    table.index.name = groupby
    return table


def plot_composition_bars(
    adata: anndata.AnnData,
    groupby: str,
    label_col: Optional[str] = None,
    proportions_key: Optional[str] = None,
    title: Optional[str] = None,
    width: int = 800,
    height: int = 500,
) -> go.Figure:
    """
    Stacked bars of label composition within each group.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    groupby : str
        obs column defining the bars (e.g. clusters or niches).
    label_col : str, optional
        obs column whose label fractions are stacked (cells).
    proportions_key : str, optional
        obsm key of deconvolution proportions averaged per group (spots).
    title : str, optional
        Plot title.
    width, height : int
        Figure size.

    Returns
    -------
    plotly.graph_objects.Figure
        Plotly figure object.
    """
    table = compute_composition_table(adata, groupby, label_col, proportions_key)

    long = table.reset_index().melt(id_vars=groupby, var_name="label", value_name="fraction")
    fig = px.bar(
        long,
        x=groupby,
        y="fraction",
        color="label",
        category_orders={groupby: list(table.index)},
        color_discrete_sequence=px.colors.qualitative.Set2,
        title=title or f"Composition by {groupby}",
    )
    fig.update_layout(
        barmode="stack",
        width=width,
        height=height,
        plot_bgcolor="white",
        yaxis=dict(title="Fraction", range=[0, 1]),
        xaxis=dict(type="category"),
        legend=dict(x=1.02, y=1, xanchor="left", yanchor="top"),
    )
    return fig


def save_figure(fig: go.Figure, path: Union[str, Path]) -> Path:
    """
    Write a figure as standalone HTML (.html) or plotly JSON (.json).

    Returns
    -------
    Path
        The written path.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in (".html", ".json"):
        raise ValueError(f"Unsupported figure format '{suffix}'; use .html or .json")

    path.parent.mkdir(parents=True, exist_ok=True)
    if suffix == ".html":
        fig.write_html(str(path), include_plotlyjs="cdn")
    else:
        fig.write_json(str(path))

    logger.info(f"Saved figure to {path}")
    return path

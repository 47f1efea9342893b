"""Neighborhood composition features for niche analysis."""

import logging
from typing import Optional, Tuple

import anndata
import numpy as np
import pandas as pd
from scipy import sparse

logger = logging.getLogger(__name__)


def _label_indicator(labels: pd.Series) -> Tuple[sparse.csr_matrix, list]:
    """Observations x labels one-hot matrix and the label order."""
    if isinstance(labels.dtype, pd.CategoricalDtype):
        categories = [str(c) for c in labels.cat.categories]
    else:
        categories = sorted(labels.astype(str).unique())
    codes = pd.Categorical(labels.astype(str), categories=categories).codes

    n_obs = len(codes)
    indicator = sparse.csr_matrix(
        (np.ones(n_obs), (np.arange(n_obs), codes)), shape=(n_obs, len(categories))
    )
    return indicator, categories


def _neighbor_graph(
    adata: anndata.AnnData, connectivities_key: str, include_self: bool
) -> sparse.csr_matrix:
    if connectivities_key not in adata.obsp:
        raise ValueError(f"Connectivity key '{connectivities_key}' not found in adata.obsp")

    graph = sparse.csr_matrix(adata.obsp[connectivities_key], dtype=float)
    graph.data[:] = 1.0
    graph.setdiag(1.0 if include_self else 0.0)
    graph.eliminate_zeros()
    return graph


def compute_neighborhood_composition(
    adata: anndata.AnnData,
    cell_type_col: str = "cell_type",
    confidence_col: Optional[str] = None,
    connectivities_key: str = "spatial_connectivities",
    normalize: bool = True,
    include_self: bool = False,
    prefix: str = "niche_comp_",
) -> pd.DataFrame:
    """
    Label composition of each observation's spatial neighborhood.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object with spatial neighbor graph.
    cell_type_col : str
        Column in adata.obs containing labels (cell types or clusters).
    confidence_col : str, optional
        Column in adata.obs with per-observation weights.
    connectivities_key : str
        Key in adata.obsp containing connectivity matrix.
    normalize : bool
        If True, each row sums to 1 (rows without neighbors stay zero).
    include_self : bool
        Count the observation's own label.
    prefix : str
        Prefix of the output column names.

    Returns
    -------
    pd.DataFrame
        Observations x labels composition.
    """
    if cell_type_col not in adata.obs.columns:
        raise ValueError(f"Cell type column '{cell_type_col}' not found in adata.obs")

    logger.info(f"Computing neighborhood composition from '{cell_type_col}'")

    graph = _neighbor_graph(adata, connectivities_key, include_self)
    indicator, categories = _label_indicator(adata.obs[cell_type_col])

    if confidence_col and confidence_col in adata.obs.columns:
        logger.info(f"Using confidence weights from '{confidence_col}'")
        weights = adata.obs[confidence_col].to_numpy(dtype=float)
        indicator = sparse.diags(weights) @ indicator

    composition = np.asarray((graph @ indicator).todense())

    if normalize:
        row_sums = composition.sum(axis=1, keepdims=True)
        composition = np.divide(
            composition, row_sums, out=np.zeros_like(composition), where=row_sums > 0
        )

    return pd.DataFrame(
        composition,
        index=adata.obs.index,
        columns=[f"{prefix}{ct}" for ct in categories],
    )


def add_composition_to_adata(
    adata: anndata.AnnData,
    composition_df: pd.DataFrame,
    obsm_key: str = "neighborhood_composition",
) -> anndata.AnnData:
    """Store a composition table in adata.obsm[obsm_key]."""
    adata.obsm[obsm_key] = composition_df
    logger.info(f"Added neighborhood composition to adata.obsm['{obsm_key}']")
    return adata


def compute_diversity_metrics(composition_df: pd.DataFrame) -> pd.DataFrame:
    """
    Shannon entropy, Simpson diversity and richness of each composition row.

    Rows are normalized to fractions first.
    """
    values = composition_df.to_numpy(dtype=float)
    totals = values.sum(axis=1, keepdims=True)
    p = np.divide(values, totals, out=np.zeros_like(values), where=totals > 0)

    with np.errstate(divide="ignore", invalid="ignore"):
        log_p = np.where(p > 0, np.log(p), 0.0)

    return pd.DataFrame(
        {
            "shannon_entropy": -(p * log_p).sum(axis=1),
            "simpson_diversity": np.where(totals.ravel() > 0, 1 - (p ** 2).sum(axis=1), 0.0),
            "richness": (p > 0).sum(axis=1),
        },
        index=composition_df.index,
    )


def build_niche_assay(
    adata: anndata.AnnData,
    label_col: str,
    connectivities_key: str = "spatial_connectivities",
    include_self: bool = True,
) -> anndata.AnnData:
    """
    Observations x labels assay of neighborhood label counts.

    Parameters
    ----------
    adata : anndata.AnnData
        Cell-level object with a spatial graph.
    label_col : str
        Column in adata.obs with cell labels.
    connectivities_key : str
        Key in adata.obsp containing connectivity matrix.
    include_self : bool
        Count each cell's own label.

    Returns
    -------
    anndata.AnnData
        Counts in X; obs, obsm['spatial'] and uns['spatial'] carried over.
    """
    counts = compute_neighborhood_composition(
        adata,
        cell_type_col=label_col,
        connectivities_key=connectivities_key,
        normalize=False,
        include_self=include_self,
        prefix="",
    )

    assay = anndata.AnnData(
        X=counts.to_numpy(dtype=np.float32),
        obs=adata.obs.copy(),
        var=pd.DataFrame(index=counts.columns.astype(str)),
    )
    if "spatial" in adata.obsm:
        assay.obsm["spatial"] = np.asarray(adata.obsm["spatial"]).copy()
    if "spatial" in adata.uns:
        assay.uns["spatial"] = adata.uns["spatial"]

    logger.info(f"Built niche assay: {assay.n_obs} observations x {assay.n_vars} labels")
    return assay

"""Normalization, feature selection and dimensionality reduction."""

import logging
from typing import Optional

import anndata
import numpy as np
import scanpy as sc
import scipy.sparse as sp

from ..utils.serialize import clean_uns
from .parameters import WorkflowParameters

logger = logging.getLogger(__name__)


def clr_transform(matrix, axis: int = 0) -> np.ndarray:
    """
    Centered log-ratio transform as applied by Seurat's CLR normalization.

    Each vector along ``axis`` becomes ``log1p(x / exp(mean(log1p(x))))``.

    Parameters
    ----------
    matrix : array-like or sparse matrix
        Observations x features matrix of non-negative values.
    axis : int
        0 normalizes each feature across observations, 1 normalizes each
        observation across features.

    Returns
    -------
    np.ndarray
        Dense transformed matrix. All-zero vectors stay zero.
    """
    if axis not in (0, 1):
        raise ValueError(f"axis must be 0 or 1, got {axis}")

    dense = matrix.toarray() if sp.issparse(matrix) else np.asarray(matrix)
    dense = dense.astype(np.float64)
    if np.any(dense < 0):
        raise ValueError("CLR transform requires non-negative values")

    geometric = np.exp(np.log1p(dense).mean(axis=axis, keepdims=True))
    return np.log1p(dense / geometric)


def normalize_data(
    adata: anndata.AnnData,
    method: str = "log",
    target_sum: Optional[float] = 1e4,
    layer: Optional[str] = None,
    axis: int = 0,
) -> anndata.AnnData:
    """
    Normalize counts in place.

    Raw counts are copied to ``layers['counts']`` the first time; the
    normalized matrix is written to ``X`` and ``layers['normalized']``.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    method : {'log', 'clr'}
        'log' scales each observation to ``target_sum`` and applies log1p.
        'clr' applies the centered log-ratio transform along ``axis``.
    target_sum : float, optional
        Total per observation after scaling ('log' only). None uses the
        median of the totals.
    layer : str, optional
        Layer to normalize. Defaults to ``layers['counts']``.
    axis : int
        CLR margin, see :func:`clr_transform`.

    Returns
    -------
    anndata.AnnData
        The same object, modified in place.
    """
    if method not in ("log", "clr"):
        raise ValueError(f"Unknown normalization method: {method}")

    if "counts" not in adata.layers:
        adata.layers["counts"] = adata.X.copy()

    source = layer or "counts"
    if source not in adata.layers:
        raise ValueError(f"Layer '{source}' not found in adata.layers")

    data = adata.layers[source]
    adata.X = data.astype(np.float32) if sp.issparse(data) else np.asarray(data, dtype=np.float32)

    if method == "log":
        logger.info(f"Log-normalizing to target sum {target_sum}")
        sc.pp.normalize_total(adata, target_sum=target_sum)
        sc.pp.log1p(adata)
    else:
        logger.info(f"CLR-normalizing along axis {axis}")
        adata.X = clr_transform(adata.X, axis=axis).astype(np.float32)

    adata.layers["normalized"] = adata.X.copy()
    adata.uns["normalization"] = clean_uns({
        "method": method,
        "target_sum": target_sum if method == "log" else None,
        "axis": axis if method == "clr" else None,
        "source_layer": source,
    })
    return adata


def select_variable_features(
    adata: anndata.AnnData,
    n_top_genes: Optional[int] = 3000,
    flavor: str = "seurat_v3",
    layer: Optional[str] = "counts",
) -> anndata.AnnData:
    """
    Mark highly variable features in ``var['highly_variable']``.

    Targeted panels smaller than ``n_top_genes`` (or ``n_top_genes=None``)
    keep every feature.
    """
    if n_top_genes is None or n_top_genes >= adata.n_vars:
        adata.var["highly_variable"] = True
        logger.info(f"Using all {adata.n_vars} features")
        return adata

    if layer is not None and layer not in adata.layers:
        raise ValueError(f"Layer '{layer}' not found in adata.layers")

    logger.info(f"Selecting {n_top_genes} highly variable genes ({flavor})")
    sc.pp.highly_variable_genes(adata, n_top_genes=n_top_genes, flavor=flavor, layer=layer)
    return adata


def run_pca(
    adata: anndata.AnnData,
    n_comps: int = 30,
    use_highly_variable: bool = True,
    scale: bool = True,
    max_value: Optional[float] = 10,
    random_state: int = 42,
) -> anndata.AnnData:
    """
    Compute PCA on scaled features without altering ``X``.

    Parameters
    ----------
    adata : anndata.AnnData
        Normalized AnnData object.
    n_comps : int
        Number of components, clipped to ``min(n_obs, n_features) - 1``.
    use_highly_variable : bool
        Restrict to ``var['highly_variable']`` when present.
    scale : bool
        Scale features to unit variance first.
    max_value : float, optional
        Clip scaled values.
    random_state : int
        Random seed.

    Returns
    -------
    anndata.AnnData
        Object with ``obsm['X_pca']`` and ``uns['pca']``.
    """
    if use_highly_variable and "highly_variable" in adata.var.columns:
        work = adata[:, adata.var["highly_variable"].to_numpy(dtype=bool)].copy()
    else:
        work = adata.copy()
    # Selection is already applied; keep scanpy from subsetting again
    work.var = work.var.drop(columns=["highly_variable"], errors="ignore")

    max_comps = min(work.n_obs, work.n_vars) - 1
    if max_comps < 1:
        raise ValueError(
            f"Too few observations or features for PCA ({work.n_obs} x {work.n_vars})"
        )
    if n_comps > max_comps:
        logger.warning(f"Reducing n_comps from {n_comps} to {max_comps}")
        n_comps = max_comps

    if scale:
        sc.pp.scale(work, max_value=max_value)

    logger.info(f"Computing {n_comps} principal components on {work.n_vars} features")
    sc.tl.pca(work, n_comps=n_comps, random_state=random_state)

    adata.obsm["X_pca"] = work.obsm["X_pca"]
    adata.uns["pca"] = clean_uns({
        "variance": work.uns["pca"]["variance"],
        "variance_ratio": work.uns["pca"]["variance_ratio"],
        "features": work.var_names.tolist(),
        "params": {"n_comps": n_comps, "scale": scale, "max_value": max_value},
    })
    return adata


def run_umap(
    adata: anndata.AnnData,
    n_neighbors: int = 15,
    n_dims: int = 30,
    use_rep: str = "X_pca",
    random_state: int = 42,
) -> anndata.AnnData:
    """Compute a UMAP embedding in ``obsm['X_umap']`` from a dedicated kNN graph."""
    if use_rep not in adata.obsm:
        raise ValueError(f"Representation '{use_rep}' not found in adata.obsm")

    n_dims = min(n_dims, adata.obsm[use_rep].shape[1])
    n_neighbors = min(n_neighbors, adata.n_obs - 1)

    logger.info(f"Computing UMAP ({n_neighbors} neighbors, {n_dims} dims of {use_rep})")
    sc.pp.neighbors(
        adata,
        n_neighbors=n_neighbors,
        n_pcs=n_dims,
        use_rep=use_rep,
        key_added="umap_neighbors",
        random_state=random_state,
    )
    sc.tl.umap(adata, neighbors_key="umap_neighbors", random_state=random_state)
    return adata


def preprocess(adata: anndata.AnnData, params: WorkflowParameters) -> anndata.AnnData:
    """
    Normalize, select features, and compute PCA and UMAP in place.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object with raw counts.
    params : WorkflowParameters
        Workflow parameters.

    Returns
    -------
    anndata.AnnData
        Preprocessed object.
    """
    logger.info("Starting preprocessing")

    normalize_data(adata, method=params.normalization, target_sum=params.target_sum)
    select_variable_features(adata, n_top_genes=params.n_top_genes)
    run_pca(adata, n_comps=params.n_comps, random_state=params.random_state)
    run_umap(
        adata,
        n_neighbors=params.umap_neighbors,
        n_dims=params.n_comps,
        random_state=params.random_state,
    )

    logger.info("Preprocessing complete")
    return adata

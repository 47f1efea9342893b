"""Utility functions for cluster interpretation."""

import logging
from typing import List, Optional, Tuple

import anndata
import numpy as np
import pandas as pd
import scipy.sparse as sp

logger = logging.getLogger(__name__)

LABEL_KEYWORDS = ["niche", "domain", "cluster", "leiden", "louvain", "kmeans", "cell_type"]

QC_KEYWORDS = [
    "n_counts", "n_features", "ncount", "nfeature", "n_genes",
    "area", "pct_", "percent_", "mito", "_total", "_residual",
]


def get_candidate_label_columns(adata: anndata.AnnData) -> List[str]:
    """
    Grouping columns of adata.obs, likely label columns first.

    Columns whose name contains one of LABEL_KEYWORDS are listed first,
    followed by every other column.
    """
    priority_cols = [
        col for col in adata.obs.columns
        if any(kw in col.lower() for kw in LABEL_KEYWORDS)
    ]
    other_cols = [col for col in adata.obs.columns if col not in priority_cols]
    return priority_cols + other_cols


def get_qc_columns(adata: anndata.AnnData) -> List[str]:
    """Numeric QC-like columns of adata.obs."""
    return [
        col for col in adata.obs.columns
        if any(kw in col.lower() for kw in QC_KEYWORDS)
        and pd.api.types.is_numeric_dtype(adata.obs[col])
    ]


def group_masks(
    adata: anndata.AnnData, label_col: str, group_id
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Boolean masks of one group and of every other labelled observation.

    Labels are compared as strings; observations with a missing label fall
    in neither mask.
    """
    if label_col not in adata.obs.columns:
        raise ValueError(f"Label column '{label_col}' not found in adata.obs")

    labels = adata.obs[label_col]
    labelled = labels.notna().to_numpy()
    in_group = (labels.astype(str) == str(group_id)).to_numpy() & labelled
    return in_group, labelled & ~in_group


def looks_like_counts(expr: np.ndarray) -> bool:
    """True when a matrix holds non-negative integers only."""
    return bool(expr.size) and expr.min() >= 0 and np.allclose(expr, np.round(expr))


def prepare_expression_data(
    adata: anndata.AnnData,
    use_layer: Optional[str] = None,
    normalize: bool = True,
) -> np.ndarray:
    """
    Dense expression matrix for marker computation.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    use_layer : str, optional
        Layer to use for expression data. If None, uses adata.X.
    normalize : bool
        If True and the matrix holds raw counts, scale each observation to
        1e4 and apply log1p.

    Returns
    -------
    np.ndarray
        Expression matrix (observations x genes), float64.
    """
    if use_layer is not None:
        if use_layer not in adata.layers:
            raise ValueError(f"Layer '{use_layer}' not found in adata.layers")
        expr = adata.layers[use_layer]
        logger.debug(f"Using layer '{use_layer}' for expression data")
    else:
        expr = adata.X

    expr = expr.toarray() if sp.issparse(expr) else np.array(expr)
    expr = expr.astype(np.float64)

    if normalize and looks_like_counts(expr):
        logger.info("Data looks like raw counts; applying log1p normalization")
        totals = expr.sum(axis=1, keepdims=True)
        totals[totals == 0] = 1
        expr = np.log1p(expr / totals * 1e4)

    return expr

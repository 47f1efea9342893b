"""QC summary statistics."""

import logging
from typing import Dict, List, Optional

import anndata
import numpy as np
import pandas as pd
import scipy.sparse as sp

logger = logging.getLogger(__name__)

QC_KEYWORDS = ("count", "feature", "area", "qc", "control", "transcript")


def compute_cell_statistics(adata: anndata.AnnData, layer: Optional[str] = None) -> pd.DataFrame:
    """
    Compute per-observation totals without modifying ``adata``.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    layer : str, optional
        Layer to use. If None, uses adata.X.

    Returns
    -------
    pd.DataFrame
        Columns 'n_counts' and 'n_features', indexed like adata.obs.
    """
    data = adata.layers[layer] if layer is not None else adata.X

    if sp.issparse(data):
        n_counts = np.asarray(data.sum(axis=1)).ravel()
        n_features = np.asarray((data > 0).sum(axis=1)).ravel()
    else:
        data = np.asarray(data)
        n_counts = data.sum(axis=1)
        n_features = (data > 0).sum(axis=1)

    return pd.DataFrame(
        {"n_counts": n_counts, "n_features": n_features},
        index=adata.obs.index,
    )


def _describe(col_data: pd.Series) -> Dict[str, float]:
    return {
        "mean": float(col_data.mean()),
        "median": float(col_data.median()),
        "std": float(col_data.std()),
        "min": float(col_data.min()),
        "max": float(col_data.max()),
        "q25": float(col_data.quantile(0.25)),
        "q75": float(col_data.quantile(0.75)),
    }


def compute_qc_summary(
    adata: anndata.AnnData,
    qc_columns: Optional[List[str]] = None,
    group_by: Optional[str] = None,
) -> Dict:
    """
    Compute summary statistics for QC metrics.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    qc_columns : list of str, optional
        QC metric columns to summarize. If None, numeric columns whose names
        mention counts, features, area or controls are used.
    group_by : str, optional
        Column name to group by (e.g., 'sample_id').

    Returns
    -------
    dict
        'qc_columns', 'n_cells', 'overall' and optionally 'by_group'.
    """
    if qc_columns is None:
        numeric_cols = adata.obs.select_dtypes(include=[np.number]).columns.tolist()
        qc_columns = [
            col for col in numeric_cols if any(k in col.lower() for k in QC_KEYWORDS)
        ]

    summary = {
        "qc_columns": qc_columns,
        "n_cells": adata.n_obs,
        "overall": {
            col: _describe(adata.obs[col]) for col in qc_columns if col in adata.obs.columns
        },
    }

    if group_by and group_by in adata.obs.columns:
        summary["by_group"] = {}
        for group_name, group_data in adata.obs.groupby(group_by, observed=True):
            entry = {"n_cells": len(group_data)}
            for col in qc_columns:
                if col in group_data.columns:
                    entry[col] = {
                        "mean": float(group_data[col].mean()),
                        "median": float(group_data[col].median()),
                    }
            summary["by_group"][str(group_name)] = entry

    return summary


def compute_filter_stats(
    adata: anndata.AnnData, mask: Optional[np.ndarray] = None, group_by: Optional[str] = None
) -> Dict:
    """
    Compute statistics about filtering results.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    mask : np.ndarray, optional
        Boolean mask of observations that passed filters. None keeps everything.
    group_by : str, optional
        Column for per-group statistics. Defaults to 'sample_id' when present.

    Returns
    -------
    dict
        'total_cells', 'kept_cells', 'removed_cells', 'kept_fraction' and
        optionally 'by_group'.

    Raises
    ------
    ValueError
        If mask has the wrong type or length.
    """
    total = adata.n_obs

    if mask is None:
        mask = np.ones(total, dtype=bool)

    if not isinstance(mask, (np.ndarray, pd.Series)):
        raise ValueError(f"mask must be numpy array or pandas Series, got {type(mask)}")
    if len(mask) != total:
        raise ValueError(f"mask length ({len(mask)}) does not match number of cells ({total})")

    mask = np.asarray(mask, dtype=bool)
    n_kept = int(np.sum(mask))

    stats = {
        "total_cells": total,
        "kept_cells": n_kept,
        "removed_cells": total - n_kept,
        "kept_fraction": float(n_kept / total) if total > 0 else 0.0,
    }

    if group_by is None and "sample_id" in adata.obs.columns:
        group_by = "sample_id"

    if group_by and group_by in adata.obs.columns:
        stats["by_group"] = {}
        groups = adata.obs[group_by].to_numpy()
        for group_name in pd.unique(groups):
            group_mask = groups == group_name
            group_total = int(np.sum(group_mask))
            group_kept = int(np.sum(mask & group_mask))
            stats["by_group"][str(group_name)] = {
                "total_cells": group_total,
                "kept_cells": group_kept,
                "removed_cells": group_total - group_kept,
                "kept_fraction": float(group_kept / group_total) if group_total > 0 else 0.0,
            }

    return stats


def identify_problematic_cells(
    adata: anndata.AnnData, thresholds: Optional[Dict[str, tuple]] = None
) -> pd.DataFrame:
    """
    List observations that fail QC thresholds, with the reasons.

    Returns
    -------
    pd.DataFrame
        Columns 'cell_id', 'n_failures' and 'reasons'.
    """
    if thresholds is None:
        thresholds = {"n_counts": (10, None), "n_features": (5, None)}

    reasons = pd.Series([[] for _ in range(adata.n_obs)], index=adata.obs.index)

    for col, (min_val, max_val) in thresholds.items():
        if col not in adata.obs.columns:
            continue
        values = adata.obs[col]
        if min_val is not None:
            for idx in values.index[values < min_val]:
                reasons[idx].append(f"{col} < {min_val} (value: {values[idx]})")
        if max_val is not None:
            for idx in values.index[values > max_val]:
                reasons[idx].append(f"{col} > {max_val} (value: {values[idx]})")

    failed = reasons[reasons.map(len) > 0]
    return pd.DataFrame(
        {
            "cell_id": failed.index.astype(str),
            "n_failures": failed.map(len).to_numpy(dtype=int),
            "reasons": failed.map("; ".join).to_numpy(dtype=object),
        }
    )


def compare_pre_post_filtering(
    adata_pre: anndata.AnnData,
    adata_post: anndata.AnnData,
    metrics: Optional[List[str]] = None,
) -> pd.DataFrame:
    """Compare mean QC metrics before and after filtering."""
    if metrics is None:
        numeric_pre = set(adata_pre.obs.select_dtypes(include=[np.number]).columns)
        numeric_post = set(adata_post.obs.select_dtypes(include=[np.number]).columns)
        metrics = sorted(numeric_pre & numeric_post)

    rows = []
    for metric in metrics:
        pre_mean = adata_pre.obs[metric].mean()
        post_mean = adata_post.obs[metric].mean()
        rows.append(
            {
                "metric": metric,
                "n_pre": adata_pre.n_obs,
                "n_post": adata_post.n_obs,
                "pre_mean": pre_mean,
                "post_mean": post_mean,
                "change": post_mean - pre_mean,
                "percent_change": 100 * (post_mean - pre_mean) / pre_mean if pre_mean != 0 else 0,
            }
        )

    return pd.DataFrame(rows)

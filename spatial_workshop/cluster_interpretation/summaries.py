"""Cluster summary computation."""

import logging
from typing import List, Optional

import anndata
import pandas as pd

from .utils import group_masks

logger = logging.getLogger(__name__)


def _ordered_groups(labels: pd.Series) -> List[str]:
    """Observed groups as strings, in category order when categorical."""
    labels = labels.dropna()
    if isinstance(labels.dtype, pd.CategoricalDtype):
        observed = set(labels.astype(str))
        return [str(c) for c in labels.cat.categories if str(c) in observed]
    return sorted(labels.astype(str).unique())


def compute_cluster_summary(
    adata: anndata.AnnData,
    label_col: str,
    sample_col: Optional[str] = None,
    exclude_na: bool = True,
) -> pd.DataFrame:
    """
    Size of every group, optionally broken down by sample.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    label_col : str
        Column in adata.obs containing group labels.
    sample_col : str, optional
        Column in adata.obs containing sample IDs. Adds one count column
        per sample.
    exclude_na : bool
        If True, exclude observations with a missing label.

    Returns
    -------
    pd.DataFrame
        Columns: group_id, n_cells, percent_of_total, [per-sample counts].
    """
    if label_col not in adata.obs.columns:
        raise ValueError(f"Label column '{label_col}' not found in adata.obs")

    obs = adata.obs[adata.obs[label_col].notna()] if exclude_na else adata.obs
    labels = obs[label_col].astype(str)

    groups = _ordered_groups(obs[label_col])
    if not exclude_na and obs[label_col].isna().any():
        groups.append("nan")

    counts = labels.value_counts().reindex(groups, fill_value=0)
    summary = pd.DataFrame({
        "group_id": groups,
        "n_cells": counts.to_numpy(),
        "percent_of_total": (counts.to_numpy() / max(len(obs), 1) * 100).round(2),
    })

    if sample_col is not None:
        if sample_col not in obs.columns:
            raise ValueError(f"Sample column '{sample_col}' not found in adata.obs")
        crosstab = pd.crosstab(labels, obs[sample_col].astype(str)).reindex(groups, fill_value=0)
        for sample in crosstab.columns:
            summary[sample] = crosstab[sample].to_numpy()
        logger.info(f"Added per-sample counts for {len(crosstab.columns)} samples")

    logger.info(f"Computed summary for {len(summary)} groups in '{label_col}'")
    return summary


def compute_group_composition(
    adata: anndata.AnnData,
    label_col: str,
    group_id: str,
    celltype_col: str,
) -> pd.DataFrame:
    """
    Cell type composition of one group.

    Returns
    -------
    pd.DataFrame
        Columns: cell_type, n_cells, percent; most abundant first.
    """
    if celltype_col not in adata.obs.columns:
        raise ValueError(f"Cell type column '{celltype_col}' not found in adata.obs")

    in_mask, _ = group_masks(adata, label_col, group_id)
    group_obs = adata.obs[in_mask]

    if len(group_obs) == 0:
        logger.warning(f"Group '{group_id}' has no cells")
        return pd.DataFrame(columns=["cell_type", "n_cells", "percent"])

    counts = group_obs[celltype_col].astype(str).value_counts()
    composition = pd.DataFrame({
        "cell_type": counts.index,
        "n_cells": counts.to_numpy(),
        "percent": (counts.to_numpy() / len(group_obs) * 100).round(2),
    })
    return composition.sort_values("n_cells", ascending=False, kind="stable").reset_index(drop=True)


def compare_qc_metrics(
    adata: anndata.AnnData,
    label_col: str,
    group_id: str,
    qc_columns: List[str],
) -> pd.DataFrame:
    """
    Compare QC metrics between one group and all other labelled observations.

    Missing or non-numeric columns are skipped with a warning.

    Returns
    -------
    pd.DataFrame
        Columns: metric, mean_in_group, median_in_group, mean_other, median_other.
    """
    columns = ["metric", "mean_in_group", "median_in_group", "mean_other", "median_other"]
    in_mask, out_mask = group_masks(adata, label_col, group_id)

    results = []
    for col in qc_columns:
        if col not in adata.obs.columns:
            logger.warning(f"QC column '{col}' not found, skipping")
            continue
        if not pd.api.types.is_numeric_dtype(adata.obs[col]):
            logger.warning(f"QC column '{col}' is not numeric, skipping")
            continue

        group_values = adata.obs.loc[in_mask, col].dropna()
        other_values = adata.obs.loc[out_mask, col].dropna()
        if len(group_values) == 0 or len(other_values) == 0:
            continue

        results.append({
            "metric": col,
            "mean_in_group": group_values.mean(),
            "median_in_group": group_values.median(),
            "mean_other": other_values.mean(),
            "median_other": other_values.median(),
        })

    return pd.DataFrame(results, columns=columns)

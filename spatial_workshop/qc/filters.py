"""QC metrics and filtering for spots and cells."""

import logging
from typing import Dict, List, Optional

import anndata
import numpy as np
import scipy.sparse as sp

logger = logging.getLogger(__name__)

# Default thresholds per assay: (min, max) on obs columns written by calculate_qc_metrics
DEFAULT_THRESHOLDS = {
    "Visium": {"n_counts": (500, None), "n_features": (200, None)},
    "Xenium": {"n_counts": (10, None), "n_features": (5, None)},
}


def _get_matrix(adata: anndata.AnnData, layer: Optional[str]):
    if layer is None:
        return adata.X
    if layer not in adata.layers:
        raise ValueError(f"Layer '{layer}' not found in adata.layers")
    return adata.layers[layer]


def calculate_qc_metrics(adata: anndata.AnnData, layer: Optional[str] = None) -> anndata.AnnData:
    """
    Add per-observation and per-feature count metrics.

    Writes ``obs['n_counts']``, ``obs['n_features']`` and ``var['n_cells']``.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    layer : str, optional
        Layer holding raw counts. If None, uses ``layers['counts']`` when
        present and ``X`` otherwise.

    Returns
    -------
    anndata.AnnData
        The same object, modified in place.
    """
    if layer is None and "counts" in adata.layers:
        layer = "counts"
    data = _get_matrix(adata, layer)

    if sp.issparse(data):
        data = sp.csr_matrix(data)
        n_counts = np.asarray(data.sum(axis=1)).ravel()
        n_features = np.asarray(data.getnnz(axis=1)).ravel()
        n_cells = np.asarray((data > 0).sum(axis=0)).ravel()
    else:
        data = np.asarray(data)
        n_counts = data.sum(axis=1)
        n_features = (data > 0).sum(axis=1)
        n_cells = (data > 0).sum(axis=0)

    adata.obs["n_counts"] = n_counts.astype(float)
    adata.obs["n_features"] = n_features.astype(int)
    adata.var["n_cells"] = n_cells.astype(int)

    logger.info(
        f"QC metrics: median counts {np.median(n_counts):.1f}, "
        f"median features {np.median(n_features):.1f}"
    )
    return adata


def create_filter_mask(
    adata: anndata.AnnData, filter_criteria: Dict[str, tuple]
) -> np.ndarray:
    """
    Create a boolean mask for observations based on metadata criteria.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    filter_criteria : dict
        Dictionary mapping column names to (min_value, max_value) tuples.
        Use None for unbounded. Example:
        {'n_counts': (500, None), 'n_features': (200, 8000)}

    Returns
    -------
    np.ndarray
        Boolean mask where True indicates observations that pass all filters.
    """
    mask = np.ones(adata.n_obs, dtype=bool)

    for col_name, (min_val, max_val) in filter_criteria.items():
        if col_name not in adata.obs.columns:
            logger.warning(f"Column '{col_name}' not found in adata.obs. Skipping.")
            continue

        col_data = adata.obs[col_name].to_numpy()

        if min_val is not None:
            mask &= col_data >= min_val
        if max_val is not None:
            mask &= col_data <= max_val

        logger.info(
            f"Filter '{col_name}' [{min_val}, {max_val}]: "
            f"{np.sum(~mask)} filtered, {np.sum(mask)} remaining"
        )

    return mask


def apply_qc_filters(
    adata: anndata.AnnData,
    filter_criteria: Optional[Dict[str, tuple]] = None,
    inplace: bool = False,
    add_qc_column: bool = True,
) -> anndata.AnnData:
    """
    Apply QC filters to an AnnData object.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    filter_criteria : dict, optional
        Dictionary mapping column names to (min_value, max_value) tuples.
        Defaults to the thresholds for the object's ``assay_type``.
    inplace : bool
        If True, subset adata in place and return it. Otherwise return a copy.
    add_qc_column : bool
        If True, add a 'qc_pass' column to adata.obs before filtering.

    Returns
    -------
    anndata.AnnData
        Filtered AnnData object.
    """
    if filter_criteria is None:
        assay = None
        if "assay_type" in adata.obs.columns and adata.n_obs > 0:
            assay = str(adata.obs["assay_type"].iloc[0])
        filter_criteria = DEFAULT_THRESHOLDS.get(assay, {})
        logger.info(f"Using default {assay} thresholds: {filter_criteria}")

    mask = create_filter_mask(adata, filter_criteria)

    if add_qc_column:
        adata.obs["qc_pass"] = mask

    n_filtered = int(np.sum(~mask))
    logger.info(
        f"QC filtering complete: {int(np.sum(mask))} kept, {n_filtered} filtered "
        f"({100 * n_filtered / max(adata.n_obs, 1):.1f}%)"
    )

    if inplace:
        adata._inplace_subset_obs(mask)
        return adata
    return adata[mask, :].copy()


def filter_features(
    adata: anndata.AnnData,
    min_cells: int = 3,
    layer: Optional[str] = None,
    inplace: bool = False,
) -> anndata.AnnData:
    """
    Drop features detected in fewer than ``min_cells`` observations.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    min_cells : int
        Minimum number of observations with a non-zero value.
    layer : str, optional
        Layer to count detections in. Defaults as in calculate_qc_metrics.
    inplace : bool
        If True, subset adata in place and return it.

    Returns
    -------
    anndata.AnnData
        Object restricted to the retained features.
    """
    if "n_cells" not in adata.var.columns:
        calculate_qc_metrics(adata, layer=layer)

    keep = adata.var["n_cells"].to_numpy() >= min_cells
    logger.info(
        f"Feature filter (min_cells={min_cells}): "
        f"{int(np.sum(~keep))} removed, {int(np.sum(keep))} kept"
    )

    if inplace:
        adata._inplace_subset_var(keep)
        return adata
    return adata[:, keep].copy()


def filter_by_boolean_flags(
    adata: anndata.AnnData,
    flag_columns: List[str],
    require_all: bool = True,
    invert: bool = False,
) -> np.ndarray:
    """
    Build a mask from boolean flag columns such as ``in_tissue``.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    flag_columns : list of str
        Boolean column names in adata.obs.
    require_all : bool
        If True, all flags must be True (AND). Otherwise any flag (OR).
    invert : bool
        If True, keep observations where the combined flag is False.

    Returns
    -------
    np.ndarray
        Boolean mask.
    """
    masks = []
    for col in flag_columns:
        if col not in adata.obs.columns:
            logger.warning(f"Flag column '{col}' not found. Skipping.")
            continue
        masks.append(adata.obs[col].astype(bool).to_numpy())

    if not masks:
        logger.warning("No valid flag columns found. Returning all True mask.")
        return np.ones(adata.n_obs, dtype=bool)

    combined_mask = np.all(masks, axis=0) if require_all else np.any(masks, axis=0)

    if invert:
        combined_mask = ~combined_mask

    return combined_mask


def filter_by_sample(
    adata: anndata.AnnData, sample_ids: List[str], sample_col: str = "sample_id"
) -> np.ndarray:
    """Mask of observations belonging to ``sample_ids``."""
    if sample_col not in adata.obs.columns:
        raise ValueError(f"Sample column '{sample_col}' not found in adata.obs")

    mask = adata.obs[sample_col].astype(str).isin([str(s) for s in sample_ids]).to_numpy()
    logger.info(f"Sample filter: keeping {int(np.sum(mask))} observations from {sample_ids}")
    return mask


def filter_outliers_mad(
    adata: anndata.AnnData,
    column: str,
    n_mads: float = 5.0,
    only_upper: bool = False,
    log_transform: bool = False,
) -> np.ndarray:
    """
    Flag outliers by median absolute deviation (MAD).

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    column : str
        Numeric column in adata.obs.
    n_mads : float
        Number of MADs from the median used as threshold.
    only_upper : bool
        If True, only values above median + n_mads * MAD are outliers.
    log_transform : bool
        If True, thresholds are computed on log1p of the values, which suits
        heavy tailed count totals.

    Returns
    -------
    np.ndarray
        Boolean mask of observations that are not outliers.
    """
    if column not in adata.obs.columns:
        raise ValueError(f"Column '{column}' not found in adata.obs")

    values = adata.obs[column].astype(float).to_numpy()
    if log_transform:
        values = np.log1p(values)

    median = np.median(values)
    mad = np.median(np.abs(values - median))
    upper = median + n_mads * mad

    if only_upper:
        mask = values <= upper
    else:
        lower = median - n_mads * mad
        mask = (values >= lower) & (values <= upper)

    logger.info(f"MAD filter ({column}): removed {int(np.sum(~mask))} outliers")
    return mask

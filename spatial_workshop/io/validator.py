"""Schema checks for imported spatial AnnData objects."""

import logging
from typing import Dict, List, Optional, Tuple

import anndata
import numpy as np
import scipy.sparse as sp

logger = logging.getLogger(__name__)

SUPPORTED_ASSAYS = ("Visium", "Xenium")


def validate_schema(adata: anndata.AnnData, strict: bool = False) -> Tuple[bool, List[str]]:
    """
    Validate that the AnnData object has the layout the workflow expects.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    strict : bool
        If True, missing spatial coordinates, raw counts or sample ids are errors.

    Returns
    -------
    tuple of (bool, list)
        (is_valid, list of warning/error messages)
    """
    messages = []
    is_valid = True

    if adata.n_obs == 0:
        messages.append("ERROR: No observations (spots or cells) in the dataset.")
        is_valid = False

    if adata.n_vars == 0:
        messages.append("ERROR: No features (genes) in the dataset.")
        is_valid = False

    if adata.X is None and not adata.layers:
        messages.append("ERROR: No data matrix found (neither adata.X nor adata.layers).")
        is_valid = False

    if not adata.obs.index.is_unique:
        messages.append("ERROR: Observation ids (obs.index) are not unique.")
        is_valid = False

    if not adata.var.index.is_unique:
        messages.append("WARNING: Feature names are not unique; call var_names_make_unique().")

    has_spatial = "spatial" in adata.obsm
    if has_spatial:
        coords = np.asarray(adata.obsm["spatial"])
        if coords.ndim != 2 or coords.shape[1] != 2:
            messages.append(
                f"ERROR: obsm['spatial'] should have 2 columns (x, y), found shape {coords.shape}."
            )
            is_valid = False
        elif np.any(np.isnan(coords)):
            messages.append("WARNING: Spatial coordinates contain NaN values.")
    elif strict:
        messages.append("ERROR: No spatial coordinates found in adata.obsm['spatial'].")
        is_valid = False
    else:
        messages.append("WARNING: No spatial coordinates found in adata.obsm['spatial'].")

    if "counts" not in adata.layers:
        msg = "raw counts not found in adata.layers['counts']."
        if strict:
            messages.append(f"ERROR: {msg}")
            is_valid = False
        else:
            messages.append(f"WARNING: {msg}")

    if "sample_id" not in adata.obs.columns:
        msg = "no 'sample_id' column in adata.obs."
        if strict:
            messages.append(f"ERROR: {msg}")
            is_valid = False
        else:
            messages.append(f"WARNING: {msg}")

    if "assay_type" in adata.obs.columns:
        unknown = set(adata.obs["assay_type"].astype(str)) - set(SUPPORTED_ASSAYS)
        if unknown:
            messages.append(f"WARNING: Unrecognized assay types: {sorted(unknown)}")

    for library_id, entry in adata.uns.get("spatial", {}).items():
        if not isinstance(entry, dict):
            continue
        scalefactors = entry.get("scalefactors", {})
        for img_key in entry.get("images", {}):
            if f"tissue_{img_key}_scalef" not in scalefactors:
                messages.append(
                    f"WARNING: Image '{img_key}' of '{library_id}' has no "
                    f"'tissue_{img_key}_scalef' scale factor."
                )

    logger.info(f"Validation completed: {'PASSED' if is_valid else 'FAILED'}")
    for msg in messages:
        if msg.startswith("ERROR"):
            logger.error(msg)
        else:
            logger.warning(msg)

    return is_valid, messages


def check_required_fields(
    adata: anndata.AnnData,
    required_obs_cols: Optional[List[str]] = None,
    required_obsm_keys: Optional[List[str]] = None,
    required_obsp_keys: Optional[List[str]] = None,
) -> Tuple[bool, Dict[str, List[str]]]:
    """
    Check for required fields in adata.obs, adata.obsm and adata.obsp.

    Returns
    -------
    tuple of (bool, dict)
        (all_present, dict with 'missing_obs', 'missing_obsm' and 'missing_obsp' lists)
    """
    missing = {
        "missing_obs": [c for c in (required_obs_cols or []) if c not in adata.obs.columns],
        "missing_obsm": [k for k in (required_obsm_keys or []) if k not in adata.obsm],
        "missing_obsp": [k for k in (required_obsp_keys or []) if k not in adata.obsp],
    }

    all_present = not any(missing.values())
    if not all_present:
        logger.warning(f"Missing required fields: {missing}")

    return all_present, missing


def check_data_types(adata: anndata.AnnData) -> Dict[str, str]:
    """Map each matrix-like field (X, layers, obsm) to its dtype."""
    dtypes = {}

    if adata.X is not None:
        dtypes["X"] = str(adata.X.dtype)

    for layer_name, layer_data in adata.layers.items():
        dtypes[f"layers/{layer_name}"] = str(layer_data.dtype)

    for obsm_key, obsm_data in adata.obsm.items():
        if hasattr(obsm_data, "dtype"):
            dtypes[f"obsm/{obsm_key}"] = str(obsm_data.dtype)
        else:
            dtypes[f"obsm/{obsm_key}"] = "dataframe"

    return dtypes


def check_counts_data(adata: anndata.AnnData, layer: Optional[str] = None) -> Dict:
    """
    Check if the data looks like raw counts.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    layer : str, optional
        Layer to check. If None, checks adata.X.

    Returns
    -------
    dict
        'is_integer', 'has_negative', 'max_value', 'mean_value', 'sparsity'.
    """
    if layer is not None:
        if layer not in adata.layers:
            raise ValueError(f"Layer '{layer}' not found in adata.layers")
        data = adata.layers[layer]
    else:
        data = adata.X

    if data is None:
        raise ValueError("No data matrix found")

    # Sample at most 100 rows from large matrices
    if data.shape[0] > 100:
        rng = np.random.default_rng(0)
        row_idx = np.sort(rng.choice(data.shape[0], size=100, replace=False))
        data = data[row_idx, :]

    if sp.issparse(data):
        sample_data = data.toarray().flatten()
    else:
        sample_data = np.asarray(data).flatten()

    return {
        "is_integer": bool(np.allclose(sample_data, np.round(sample_data))),
        "has_negative": bool(np.any(sample_data < 0)),
        "max_value": float(np.max(sample_data)) if sample_data.size else 0.0,
        "mean_value": float(np.mean(sample_data)) if sample_data.size else 0.0,
        "sparsity": float(np.mean(sample_data == 0)) if sample_data.size else 1.0,
    }

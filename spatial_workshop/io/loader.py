"""Loading and saving the h5ad on-disk container, with column mapping detection."""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import anndata
import pandas as pd

logger = logging.getLogger(__name__)

X_CANDIDATES = [
    "x_centroid",
    "pxl_col_in_fullres",
    "x_location",
    "x_slide_mm",
    "x_FOV_px",
    "x",
    "X",
]
Y_CANDIDATES = [
    "y_centroid",
    "pxl_row_in_fullres",
    "y_location",
    "y_slide_mm",
    "y_FOV_px",
    "y",
    "Y",
]
SAMPLE_ID_CANDIDATES = ["sample_id", "SampleID", "sample", "Sample", "Tissue", "tissue"]
CELL_TYPE_CANDIDATES = [
    "cell_type",
    "celltype",
    "CellType",
    "cell_type_1",
    "cell_label",
    "annotation",
    "predicted_cell_type",
]
CONFIDENCE_CANDIDATES = [
    "confidence",
    "posterior_probability",
    "probability",
    "cell_type_confidence",
]


def load_h5ad(file_path: Union[str, Path], backed: bool = False) -> anndata.AnnData:
    """
    Load an H5AD file.

    Parameters
    ----------
    file_path : str or Path
        Path to H5AD file.
    backed : bool
        If True, open read-only in backed mode: the expression matrix stays on
        disk and is read lazily. Use ``adata.to_memory()`` to materialize it.

    Returns
    -------
    anndata.AnnData
        Loaded AnnData object.
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"H5AD file not found: {file_path}")

    logger.info(f"Loading H5AD file: {file_path}{' (backed)' if backed else ''}")
    adata = anndata.read_h5ad(file_path, backed="r" if backed else None)
    logger.info(f"Loaded {adata.n_obs} observations × {adata.n_vars} features")
    return adata


def save_h5ad(
    adata: anndata.AnnData,
    file_path: Union[str, Path],
    compression: Optional[str] = "gzip",
) -> Path:
    """
    Write an AnnData object to H5AD, creating parent directories.

    Parameters
    ----------
    adata : anndata.AnnData
        Object to save.
    file_path : str or Path
        Destination path.
    compression : str, optional
        HDF5 compression filter ('gzip', 'lzf' or None).

    Returns
    -------
    Path
        The written path.
    """
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    logger.info(f"Saving {adata.n_obs} observations × {adata.n_vars} features to {file_path}")
    adata.write_h5ad(file_path, compression=compression)
    return file_path


def _first_present(candidates: List[str], columns: List[str]) -> Optional[str]:
    for col in candidates:
        if col in columns:
            return col
    return None


def detect_mappings(adata: anndata.AnnData) -> Dict[str, Optional[str]]:
    """
    Auto-detect column mappings for coordinates, sample_id, and cell_type.

    Looks for common column names in adata.obs and spatial coordinates in adata.obsm.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.

    Returns
    -------
    dict
        Dictionary with detected mappings:
        - 'x_col': x coordinate column
        - 'y_col': y coordinate column
        - 'sample_id_col': sample identifier column
        - 'cell_type_col': cell type column (optional)
        - 'confidence_col': confidence/probability column (optional)
        - 'spatial_key': key in obsm for spatial coords
        - 'units': coordinate units ('um', 'mm', 'px' or 'unknown')
    """
    mappings = {
        "x_col": None,
        "y_col": None,
        "sample_id_col": None,
        "cell_type_col": None,
        "confidence_col": None,
        "spatial_key": None,
        "units": None,
    }

    obs_cols = adata.obs.columns.tolist()

    if "spatial" in adata.obsm:
        mappings["spatial_key"] = "spatial"
    elif "X_spatial" in adata.obsm:
        mappings["spatial_key"] = "X_spatial"

    mappings["x_col"] = _first_present(X_CANDIDATES, obs_cols)
    mappings["y_col"] = _first_present(Y_CANDIDATES, obs_cols)

    x_col = mappings["x_col"]
    if x_col is not None:
        if x_col in ("x_centroid", "x_location"):
            mappings["units"] = "um"
        elif "_mm" in x_col:
            mappings["units"] = "mm"
        elif "_px" in x_col or "pxl" in x_col:
            mappings["units"] = "px"
        else:
            mappings["units"] = "unknown"

    assay_type = None
    if "assay_type" in obs_cols and adata.n_obs > 0:
        assay_type = str(adata.obs["assay_type"].iloc[0])
    if mappings["units"] is None and assay_type is not None:
        mappings["units"] = {"Xenium": "um", "Visium": "px"}.get(assay_type, "unknown")

    mappings["sample_id_col"] = _first_present(SAMPLE_ID_CANDIDATES, obs_cols)
    mappings["cell_type_col"] = _first_present(CELL_TYPE_CANDIDATES, obs_cols)
    mappings["confidence_col"] = _first_present(CONFIDENCE_CANDIDATES, obs_cols)

    for key, value in mappings.items():
        if value is not None:
            logger.info(f"Detected {key}: {value}")

    return mappings


def get_available_columns(adata: anndata.AnnData) -> Dict[str, List[str]]:
    """
    Get lists of available columns for selection.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.

    Returns
    -------
    dict
        Dictionary with lists of available columns:
        - 'obs_columns': all observation columns
        - 'numeric_columns': numeric observation columns
        - 'categorical_columns': categorical observation columns
        - 'obsm_keys': keys in obsm
        - 'obsp_keys': keys in obsp
        - 'layers': available layers
    """
    obs_cols = adata.obs.columns.tolist()
    numeric_cols = adata.obs.select_dtypes(include=["number"]).columns.tolist()
    categorical_cols = adata.obs.select_dtypes(
        include=["object", "category"]
    ).columns.tolist()

    return {
        "obs_columns": obs_cols,
        "numeric_columns": numeric_cols,
        "categorical_columns": categorical_cols,
        "obsm_keys": list(adata.obsm.keys()),
        "obsp_keys": list(adata.obsp.keys()),
        "layers": list(adata.layers.keys()) if adata.layers else [],
    }


def summarize_adata(adata: anndata.AnnData) -> Dict:
    """
    Generate a summary of the AnnData object.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.

    Returns
    -------
    dict
        Summary statistics and metadata.
    """
    summary = {
        "n_obs": adata.n_obs,
        "n_vars": adata.n_vars,
        "obs_columns": adata.obs.columns.tolist(),
        "obsm_keys": list(adata.obsm.keys()),
        "obsp_keys": list(adata.obsp.keys()),
        "layers": list(adata.layers.keys()) if adata.layers else [],
        "uns_keys": list(adata.uns.keys()) if adata.uns else [],
    }

    if "assay_type" in adata.obs.columns:
        summary["assay_types"] = adata.obs["assay_type"].astype(str).unique().tolist()

    if "sample_id" in adata.obs.columns:
        summary["n_samples"] = adata.obs["sample_id"].nunique()
        summary["cells_per_sample"] = adata.obs["sample_id"].value_counts().to_dict()

    images = {}
    for library_id, entry in adata.uns.get("spatial", {}).items():
        if isinstance(entry, dict):
            images[library_id] = list(entry.get("images", {}).keys())
    if images:
        summary["images"] = images

    return summary

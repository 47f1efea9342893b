"""Coordinate and metadata normalization for imported datasets."""

import logging
from typing import Optional

import anndata
import numpy as np

from .loader import X_CANDIDATES, Y_CANDIDATES, SAMPLE_ID_CANDIDATES

logger = logging.getLogger(__name__)

# Factors to convert coordinates into microns
UNIT_TO_UM = {"um": 1.0, "mm": 1000.0}


def ensure_spatial_coords(
    adata: anndata.AnnData,
    x_col: Optional[str] = None,
    y_col: Optional[str] = None,
    spatial_key: str = "spatial",
    overwrite: bool = False,
) -> anndata.AnnData:
    """
    Ensure spatial coordinates are in adata.obsm[spatial_key].

    If x_col and y_col are given they are used; otherwise well-known column
    names (Xenium centroids, Visium pixel positions) are tried.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    x_col, y_col : str, optional
        Coordinate columns in adata.obs.
    spatial_key : str
        Key to use in adata.obsm for spatial coordinates.
    overwrite : bool
        If True, overwrite existing spatial coordinates.

    Returns
    -------
    anndata.AnnData
        Modified AnnData object with spatial coordinates in obsm.
    """
    if spatial_key in adata.obsm and not overwrite:
        logger.info(f"Spatial coordinates already exist in adata.obsm['{spatial_key}']")
        return adata

    if x_col is None or y_col is None:
        x_col = x_col or next((c for c in X_CANDIDATES if c in adata.obs.columns), None)
        y_col = y_col or next((c for c in Y_CANDIDATES if c in adata.obs.columns), None)

    if x_col and y_col:
        for col in (x_col, y_col):
            if col not in adata.obs.columns:
                raise ValueError(f"Column '{col}' not found in adata.obs")

        adata.obsm[spatial_key] = adata.obs[[x_col, y_col]].values.astype(float)
        logger.info(
            f"Created spatial coordinates in adata.obsm['{spatial_key}'] from {x_col}, {y_col}"
        )
    elif spatial_key not in adata.obsm:
        raise ValueError(
            f"No spatial coordinates found. Please provide x_col and y_col, "
            f"or ensure adata.obsm['{spatial_key}'] exists."
        )

    return adata


def normalize_metadata(
    adata: anndata.AnnData,
    cell_id_col: Optional[str] = None,
    sample_id_col: Optional[str] = None,
) -> anndata.AnnData:
    """
    Ensure 'cell_id' and 'sample_id' columns exist in adata.obs.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    cell_id_col : str, optional
        Column name to use as cell_id. If None, uses the index.
    sample_id_col : str, optional
        Column name to use as sample_id. If None, common names are tried.

    Returns
    -------
    anndata.AnnData
        Modified AnnData object with normalized metadata.
    """
    if "cell_id" not in adata.obs.columns:
        if cell_id_col and cell_id_col in adata.obs.columns:
            adata.obs["cell_id"] = adata.obs[cell_id_col].astype(str)
            logger.info(f"Created 'cell_id' from column '{cell_id_col}'")
        else:
            adata.obs["cell_id"] = adata.obs.index.astype(str)
            logger.info("Created 'cell_id' from adata.obs.index")

    if "sample_id" not in adata.obs.columns:
        source = sample_id_col or next(
            (c for c in SAMPLE_ID_CANDIDATES if c in adata.obs.columns), None
        )
        if source and source in adata.obs.columns:
            adata.obs["sample_id"] = adata.obs[source].astype(str)
            logger.info(f"Created 'sample_id' from column '{source}'")
        else:
            adata.obs["sample_id"] = "sample_0"
            logger.warning("No sample_id column found. Creating default 'sample_0'")

    return adata


def convert_units(
    coords: np.ndarray,
    from_units: str,
    to_units: str,
    conversion_factor: Optional[float] = None,
) -> np.ndarray:
    """
    Convert spatial coordinates between units.

    Parameters
    ----------
    coords : np.ndarray
        Nx2 array of spatial coordinates.
    from_units, to_units : str
        'um', 'mm' or 'px'.
    conversion_factor : float, optional
        Explicit factor. Required when pixels are involved (microns per pixel
        differ between instruments and image levels).

    Returns
    -------
    np.ndarray
        Converted coordinates.
    """
    if from_units == to_units:
        return coords

    if conversion_factor is None:
        if from_units in UNIT_TO_UM and to_units in UNIT_TO_UM:
            conversion_factor = UNIT_TO_UM[from_units] / UNIT_TO_UM[to_units]
        else:
            raise ValueError(
                f"Conversion from {from_units} to {to_units} needs an explicit conversion_factor"
            )

    converted_coords = coords * conversion_factor
    logger.info(
        f"Converted coordinates from {from_units} to {to_units} "
        f"using factor {conversion_factor}"
    )
    return converted_coords


def add_cell_id_column(adata: anndata.AnnData, prefix: str = "cell_") -> anndata.AnnData:
    """Add a generated unique cell_id column if none exists."""
    if "cell_id" not in adata.obs.columns:
        adata.obs["cell_id"] = [f"{prefix}{i}" for i in range(adata.n_obs)]
        logger.info(f"Created unique cell_id column with prefix '{prefix}'")

    return adata


def standardize_column_names(adata: anndata.AnnData, mapping: dict) -> anndata.AnnData:
    """
    Rename columns in adata.obs according to a mapping dictionary.

    Columns are only renamed when the target name is not already taken.
    """
    rename_dict = {
        old: new
        for old, new in mapping.items()
        if old in adata.obs.columns and new not in adata.obs.columns
    }

    if rename_dict:
        adata.obs = adata.obs.rename(columns=rename_dict)
        logger.info(f"Renamed columns: {rename_dict}")

    return adata

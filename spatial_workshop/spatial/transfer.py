"""Transfer of cell-level labels onto spots of a coarser assay."""

import logging
from typing import Optional

import anndata
import numpy as np
import pandas as pd
from scipy.spatial import cKDTree

from ..io.readers import get_library_id

logger = logging.getLogger(__name__)


def _spot_radius(spots: anndata.AnnData) -> float:
    library_id = get_library_id(spots)
    if library_id is not None:
        scalefactors = spots.uns["spatial"][library_id].get("scalefactors", {})
        if "spot_diameter_fullres" in scalefactors:
            return float(scalefactors["spot_diameter_fullres"]) / 2
    raise ValueError(
        "spot_radius not given and 'spot_diameter_fullres' not found in the spots' scale factors"
    )


def aggregate_cells_to_spots(
    spots: anndata.AnnData,
    cells: anndata.AnnData,
    label_col: str,
    spot_radius: Optional[float] = None,
    spots_spatial_key: str = "spatial",
    cells_spatial_key: str = "spatial_registered",
    key_added: str = "cell_type_counts",
    normalize: bool = False,
) -> pd.DataFrame:
    """
    Count labelled cells falling inside each spot.

    Cells must already be in the spots' coordinate frame, typically through
    :func:`~spatial_workshop.spatial.registration.register_spatial_data`.

    Parameters
    ----------
    spots : anndata.AnnData
        Spot-level object (e.g. Visium).
    cells : anndata.AnnData
        Cell-level object (e.g. Xenium) with labels in obs[label_col].
    label_col : str
        Cell label column.
    spot_radius : float, optional
        Disc radius in spot coordinates. Defaults to half of
        'spot_diameter_fullres'.
    spots_spatial_key, cells_spatial_key : str
        obsm keys of the spot and cell coordinates.
    key_added : str
        obsm key of the result in ``spots``; totals go to
        obs[f'{key_added}_total'].
    normalize : bool
        If True, store per-spot fractions instead of counts.

    Returns
    -------
    pd.DataFrame
        Spots x labels table.
    """
    if label_col not in cells.obs.columns:
        raise ValueError(f"Label column '{label_col}' not found in cells.obs")
    if spots_spatial_key not in spots.obsm:
        raise ValueError(f"Spatial key '{spots_spatial_key}' not found in spots.obsm")
    if cells_spatial_key not in cells.obsm:
        raise ValueError(f"Spatial key '{cells_spatial_key}' not found in cells.obsm")

    if spot_radius is None:
        spot_radius = _spot_radius(spots)

    labels = cells.obs[label_col]
    if isinstance(labels.dtype, pd.CategoricalDtype):
        categories = [str(c) for c in labels.cat.categories]
    else:
        categories = sorted(labels.dropna().astype(str).unique())
    # Unlabelled cells get code -1 and are not counted
    codes = pd.Categorical(labels.astype(str).where(labels.notna()), categories=categories).codes

    tree = cKDTree(np.asarray(cells.obsm[cells_spatial_key])[:, :2])
    hits = tree.query_ball_point(np.asarray(spots.obsm[spots_spatial_key])[:, :2], r=spot_radius)

    counts = np.zeros((spots.n_obs, len(categories)))
    for i, idx in enumerate(hits):
        idx = codes[idx]
        idx = idx[idx >= 0]
        if idx.size:
            counts[i] = np.bincount(idx, minlength=len(categories))

    totals = counts.sum(axis=1)
    if normalize:
        counts = np.divide(counts, totals[:, None], out=np.zeros_like(counts), where=totals[:, None] > 0)

    result = pd.DataFrame(counts, index=spots.obs_names, columns=categories)
    spots.obsm[key_added] = result
    spots.obs[f"{key_added}_total"] = totals.astype(int)

    logger.info(
        f"Aggregated {int(totals.sum())} of {cells.n_obs} cells into "
        f"{int(np.sum(totals > 0))} of {spots.n_obs} spots (radius {spot_radius:.1f})"
    )
    return result

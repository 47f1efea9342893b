"""Cell-type expression signatures from a single-cell reference."""

import logging
from typing import List, Optional

import anndata
import numpy as np
import pandas as pd
import scipy.sparse as sp

logger = logging.getLogger(__name__)


def build_reference_signatures(
    reference: anndata.AnnData,
    cell_type_col: str,
    layer: Optional[str] = None,
    min_cells: int = 10,
    genes: Optional[List[str]] = None,
) -> pd.DataFrame:
    """
    Average unit-sum expression profile of each cell type.

    Parameters
    ----------
    reference : anndata.AnnData
        Single-cell reference with raw counts.
    cell_type_col : str
        Column in reference.obs holding cell type labels.
    layer : str, optional
        Layer with counts. Defaults to layers['counts'] when present, else X.
    min_cells : int
        Cell types with fewer cells are dropped.
    genes : list of str, optional
        Restrict signatures to these genes.

    Returns
    -------
    pd.DataFrame
        Genes x cell types. Each column is a mean of per-cell profiles that
        sum to one.
    """
    if cell_type_col not in reference.obs.columns:
        raise ValueError(f"Cell type column '{cell_type_col}' not found in reference.obs")

    if layer is None and "counts" in reference.layers:
        layer = "counts"
    if layer is not None and layer not in reference.layers:
        raise ValueError(f"Layer '{layer}' not found in reference.layers")

    if genes is not None:
        keep = reference.var_names.isin(genes)
        if not keep.any():
            raise ValueError("None of the requested genes are present in the reference")
        reference = reference[:, keep]

    labels = reference.obs[cell_type_col].astype(str)
    type_counts = labels.value_counts()
    kept_types = sorted(type_counts.index[type_counts >= min_cells])
    dropped = sorted(set(type_counts.index) - set(kept_types))
    if dropped:
        logger.warning(f"Dropping cell types with fewer than {min_cells} cells: {dropped}")
    if not kept_types:
        raise ValueError(f"No cell type has at least {min_cells} cells")

    mask = labels.isin(kept_types).to_numpy()
    data = reference.layers[layer] if layer is not None else reference.X
    data = sp.csr_matrix(data)[mask]
    labels = labels[mask]

    totals = np.asarray(data.sum(axis=1)).ravel()
    scale = np.divide(1.0, totals, out=np.zeros_like(totals, dtype=float), where=totals > 0)
    profiles = sp.diags(scale) @ data

    codes = pd.Categorical(labels, categories=kept_types).codes
    membership = sp.csr_matrix(
        (np.ones(len(codes)), (codes, np.arange(len(codes)))),
        shape=(len(kept_types), len(codes)),
    )
    sizes = np.asarray(membership.sum(axis=1)).ravel()
    means = sp.diags(1.0 / sizes) @ membership @ profiles

    signatures = pd.DataFrame(
        np.asarray(means.todense()).T,
        index=reference.var_names.copy(),
        columns=kept_types,
    )

    logger.info(
        f"Built signatures for {len(kept_types)} cell types over {signatures.shape[0]} genes"
    )
    return signatures

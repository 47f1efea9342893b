"""Per-spot cell-type proportions by non-negative least squares."""

import logging
from typing import Optional

import anndata
import numpy as np
import pandas as pd
import scipy.sparse as sp
from joblib import Parallel, delayed
from scipy.optimize import nnls

logger = logging.getLogger(__name__)


def _solve_block(block: np.ndarray, signatures: np.ndarray):
    """Proportions and residual norms for a dense block of spots."""
    n_spots = block.shape[0]
    n_types = signatures.shape[1]
    proportions = np.zeros((n_spots, n_types))
    residuals = np.zeros(n_spots)

    for i in range(n_spots):
        y = block[i]
        total = y.sum()
        if total <= 0:
            continue
        weights, rnorm = nnls(signatures, y / total)
        weight_sum = weights.sum()
        if weight_sum > 0:
            proportions[i] = weights / weight_sum
        residuals[i] = rnorm

    return proportions, residuals


def deconvolve_spots(
    adata: anndata.AnnData,
    signatures: pd.DataFrame,
    layer: Optional[str] = "counts",
    n_jobs: int = 1,
    min_common_genes: int = 10,
    chunk_size: int = 500,
    key_added: str = "deconvolution",
) -> pd.DataFrame:
    """
    Estimate cell-type proportions for every spot.

    Each spot's count profile, scaled to unit sum over the genes shared with
    the signatures, is fitted as a non-negative combination of the
    (renormalized) signature columns. Weights are rescaled to proportions
    summing to one; empty spots get all-zero proportions.

    Parameters
    ----------
    adata : anndata.AnnData
        Spot-level object with raw counts.
    signatures : pd.DataFrame
        Genes x cell types, from
        :func:`~spatial_workshop.deconvolution.build_reference_signatures`.
    layer : str, optional
        Layer with counts. If None, uses adata.X.
    n_jobs : int
        joblib workers (-1 uses all cores).
    min_common_genes : int
        Minimum number of shared genes.
    chunk_size : int
        Spots per job.
    key_added : str
        Result keys: obsm[key_added], uns[key_added] and
        obs[f'{key_added}_residual'].

    Returns
    -------
    pd.DataFrame
        Spots x cell types proportions.
    """
    if n_jobs == 0:
        raise ValueError("n_jobs must not be 0")
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    if layer is not None and layer not in adata.layers:
        raise ValueError(f"Layer '{layer}' not found in adata.layers")

    common = [g for g in signatures.index if g in set(adata.var_names)]
    if len(common) < min_common_genes:
        raise ValueError(
            f"Only {len(common)} genes shared between spots and reference "
            f"(minimum {min_common_genes})"
        )

    sig = signatures.loc[common].to_numpy(dtype=float)
    col_sums = sig.sum(axis=0)
    sig = np.divide(sig, col_sums, out=np.zeros_like(sig), where=col_sums > 0)
    cell_types = [str(c) for c in signatures.columns]

    gene_idx = adata.var_names.get_indexer(common)
    data = adata.layers[layer] if layer is not None else adata.X
    data = sp.csr_matrix(data)[:, gene_idx]

    starts = range(0, adata.n_obs, chunk_size)
    logger.info(
        f"Deconvolving {adata.n_obs} spots into {len(cell_types)} cell types "
        f"using {len(common)} genes ({len(starts)} chunks, n_jobs={n_jobs})"
    )

    results = Parallel(n_jobs=n_jobs)(
        delayed(_solve_block)(data[start:start + chunk_size].toarray(), sig) for start in starts
    )

    if results:
        proportions = np.vstack([r[0] for r in results])
        residuals = np.concatenate([r[1] for r in results])
    else:
        proportions = np.zeros((0, len(cell_types)))
        residuals = np.zeros(0)

    result = pd.DataFrame(proportions, index=adata.obs_names, columns=cell_types)
    adata.obsm[key_added] = result
    adata.obs[f"{key_added}_residual"] = residuals
    adata.uns[key_added] = {
        "method": "nnls",
        "cell_types": cell_types,
        "common_genes": common,
        "n_common_genes": len(common),
        "residual_mean": float(residuals.mean()) if residuals.size else 0.0,
        "residual_median": float(np.median(residuals)) if residuals.size else 0.0,
        "n_empty_spots": int(np.sum(proportions.sum(axis=1) == 0)),
    }

    logger.info(
        f"Deconvolution complete: mean residual {adata.uns[key_added]['residual_mean']:.4f}"
    )
    return result


def proportions_to_adata(adata: anndata.AnnData, key: str = "deconvolution") -> anndata.AnnData:
    """
    Spots x cell types AnnData holding the proportions as its matrix.

    obs, the spatial coordinates and the image metadata are carried over.
    """
    if key not in adata.obsm:
        raise ValueError(f"Key '{key}' not found in adata.obsm. Run deconvolve_spots first.")

    props = adata.obsm[key]
    if not isinstance(props, pd.DataFrame):
        cell_types = adata.uns.get(key, {}).get("cell_types")
        props = pd.DataFrame(np.asarray(props), index=adata.obs_names, columns=cell_types)

    assay = anndata.AnnData(
        X=props.to_numpy(dtype=np.float32),
        obs=adata.obs.copy(),
        var=pd.DataFrame(index=[str(c) for c in props.columns]),
    )
    if "spatial" in adata.obsm:
        assay.obsm["spatial"] = np.asarray(adata.obsm["spatial"]).copy()
    if "spatial" in adata.uns:
        assay.uns["spatial"] = adata.uns["spatial"]

    return assay


def dominant_cell_type(
    adata: anndata.AnnData,
    key: str = "deconvolution",
    key_added: str = "dominant_cell_type",
) -> pd.Series:
    """Cell type with the highest proportion per spot ('unassigned' for empty spots)."""
    if key not in adata.obsm:
        raise ValueError(f"Key '{key}' not found in adata.obsm")

    props = adata.obsm[key]
    values = props.to_numpy(dtype=float) if isinstance(props, pd.DataFrame) else np.asarray(props)
    columns = (
        [str(c) for c in props.columns]
        if isinstance(props, pd.DataFrame)
        else adata.uns.get(key, {}).get("cell_types", [str(i) for i in range(values.shape[1])])
    )

    best = np.asarray(columns, dtype=object)[values.argmax(axis=1)]
    best[values.sum(axis=1) == 0] = "unassigned"

    categories = list(columns) + (["unassigned"] if "unassigned" in best else [])
    adata.obs[key_added] = pd.Categorical(best, categories=categories)
    return adata.obs[key_added]

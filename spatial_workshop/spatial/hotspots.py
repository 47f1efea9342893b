"""Getis-Ord Gi* hotspot detection on spatial neighbor graphs."""

import logging
from typing import List, Optional, Union

import anndata
import numpy as np
import pandas as pd
import scipy.sparse as sp

from ..utils.deps import require_package
from ..utils.serialize import clean_uns
from ..utils.stats import adjust_pvalues

logger = logging.getLogger(__name__)

FLAG_CATEGORIES = ["hot", "cold", "ns"]


def get_feature_values(
    adata: anndata.AnnData, feature: str, layer: Optional[str] = None
) -> np.ndarray:
    """
    Values of a gene or a numeric obs column for every observation.

    Genes take precedence over obs columns with the same name.
    """
    if feature in adata.var_names:
        idx = adata.var_names.get_loc(feature)
        if layer is not None:
            if layer not in adata.layers:
                raise ValueError(f"Layer '{layer}' not found in adata.layers")
            data = adata.layers[layer]
        else:
            data = adata.X
        column = data[:, idx]
        column = column.toarray() if sp.issparse(column) else np.asarray(column)
        return column.ravel().astype(np.float64)

    if feature in adata.obs.columns:
        if not pd.api.types.is_numeric_dtype(adata.obs[feature]):
            raise ValueError(f"obs column '{feature}' is not numeric")
        return adata.obs[feature].to_numpy(dtype=np.float64)

    raise ValueError(f"Feature '{feature}' not found in adata.var_names or adata.obs")


def build_weights(connectivities):
    """
    Binary libpysal weights from a sparse connectivity matrix.

    Self loops are dropped. Observations without neighbors are kept as
    islands, which ``W.from_sparse`` would silently drop.
    """
    require_package("libpysal")
    from libpysal.weights import WSP, W

    graph = sp.csr_matrix(connectivities, dtype=float, copy=True)
    graph.setdiag(0)
    graph.eliminate_zeros()
    graph.data[:] = 1.0

    return W.from_WSP(WSP(graph), silence_warnings=True)


def getis_ord_hotspots(
    adata: anndata.AnnData,
    features: Union[str, List[str]],
    connectivities_key: str = "spatial_connectivities",
    alpha: float = 0.01,
    permutations: int = 999,
    layer: Optional[str] = None,
    correction: str = "none",
    seed: Optional[int] = 42,
) -> pd.DataFrame:
    """
    Flag spatial hot and cold spots with the local Getis-Ord Gi* statistic.

    For every feature, three obs columns are written:
    ``{feature}_hotspot_stat`` (z-score), ``{feature}_hotspot_pvalue`` and
    ``{feature}_hotspot_flag`` (categorical: hot, cold, ns). An observation
    is hot when its p-value is below ``alpha`` and z > 0, cold when
    significant with z < 0.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object with a neighbor graph in obsp.
    features : str or list of str
        Genes in var_names or numeric obs columns.
    connectivities_key : str
        Key in adata.obsp holding the neighbor graph.
    alpha : float
        Significance level.
    permutations : int
        Conditional permutations for pseudo p-values. With 0, p-values come
        from the normal approximation.
    layer : str, optional
        Layer to read gene values from. If None, uses adata.X.
    correction : {'none', 'fdr_bh', 'bonferroni'}
        Multiple testing correction across observations.
    seed : int, optional
        Seed for the permutations.

    Returns
    -------
    pd.DataFrame
        One row per feature with 'n_hot', 'n_cold', 'mean_z', 'max_z' and
        'min_z'. Also stored in adata.uns['hotspots'].
    """
    if isinstance(features, str):
        features = [features]
    if not features:
        raise ValueError("No features given for hotspot detection")
    if connectivities_key not in adata.obsp:
        raise ValueError(
            f"Connectivity key '{connectivities_key}' not found in adata.obsp. "
            "Compute a spatial graph first."
        )
    if not 0 < alpha < 1:
        raise ValueError(f"alpha must be in (0, 1), got {alpha}")

    require_package("esda")
    from esda.getisord import G_Local

    values = {feature: get_feature_values(adata, feature, layer) for feature in features}
    w = build_weights(adata.obsp[connectivities_key])

    logger.info(
        f"Running Getis-Ord Gi* on {len(features)} feature(s) "
        f"({permutations} permutations, alpha={alpha}, correction={correction})"
    )

    rows = []
    for feature, y in values.items():
        if np.allclose(y, y[0]):
            logger.warning(f"Feature '{feature}' is constant; no hotspots can be detected")
            z = np.zeros(adata.n_obs)
            pvalues = np.ones(adata.n_obs)
        else:
            local_g = G_Local(
                y, w, transform="B", permutations=permutations, star=True, seed=seed
            )
            z = np.nan_to_num(np.asarray(local_g.Zs, dtype=float))
            pvalues = np.asarray(local_g.p_sim if permutations > 0 else local_g.p_norm, dtype=float)
            pvalues = np.nan_to_num(pvalues, nan=1.0)

        pvalues = adjust_pvalues(pvalues, method=correction)
        significant = pvalues < alpha

        flags = np.full(adata.n_obs, "ns", dtype=object)
        flags[significant & (z > 0)] = "hot"
        flags[significant & (z < 0)] = "cold"

        adata.obs[f"{feature}_hotspot_stat"] = z
        adata.obs[f"{feature}_hotspot_pvalue"] = pvalues
        adata.obs[f"{feature}_hotspot_flag"] = pd.Categorical(flags, categories=FLAG_CATEGORIES)

        row = {
            "feature": feature,
            "n_hot": int(np.sum(flags == "hot")),
            "n_cold": int(np.sum(flags == "cold")),
            "mean_z": float(z.mean()),
            "max_z": float(z.max()),
            "min_z": float(z.min()),
        }
        rows.append(row)
        logger.info(f"{feature}: {row['n_hot']} hot, {row['n_cold']} cold")

    summary = pd.DataFrame(rows)
    adata.uns["hotspots"] = summary
    adata.uns["hotspots_params"] = clean_uns({
        "connectivities_key": connectivities_key,
        "alpha": alpha,
        "permutations": permutations,
        "correction": correction,
        "layer": layer,
    })
    return summary

"""Marker gene computation for cluster interpretation."""

import logging
from typing import List, Optional

import anndata
import numpy as np
import pandas as pd
import scipy.sparse as sp
from scipy import stats

from ..utils.stats import benjamini_hochberg
from .utils import group_masks, prepare_expression_data

logger = logging.getLogger(__name__)

# Added to group means before taking log2 ratios
PSEUDOCOUNT = 1e-9


def compute_marker_genes(
    adata: anndata.AnnData,
    label_col: str,
    group_id: str,
    n_genes: int = 25,
    use_layer: Optional[str] = None,
    normalize: bool = True,
) -> pd.DataFrame:
    """
    Compute marker genes for one group against all other labelled observations.

    Uses the Wilcoxon rank-sum test with Benjamini-Hochberg correction.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    label_col : str
        Column in adata.obs containing group labels.
    group_id : str
        Group to compute markers for. Compared as a string, so integer
        cluster ids can be passed either way.
    n_genes : int
        Number of top marker genes to return (default: 25).
    use_layer : str, optional
        Layer to use for expression data. If None, uses adata.X.
    normalize : bool
        Log-normalize the data first when it looks like raw counts.

    Returns
    -------
    pd.DataFrame
        Columns: gene, logFC, mean_diff, p_value, adj_p_value, pct_in_group,
        pct_out_group. Only upregulated genes, sorted by adjusted p-value
        then logFC.
    """
    in_mask, out_mask = group_masks(adata, label_col, group_id)

    n_in = int(in_mask.sum())
    n_out = int(out_mask.sum())
    if n_in == 0:
        raise ValueError(f"Group '{group_id}' has no cells")
    if n_out == 0:
        raise ValueError("No cells in 'other' group for comparison")

    logger.info(f"Computing markers for {group_id}: {n_in} cells vs {n_out} other cells")

    expr = prepare_expression_data(adata, use_layer=use_layer, normalize=normalize)
    expr_in = expr[in_mask, :]
    expr_out = expr[out_mask, :]

    _, p_values = stats.ranksums(expr_in, expr_out, axis=0)
    # NaN p-values count as non-significant
    p_values = np.nan_to_num(np.asarray(p_values, dtype=float), nan=1.0)

    mean_in = expr_in.mean(axis=0)
    mean_out = expr_out.mean(axis=0)

    results = pd.DataFrame({
        "gene": adata.var_names.tolist(),
        "logFC": np.log2((mean_in + PSEUDOCOUNT) / (mean_out + PSEUDOCOUNT)),
        "mean_diff": mean_in - mean_out,
        "p_value": p_values,
        "adj_p_value": benjamini_hochberg(p_values),
        "pct_in_group": (expr_in > 0).mean(axis=0) * 100,
        "pct_out_group": (expr_out > 0).mean(axis=0) * 100,
    })

    results = results[results["logFC"] > 0]
    results = results.sort_values(["adj_p_value", "logFC"], ascending=[True, False])
    results = results.head(n_genes).reset_index(drop=True)

    logger.info(f"Computed {len(results)} marker genes for group {group_id}")
    return results


def compute_fold_change(
    adata: anndata.AnnData,
    label_col: str,
    group_id: str,
    use_layer: Optional[str] = None,
) -> pd.DataFrame:
    """
    Log2 fold change of every gene between a group and the rest.

    Returns
    -------
    pd.DataFrame
        Columns: gene, logFC, mean_in, mean_out; sorted by logFC descending.
    """
    in_mask, out_mask = group_masks(adata, label_col, group_id)
    if not in_mask.any():
        raise ValueError(f"Group '{group_id}' has no cells")

    expr = prepare_expression_data(adata, use_layer=use_layer, normalize=True)
    mean_in = expr[in_mask, :].mean(axis=0)
    mean_out = expr[out_mask, :].mean(axis=0) if out_mask.any() else np.zeros(expr.shape[1])

    results = pd.DataFrame({
        "gene": adata.var_names.tolist(),
        "logFC": np.log2((mean_in + PSEUDOCOUNT) / (mean_out + PSEUDOCOUNT)),
        "mean_in": mean_in,
        "mean_out": mean_out,
    })
    return results.sort_values("logFC", ascending=False).reset_index(drop=True)


def compute_group_means(
    adata: anndata.AnnData,
    groupby: str,
    features: Optional[List[str]] = None,
    layer: Optional[str] = None,
) -> pd.DataFrame:
    """
    Average expression of features in every group.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    groupby : str
        Column in adata.obs with group labels. Missing labels are skipped.
    features : list of str, optional
        Genes to include. All genes by default.
    layer : str, optional
        Layer to average. If None, uses adata.X.

    Returns
    -------
    pd.DataFrame
        Groups x features. Categorical groups keep their category order.
    """
    if groupby not in adata.obs.columns:
        raise ValueError(f"Group column '{groupby}' not found in adata.obs")

    if features is None:
        features = adata.var_names.tolist()
    missing = [f for f in features if f not in adata.var_names]
    if missing:
        raise ValueError(f"Features not found in adata.var_names: {missing}")

    if layer is not None:
        if layer not in adata.layers:
            raise ValueError(f"Layer '{layer}' not found in adata.layers")
        data = adata.layers[layer]
    else:
        data = adata.X
    data = data[:, adata.var_names.get_indexer(features)]

    labels = adata.obs[groupby]
    valid = labels.notna().to_numpy()
    codes, groups = pd.factorize(labels[valid], sort=True)
    groups = pd.Index(np.asarray(groups)).astype(str)

    indicator = sp.csr_matrix(
        (np.ones(len(codes)), (codes, np.arange(len(codes)))),
        shape=(len(groups), len(codes)),
    )
    sums = indicator @ sp.csr_matrix(data[valid])
    sizes = np.asarray(indicator.sum(axis=1)).ravel()
    means = sp.diags(1.0 / sizes) @ sums

    result = pd.DataFrame(means.toarray(), index=groups, columns=features)
    result.index.name = groupby
    return result


def top_markers_per_group(
    adata: anndata.AnnData,
    groupby: str,
    n_genes: int = 10,
    use_layer: Optional[str] = None,
) -> pd.DataFrame:
    """
    Marker genes of every group, stacked into one table.

    With fewer than two groups an empty table is returned.

    Returns
    -------
    pd.DataFrame
        :func:`compute_marker_genes` columns plus 'group' and 'rank'.
    """
    if groupby not in adata.obs.columns:
        raise ValueError(f"Group column '{groupby}' not found in adata.obs")

    labels = adata.obs[groupby].dropna()
    if isinstance(labels.dtype, pd.CategoricalDtype):
        groups = [str(g) for g in labels.cat.categories if (labels == g).any()]
    else:
        groups = sorted(labels.astype(str).unique())

    tables = []
    if len(groups) < 2:
        logger.warning(f"Only one group in '{groupby}'; no markers computed")
        groups = []

    for group in groups:
        markers = compute_marker_genes(
            adata, groupby, group, n_genes=n_genes, use_layer=use_layer
        )
        markers.insert(0, "group", group)
        markers.insert(1, "rank", np.arange(1, len(markers) + 1))
        tables.append(markers)

    if not tables:
        return pd.DataFrame(
            columns=["group", "rank", "gene", "logFC", "mean_diff", "p_value",
                     "adj_p_value", "pct_in_group", "pct_out_group"]
        )
    return pd.concat(tables, ignore_index=True)

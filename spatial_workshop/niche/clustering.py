"""Clustering neighborhoods into niche states."""

import logging
from pathlib import Path
from typing import Literal, Optional, Union

import anndata
import numpy as np
import pandas as pd
from sklearn.cluster import AgglomerativeClustering, KMeans
from sklearn.preprocessing import StandardScaler

from ..deconvolution import proportions_to_adata
from ..modeling.clustering import order_cluster_labels
from ..modeling.preprocess import normalize_data
from ..utils.serialize import clean_uns
from .composition import build_niche_assay

logger = logging.getLogger(__name__)


def cluster_niches(
    features: Union[pd.DataFrame, np.ndarray],
    n_niches: int = 10,
    method: Literal["kmeans", "hierarchical"] = "kmeans",
    standardize: bool = True,
    random_state: int = 42,
) -> np.ndarray:
    """
    Cluster neighborhood profiles into niche states.

    Parameters
    ----------
    features : pd.DataFrame or np.ndarray
        Observations x features matrix (composition or normalized assay).
    n_niches : int
        Number of niche clusters.
    method : {'kmeans', 'hierarchical'}
        Clustering method.
    standardize : bool
        If True, standardize features before clustering.
    random_state : int
        Random seed.

    Returns
    -------
    np.ndarray
        Integer niche labels.
    """
    X = features.to_numpy(dtype=float) if isinstance(features, pd.DataFrame) else np.asarray(features, dtype=float)

    if not 2 <= n_niches <= X.shape[0]:
        raise ValueError(f"n_niches must be between 2 and {X.shape[0]}, got {n_niches}")

    logger.info(f"Clustering neighborhoods into {n_niches} niches using {method}")

    if standardize:
        X = StandardScaler().fit_transform(X)

    if method == "kmeans":
        labels = KMeans(n_clusters=n_niches, random_state=random_state, n_init=10).fit_predict(X)
    elif method == "hierarchical":
        labels = AgglomerativeClustering(n_clusters=n_niches).fit_predict(X)
    else:
        raise ValueError(f"Unknown clustering method: {method}")

    logger.info(f"Identified {len(np.unique(labels))} niche clusters")
    return labels


def assign_niche_labels(
    adata: anndata.AnnData,
    composition_df: pd.DataFrame,
    n_niches: int = 10,
    method: Literal["kmeans", "hierarchical"] = "kmeans",
    niche_col_name: str = "niche",
    random_state: int = 42,
) -> anndata.AnnData:
    """Cluster a composition table and write labels to adata.obs[niche_col_name]."""
    labels = cluster_niches(
        composition_df, n_niches=n_niches, method=method, random_state=random_state
    )
    adata.obs[niche_col_name] = order_cluster_labels(labels)

    logger.info(f"Assigned niche labels to adata.obs['{niche_col_name}']")
    return adata


def summarize_niche_composition(
    adata: anndata.AnnData,
    composition_df: pd.DataFrame,
    niche_col: str = "niche",
) -> pd.DataFrame:
    """
    Mean composition profile of each niche.

    Returns
    -------
    pd.DataFrame
        Niches x composition columns, columns sorted.
    """
    if niche_col not in adata.obs.columns:
        raise ValueError(f"Niche column '{niche_col}' not found in adata.obs")

    grouped = composition_df.groupby(adata.obs[niche_col].to_numpy()).mean()
    grouped.index.name = niche_col
    return grouped.sort_index(axis=1)


def compute_niche_enrichment(
    adata: anndata.AnnData,
    niche_col: str = "niche",
    cell_type_col: str = "cell_type",
) -> pd.DataFrame:
    """
    Enrichment of labels within each niche.

    Returns
    -------
    pd.DataFrame
        Niches x labels of log2((observed + 1) / (expected + 1)).
    """
    if niche_col not in adata.obs.columns:
        raise ValueError(f"Niche column '{niche_col}' not found in adata.obs")
    if cell_type_col not in adata.obs.columns:
        raise ValueError(f"Cell type column '{cell_type_col}' not found in adata.obs")

    contingency = pd.crosstab(adata.obs[niche_col], adata.obs[cell_type_col])
    total = contingency.to_numpy().sum()
    expected = np.outer(contingency.sum(axis=1), contingency.sum(axis=0)) / max(total, 1)

    return pd.DataFrame(
        np.log2((contingency.to_numpy() + 1) / (expected + 1)),
        index=contingency.index,
        columns=contingency.columns,
    )


def export_niche_results(
    adata: anndata.AnnData,
    output_file: Union[str, Path],
    niche_col: str = "niche",
    cell_id_col: str = "cell_id",
) -> Path:
    """Write observation ids, sample ids and niche labels to CSV."""
    if niche_col not in adata.obs.columns:
        raise ValueError(f"Niche column '{niche_col}' not found in adata.obs")

    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)

    export_df = pd.DataFrame(index=adata.obs.index)
    export_df[cell_id_col] = (
        adata.obs[cell_id_col].astype(str) if cell_id_col in adata.obs.columns else adata.obs.index.astype(str)
    )
    if "sample_id" in adata.obs.columns:
        export_df["sample_id"] = adata.obs["sample_id"].astype(str)
    export_df[niche_col] = adata.obs[niche_col].astype(str)

    export_df.to_csv(output_file, index=False)
    logger.info(f"Exported {len(export_df)} observations with niche labels to {output_file}")
    return output_file


def run_niche_clustering(
    adata: anndata.AnnData,
    label_col: Optional[str] = None,
    proportions_key: Optional[str] = None,
    n_niches: int = 6,
    normalization: Literal["clr", "none"] = "clr",
    method: Literal["kmeans", "hierarchical"] = "kmeans",
    niche_col: str = "niche",
    connectivities_key: str = "spatial_connectivities",
    random_state: int = 42,
) -> anndata.AnnData:
    """
    Assign niches from neighborhood labels (cells) or cell-type proportions (spots).

    Parameters
    ----------
    adata : anndata.AnnData
        Input object; receives obs[niche_col] and
        uns[f'{niche_col}_composition'].
    label_col : str, optional
        Cell label column. Neighborhood counts over the spatial graph form
        the niche assay.
    proportions_key : str, optional
        obsm key of deconvolution proportions forming the niche assay.
    n_niches : int
        Number of niches.
    normalization : {'clr', 'none'}
        Transform of the niche assay before clustering. CLR is applied per
        observation across labels.
    method : {'kmeans', 'hierarchical'}
        Clustering method.
    niche_col : str
        Output column name.
    connectivities_key : str
        Spatial graph used with ``label_col``.
    random_state : int
        Random seed.

    Returns
    -------
    anndata.AnnData
        The niche assay, with niche labels in obs.
    """
    if (label_col is None) == (proportions_key is None):
        raise ValueError("Provide exactly one of 'label_col' or 'proportions_key'")
    if normalization not in ("clr", "none"):
        raise ValueError(f"Unknown niche normalization: {normalization}")

    if label_col is not None:
        assay = build_niche_assay(adata, label_col, connectivities_key=connectivities_key)
    else:
        assay = proportions_to_adata(adata, key=proportions_key)

    raw = np.asarray(assay.X, dtype=float)
    assay.layers["counts"] = assay.X.copy()

    if normalization == "clr":
        normalize_data(assay, method="clr", axis=1)
    features = np.asarray(assay.X, dtype=float)

    labels = cluster_niches(
        features,
        n_niches=n_niches,
        method=method,
        standardize=False,
        random_state=random_state,
    )
    niche_labels = order_cluster_labels(labels)
    assay.obs[niche_col] = niche_labels
    adata.obs[niche_col] = pd.Categorical(
        np.asarray(niche_labels), categories=niche_labels.categories, ordered=True
    )

    totals = raw.sum(axis=1, keepdims=True)
    fractions = np.divide(raw, totals, out=np.zeros_like(raw), where=totals > 0)
    profile = pd.DataFrame(fractions, columns=assay.var_names).groupby(np.asarray(niche_labels)).mean()
    profile = profile.reindex(list(niche_labels.categories))
    adata.uns[f"{niche_col}_composition"] = profile
    adata.uns[f"{niche_col}_params"] = clean_uns({
        "source": "labels" if label_col is not None else "proportions",
        "label_col": label_col,
        "proportions_key": proportions_key,
        "n_niches": n_niches,
        "normalization": normalization,
        "method": method,
    })

    logger.info(f"Niche clustering complete: {niche_labels.categories.size} niches in '{niche_col}'")
    return assay

"""Shared-nearest-neighbor graphs and clustering of expression profiles."""

import logging
from typing import Optional

import anndata
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as sp
from sklearn.cluster import KMeans
from sklearn.neighbors import NearestNeighbors

from ..utils.deps import require_package

logger = logging.getLogger(__name__)


def order_cluster_labels(labels) -> pd.Categorical:
    """
    Convert labels to an ordered categorical of strings.

    Numeric labels sort numerically ("2" before "10"), others alphabetically
    after them.
    """
    values = pd.Series(labels).astype(str)

    def sort_key(label):
        return (0, int(label), "") if label.isdigit() else (1, 0, label)

    categories = sorted(values.unique(), key=sort_key)
    return pd.Categorical(values, categories=categories, ordered=True)


def build_snn_graph(
    adata: anndata.AnnData,
    use_rep: str = "X_pca",
    n_dims: int = 30,
    n_neighbors: int = 10,
    prune: float = 1 / 15,
    key_added: str = "snn",
) -> anndata.AnnData:
    """
    Build a shared nearest neighbor graph weighted by Jaccard overlap.

    Every observation's neighborhood includes itself. Two observations
    sharing ``s`` neighbors get weight ``s / (2k - s)``; weights below
    ``prune`` and self loops are dropped.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    use_rep : str
        Representation in adata.obsm.
    n_dims : int
        Number of leading dimensions of ``use_rep`` to use.
    n_neighbors : int
        Neighborhood size k (self included).
    prune : float
        Minimum Jaccard weight kept.
    key_added : str
        Graph stored as ``obsp[f'{key_added}_connectivities']``.

    Returns
    -------
    anndata.AnnData
        The same object with the graph added.
    """
    if use_rep not in adata.obsm:
        raise ValueError(f"Representation '{use_rep}' not found in adata.obsm")

    X = np.asarray(adata.obsm[use_rep])[:, :n_dims]
    n_obs = X.shape[0]
    k = min(n_neighbors, n_obs)

    logger.info(f"Building SNN graph: k={k}, dims={X.shape[1]}, prune={prune:.4f}")

    nn = NearestNeighbors(n_neighbors=k)
    nn.fit(X)
    _, indices = nn.kneighbors(X)

    rows = np.repeat(np.arange(n_obs), k)
    membership = sp.csr_matrix(
        (np.ones(n_obs * k), (rows, indices.ravel())), shape=(n_obs, n_obs)
    )

    shared = (membership @ membership.T).tocoo()
    jaccard = shared.data / (2 * k - shared.data)
    keep = (jaccard >= prune) & (shared.row != shared.col)

    snn = sp.csr_matrix(
        (jaccard[keep], (shared.row[keep], shared.col[keep])), shape=(n_obs, n_obs)
    )

    adata.obsp[f"{key_added}_connectivities"] = snn
    adata.uns[key_added] = {
        "connectivities_key": f"{key_added}_connectivities",
        "params": {
            "use_rep": use_rep,
            "n_dims": int(X.shape[1]),
            "n_neighbors": int(k),
            "prune": float(prune),
        },
    }

    logger.info(f"SNN graph has {snn.nnz // 2} edges")
    return adata


def cluster_leiden(
    adata: anndata.AnnData,
    resolution: float = 0.5,
    graph_key: str = "snn",
    key_added: str = "clusters",
    random_state: int = 42,
) -> anndata.AnnData:
    """Leiden community detection on ``obsp[f'{graph_key}_connectivities']``."""
    require_package("igraph", pip_package="igraph")

    conn_key = f"{graph_key}_connectivities"
    if conn_key not in adata.obsp:
        raise ValueError(
            f"Graph '{conn_key}' not found in adata.obsp. Run build_snn_graph first."
        )

    logger.info(f"Leiden clustering at resolution {resolution}")
    sc.tl.leiden(
        adata,
        resolution=resolution,
        adjacency=adata.obsp[conn_key],
        key_added=key_added,
        flavor="igraph",
        n_iterations=2,
        directed=False,
        random_state=random_state,
    )
    adata.obs[key_added] = order_cluster_labels(adata.obs[key_added])

    logger.info(f"Found {adata.obs[key_added].nunique()} clusters")
    return adata


def cluster_kmeans(
    adata: anndata.AnnData,
    n_clusters: int,
    use_rep: Optional[str] = None,
    key_added: str = "kmeans",
    random_state: int = 42,
) -> anndata.AnnData:
    """
    K-means clustering on a representation or on ``X``.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    n_clusters : int
        Number of clusters.
    use_rep : str, optional
        Key in adata.obsm. If None, clusters adata.X.
    key_added : str
        Column in adata.obs for the labels.
    random_state : int
        Random seed.

    Returns
    -------
    anndata.AnnData
        The same object with labels added.
    """
    if use_rep is None:
        X = adata.X.toarray() if sp.issparse(adata.X) else np.asarray(adata.X)
    elif use_rep in adata.obsm:
        X = np.asarray(adata.obsm[use_rep])
    else:
        raise ValueError(f"Representation '{use_rep}' not found in adata.obsm")

    if n_clusters < 1 or n_clusters > X.shape[0]:
        raise ValueError(f"n_clusters must be between 1 and {X.shape[0]}, got {n_clusters}")

    logger.info(f"K-means clustering with k={n_clusters}")
    kmeans = KMeans(n_clusters=n_clusters, random_state=random_state, n_init=10)
    labels = kmeans.fit_predict(X)

    adata.obs[key_added] = order_cluster_labels(labels)
    return adata

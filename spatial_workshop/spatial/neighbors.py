"""Spatial neighbor graph construction."""

import logging
from typing import Literal, Optional

import anndata
import numpy as np
import scipy.sparse as sp
from scipy.spatial import Delaunay, QhullError
from sklearn.neighbors import NearestNeighbors, radius_neighbors_graph

from ..utils.serialize import clean_uns

logger = logging.getLogger(__name__)


def _delaunay_graph(coords: np.ndarray):
    """Connectivity and distance matrices of the Delaunay triangulation edges."""
    n_points = coords.shape[0]
    if n_points < 3:
        raise ValueError(f"Delaunay triangulation needs at least 3 points, got {n_points}")

    try:
        tri = Delaunay(coords)
    except QhullError as e:
        raise ValueError(f"Delaunay triangulation failed (collinear or duplicate points?): {e}") from e

    # Each simplex contributes its three edges
    simplices = tri.simplices
    edges = np.vstack(
        [simplices[:, [0, 1]], simplices[:, [1, 2]], simplices[:, [0, 2]]]
    )
    edges = np.unique(np.sort(edges, axis=1), axis=0)

    rows = np.concatenate([edges[:, 0], edges[:, 1]])
    cols = np.concatenate([edges[:, 1], edges[:, 0]])
    lengths = np.linalg.norm(coords[rows] - coords[cols], axis=1)

    connectivities = sp.csr_matrix(
        (np.ones(len(rows)), (rows, cols)), shape=(n_points, n_points)
    )
    distances = sp.csr_matrix((lengths, (rows, cols)), shape=(n_points, n_points))
    return connectivities, distances


def compute_neighbors(
    adata: anndata.AnnData,
    spatial_key: str = "spatial",
    method: Literal["radius", "knn", "delaunay"] = "radius",
    radius: Optional[float] = None,
    n_neighbors: Optional[int] = None,
    coord_type: str = "generic",
    key_added: str = "spatial",
) -> anndata.AnnData:
    """
    Compute spatial neighbors and add to adata.obsp and adata.uns.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object with spatial coordinates in obsm[spatial_key].
    spatial_key : str
        Key in adata.obsm containing spatial coordinates.
    method : {'radius', 'knn', 'delaunay'}
        Method for computing neighbors.
    radius : float, optional
        Radius for radius-based neighbors (required if method='radius').
    n_neighbors : int, optional
        Number of neighbors for KNN, excluding the observation itself
        (required if method='knn').
    coord_type : str
        Type of coordinates ('generic', 'um', 'mm', 'px').
    key_added : str
        Prefix of the stored graph. The default writes
        obsp['spatial_connectivities'], obsp['spatial_distances'] and
        uns['spatial_neighbors'].

    Returns
    -------
    anndata.AnnData
        Modified AnnData object with the neighbor graph.
    """
    if spatial_key not in adata.obsm:
        raise ValueError(f"Spatial key '{spatial_key}' not found in adata.obsm")

    coords = np.asarray(adata.obsm[spatial_key], dtype=float)[:, :2]
    n_cells = coords.shape[0]

    if method == "radius":
        if radius is None:
            raise ValueError("Must specify 'radius' when method='radius'")

        logger.info(f"Computing radius-based neighbors with radius={radius}")
        connectivities = radius_neighbors_graph(
            coords, radius=radius, mode="connectivity", include_self=False
        )
        distances = radius_neighbors_graph(
            coords, radius=radius, mode="distance", include_self=False
        )

    elif method == "knn":
        if n_neighbors is None:
            raise ValueError("Must specify 'n_neighbors' when method='knn'")
        if n_neighbors >= n_cells:
            raise ValueError(
                f"n_neighbors ({n_neighbors}) must be smaller than the number of observations ({n_cells})"
            )

        logger.info(f"Computing KNN with n_neighbors={n_neighbors}")
        nbrs = NearestNeighbors(n_neighbors=n_neighbors + 1, algorithm="auto")
        nbrs.fit(coords)
        knn_dists, indices = nbrs.kneighbors(coords)

        # First column is the observation itself
        row_indices = np.repeat(np.arange(n_cells), n_neighbors)
        col_indices = indices[:, 1:].flatten()
        data_dists = knn_dists[:, 1:].flatten()

        connectivities = sp.csr_matrix(
            (np.ones(len(row_indices)), (row_indices, col_indices)), shape=(n_cells, n_cells)
        )
        distances = sp.csr_matrix(
            (data_dists, (row_indices, col_indices)), shape=(n_cells, n_cells)
        )

        connectivities = connectivities.maximum(connectivities.T)  # Make symmetric
        distances = distances.maximum(distances.T)

    elif method == "delaunay":
        logger.info("Computing Delaunay triangulation neighbors")
        connectivities, distances = _delaunay_graph(coords)

    else:
        raise ValueError(f"Unknown method: {method}")

    connectivities = sp.csr_matrix(connectivities)
    adata.obsp[f"{key_added}_connectivities"] = connectivities
    adata.obsp[f"{key_added}_distances"] = sp.csr_matrix(distances)

    adata.uns[f"{key_added}_neighbors"] = clean_uns({
        "connectivities_key": f"{key_added}_connectivities",
        "distances_key": f"{key_added}_distances",
        "params": {
            "method": method,
            "radius": radius,
            "n_neighbors": n_neighbors,
            "coord_type": coord_type,
            "spatial_key": spatial_key,
        },
    })

    n_edges = connectivities.nnz // 2  # Divide by 2 for undirected graph
    logger.info(
        f"Spatial neighbor graph '{key_added}' constructed: {n_edges} edges, "
        f"avg {connectivities.nnz / max(n_cells, 1):.1f} neighbors per observation"
    )

    return adata


def build_spatial_graph(
    adata: anndata.AnnData,
    spatial_key: str = "spatial",
    radius: Optional[float] = None,
    n_neighbors: Optional[int] = None,
    coord_type: str = "generic",
    key_added: str = "spatial",
) -> anndata.AnnData:
    """
    Build a spatial neighbor graph, choosing the method from the arguments.

    Radius takes precedence over n_neighbors when both are given.
    """
    if radius is not None:
        method = "radius"
    elif n_neighbors is not None:
        method = "knn"
    else:
        raise ValueError("Must provide either 'radius' or 'n_neighbors'")

    return compute_neighbors(
        adata,
        spatial_key=spatial_key,
        method=method,
        radius=radius,
        n_neighbors=n_neighbors,
        coord_type=coord_type,
        key_added=key_added,
    )

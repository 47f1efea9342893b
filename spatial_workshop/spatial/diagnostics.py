"""Spatial graph diagnostics and statistics."""

import logging
from typing import Dict, Optional

import anndata
import numpy as np
import pandas as pd
import scipy.sparse as sp
from scipy.sparse.csgraph import connected_components

logger = logging.getLogger(__name__)


def _get_graph(adata: anndata.AnnData, connectivities_key: str) -> sp.csr_matrix:
    if connectivities_key not in adata.obsp:
        raise ValueError(f"Connectivity key '{connectivities_key}' not found in adata.obsp")
    return sp.csr_matrix(adata.obsp[connectivities_key])


def _degree(connectivities: sp.csr_matrix) -> np.ndarray:
    # Number of neighbors, independent of edge weights
    return np.asarray(connectivities.getnnz(axis=1)).ravel()


def _undirected_edges(connectivities: sp.csr_matrix) -> np.ndarray:
    edges = np.array(connectivities.nonzero()).T
    return edges[edges[:, 0] < edges[:, 1]]


def graph_diagnostics(
    adata: anndata.AnnData,
    connectivities_key: str = "spatial_connectivities",
    spatial_key: Optional[str] = "spatial",
) -> Dict:
    """
    Compute diagnostic statistics for a neighbor graph.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object with neighbor graph.
    connectivities_key : str
        Key in adata.obsp containing connectivity matrix.
    spatial_key : str, optional
        If present in adata.obsm, edge length statistics are included.

    Returns
    -------
    dict
        Degree, connected component, sparsity and edge length statistics.
    """
    connectivities = _get_graph(adata, connectivities_key)
    degree = _degree(connectivities)

    n_components, labels = connected_components(
        connectivities, directed=False, return_labels=True
    )
    component_sizes = np.bincount(labels) if labels.size else np.array([0])

    diagnostics = {
        "n_cells": adata.n_obs,
        "n_edges": int(connectivities.nnz // 2),
        "degree": {
            "mean": float(degree.mean()) if degree.size else 0.0,
            "median": float(np.median(degree)) if degree.size else 0.0,
            "min": int(degree.min()) if degree.size else 0,
            "max": int(degree.max()) if degree.size else 0,
            "std": float(degree.std()) if degree.size else 0.0,
        },
        "connected_components": {
            "n_components": int(n_components),
            "largest_component_size": int(component_sizes.max()),
            "isolated_cells": int(np.sum(degree == 0)),
        },
        "sparsity": float(1 - connectivities.nnz / max(adata.n_obs ** 2, 1)),
    }

    if spatial_key is not None and spatial_key in adata.obsm:
        lengths = compute_edge_lengths(adata, spatial_key, connectivities_key)
        if lengths.size:
            diagnostics["edge_length"] = {
                "mean": float(lengths.mean()),
                "median": float(np.median(lengths)),
                "max": float(lengths.max()),
            }

    logger.info(
        f"Graph diagnostics: {diagnostics['n_edges']} edges, "
        f"{diagnostics['degree']['mean']:.1f} avg degree, "
        f"{diagnostics['connected_components']['n_components']} components"
    )

    return diagnostics


def compute_degree_distribution(
    adata: anndata.AnnData, connectivities_key: str = "spatial_connectivities"
) -> pd.Series:
    """Number of observations per neighbor count, indexed by degree."""
    degree = _degree(_get_graph(adata, connectivities_key))
    return pd.Series(degree).value_counts().sort_index()


def plot_degree_distribution(
    adata: anndata.AnnData,
    connectivities_key: str = "spatial_connectivities",
    figsize: tuple = (8, 5),
):
    """
    Plot degree distribution histogram.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object with neighbor graph.
    connectivities_key : str
        Key in adata.obsp containing connectivity matrix.
    figsize : tuple
        Figure size.

    Returns
    -------
    matplotlib.figure.Figure
        Figure object.
    """
    import matplotlib.pyplot as plt

    degree_dist = compute_degree_distribution(adata, connectivities_key)

    fig, ax = plt.subplots(figsize=figsize)
    ax.bar(degree_dist.index, degree_dist.values)
    ax.set_xlabel("Number of Neighbors")
    ax.set_ylabel("Number of Observations")
    ax.set_title(f"Degree Distribution ({connectivities_key})")
    ax.grid(True, alpha=0.3)

    return fig


def identify_isolated_cells(
    adata: anndata.AnnData, connectivities_key: str = "spatial_connectivities"
) -> np.ndarray:
    """Positions of observations without neighbors."""
    degree = _degree(_get_graph(adata, connectivities_key))
    isolated_indices = np.where(degree == 0)[0]

    logger.info(f"Found {len(isolated_indices)} isolated observations (no neighbors)")
    return isolated_indices


def compute_edge_lengths(
    adata: anndata.AnnData,
    spatial_key: str = "spatial",
    connectivities_key: str = "spatial_connectivities",
    sample_size: Optional[int] = None,
    random_state: int = 0,
) -> np.ndarray:
    """
    Euclidean length of every undirected edge in the graph.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    spatial_key : str
        Key in adata.obsm containing spatial coordinates.
    connectivities_key : str
        Key in adata.obsp containing connectivity matrix.
    sample_size : int, optional
        Sample a subset of edges. If None, computes all edges.
    random_state : int
        Seed for edge sampling.

    Returns
    -------
    np.ndarray
        Array of edge lengths.
    """
    if spatial_key not in adata.obsm:
        raise ValueError(f"Spatial key '{spatial_key}' not found in adata.obsm")

    coords = np.asarray(adata.obsm[spatial_key])
    edges = _undirected_edges(_get_graph(adata, connectivities_key))

    if sample_size is not None and len(edges) > sample_size:
        rng = np.random.default_rng(random_state)
        edges = edges[rng.choice(len(edges), size=sample_size, replace=False)]

    return np.linalg.norm(coords[edges[:, 0]] - coords[edges[:, 1]], axis=1)


def get_neighbor_edges_for_visualization(
    adata: anndata.AnnData,
    spatial_key: str = "spatial",
    connectivities_key: str = "spatial_connectivities",
    max_edges: int = 10000,
    random_state: int = 0,
) -> tuple:
    """
    Get edge coordinates for line plots, downsampled if necessary.

    Returns
    -------
    tuple
        (edge_x, edge_y) lists of start, end, None triplets.
    """
    if spatial_key not in adata.obsm:
        raise ValueError(f"Spatial key '{spatial_key}' not found in adata.obsm")

    coords = np.asarray(adata.obsm[spatial_key])
    edges = _undirected_edges(_get_graph(adata, connectivities_key))

    if len(edges) > max_edges:
        rng = np.random.default_rng(random_state)
        edges = edges[rng.choice(len(edges), size=max_edges, replace=False)]
        logger.info(f"Downsampled edges to {max_edges} for visualization")

    edge_x = []
    edge_y = []
    for i, j in edges:
        edge_x.extend([coords[i, 0], coords[j, 0], None])
        edge_y.extend([coords[i, 1], coords[j, 1], None])

    return edge_x, edge_y

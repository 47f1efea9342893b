"""Preprocessing, clustering and parameter management."""

from .parameters import (
    WorkflowParameters,
    get_default_parameters,
    validate_parameters,
    load_parameters,
    save_parameters,
)
from .preprocess import (
    clr_transform,
    normalize_data,
    select_variable_features,
    run_pca,
    run_umap,
    preprocess,
)
from .clustering import build_snn_graph, cluster_leiden, cluster_kmeans, order_cluster_labels

__all__ = [
    "WorkflowParameters",
    "get_default_parameters",
    "validate_parameters",
    "load_parameters",
    "save_parameters",
    "clr_transform",
    "normalize_data",
    "select_variable_features",
    "run_pca",
    "run_umap",
    "preprocess",
    "build_snn_graph",
    "cluster_leiden",
    "cluster_kmeans",
    "order_cluster_labels",
]

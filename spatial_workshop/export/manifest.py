"""Manifest creation for documenting run parameters and metadata."""

import hashlib
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import anndata
import numpy as np
import pandas as pd
import scanpy as sc

from .. import __version__

logger = logging.getLogger(__name__)

HOTSPOT_FLAG_SUFFIX = "_hotspot_flag"


def compute_file_hash(file_path: Union[str, Path], algorithm: str = "sha256") -> str:
    """
    Compute hash of a file.

    Parameters
    ----------
    file_path : str or Path
        Path to file.
    algorithm : str
        Hash algorithm ('md5', 'sha256').

    Returns
    -------
    str
        Hex digest of file hash.
    """
    hash_func = hashlib.new(algorithm)

    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hash_func.update(chunk)

    return hash_func.hexdigest()


def _group_sizes(adata: anndata.AnnData, col: str) -> Optional[Dict[str, int]]:
    if col not in adata.obs.columns:
        return None
    counts = adata.obs[col].astype(str).value_counts().sort_index()
    return {str(k): int(v) for k, v in counts.items()}


def summarize_outputs(
    adata: anndata.AnnData,
    cluster_col: str = "clusters",
    niche_col: str = "niche",
    proportions_key: str = "deconvolution",
) -> Dict[str, Any]:
    """
    Describe the analysis results stored on an object.

    Returns
    -------
    dict
        Cluster and niche sizes, deconvolution cell types, hotspot features
        and the embeddings present in obsm.
    """
    output: Dict[str, Any] = {
        "clusters": _group_sizes(adata, cluster_col),
        "niches": _group_sizes(adata, niche_col),
        "deconvolution_cell_types": None,
        "hotspot_features": [
            col[: -len(HOTSPOT_FLAG_SUFFIX)]
            for col in adata.obs.columns
            if col.endswith(HOTSPOT_FLAG_SUFFIX)
        ],
        "embeddings": {
            key: int(np.asarray(value).shape[1])
            for key, value in adata.obsm.items()
            if key.startswith("X_")
        },
    }

    if proportions_key in adata.obsm and isinstance(adata.obsm[proportions_key], pd.DataFrame):
        output["deconvolution_cell_types"] = [str(c) for c in adata.obsm[proportions_key].columns]

    return output


def create_manifest(
    adata: anndata.AnnData,
    input_files: List[Union[str, Path]],
    parameters: Optional[Dict[str, Any]] = None,
    qc_filters: Optional[Dict[str, Any]] = None,
    n_cells_pre_qc: Optional[int] = None,
    cluster_col: str = "clusters",
    niche_col: str = "niche",
    proportions_key: str = "deconvolution",
) -> Dict[str, Any]:
    """
    Create a manifest documenting the analysis run.

    Parameters
    ----------
    adata : anndata.AnnData
        Processed AnnData object.
    input_files : list
        Input file or directory paths. Files are hashed; directories are
        recorded by path only.
    parameters : dict, optional
        Workflow parameters.
    qc_filters : dict, optional
        QC filter criteria applied.
    n_cells_pre_qc : int, optional
        Number of observations before QC filtering.
    cluster_col, niche_col, proportions_key : str
        Where the cluster labels, niche labels and deconvolution proportions
        are stored.

    Returns
    -------
    dict
        Manifest dictionary.
    """
    n_pre = n_cells_pre_qc if n_cells_pre_qc is not None else adata.n_obs
    parameters = parameters or {}

    manifest: Dict[str, Any] = {
        "timestamp": datetime.now().isoformat(),
        "version": __version__,
        "input": {
            "files": [],
            "n_cells_total": n_pre,
            "n_features": adata.n_vars,
        },
        "processing": {
            "qc_filters": qc_filters or {},
            "n_cells_kept": adata.n_obs,
            "n_cells_filtered": n_pre - adata.n_obs,
            "percent_kept": 100 * adata.n_obs / n_pre if n_pre else 100.0,
        },
        "parameters": parameters,
        "output": summarize_outputs(adata, cluster_col, niche_col, proportions_key),
        "data_schema": {
            "cell_id_column": "cell_id",
            "sample_id_column": "sample_id",
            "spatial_key": "spatial" if "spatial" in adata.obsm else None,
            "coordinate_units": parameters.get("coordinate_units", "unknown"),
        },
    }

    for file_path in input_files:
        path = Path(file_path)
        if path.is_file():
            manifest["input"]["files"].append({
                "path": str(path),
                "name": path.name,
                "size_bytes": path.stat().st_size,
                "sha256": compute_file_hash(path, "sha256"),
            })
        elif path.is_dir():
            manifest["input"]["files"].append({"path": str(path), "name": path.name, "directory": True})
        else:
            logger.warning(f"Input path not found, not recorded: {path}")

    if "sample_id" in adata.obs:
        manifest["samples"] = {
            "n_samples": int(adata.obs["sample_id"].nunique()),
            "sample_ids": [str(s) for s in adata.obs["sample_id"].unique()],
            "cells_per_sample": _group_sizes(adata, "sample_id"),
        }

    manifest["software"] = {
        "python_version": sys.version,
        "spatial_workshop_version": __version__,
        "scanpy_version": sc.__version__,
        "anndata_version": anndata.__version__,
    }

    return manifest


def save_manifest(manifest: Dict[str, Any], output_file: Union[str, Path]) -> Path:
    """Save manifest to a JSON file."""
    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)

    with open(output_file, "w") as f:
        json.dump(manifest, f, indent=2, default=str)

    logger.info(f"Manifest saved to {output_file}")
    return output_file


def add_qc_summary_to_manifest(
    manifest: Dict[str, Any], qc_summary: Dict[str, Any]
) -> Dict[str, Any]:
    """Add QC summary statistics (from qc.compute_qc_summary) to a manifest."""
    manifest["qc_summary"] = qc_summary
    return manifest


def add_spatial_summary_to_manifest(
    manifest: Dict[str, Any], spatial_diagnostics: Dict[str, Any]
) -> Dict[str, Any]:
    """Add spatial graph diagnostics (from spatial.graph_diagnostics) to a manifest."""
    manifest["spatial_graph"] = spatial_diagnostics
    return manifest


def validate_manifest(manifest: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """
    Validate manifest structure.

    Returns
    -------
    tuple of (bool, list)
        (is_valid, list of error messages)
    """
    errors = []

    for key in ["timestamp", "version", "input", "processing", "parameters", "output"]:
        if key not in manifest:
            errors.append(f"Missing required key: {key}")

    if "input" in manifest and "files" not in manifest["input"]:
        errors.append("Missing 'files' in input section")

    if "processing" in manifest and "n_cells_kept" not in manifest["processing"]:
        errors.append("Missing 'n_cells_kept' in processing section")

    if "output" in manifest and "hotspot_features" not in manifest["output"]:
        errors.append("Missing 'hotspot_features' in output section")

    return len(errors) == 0, errors

"""Tabular exports of labels, embeddings, proportions and hotspot calls."""

import logging
from pathlib import Path
from typing import Dict, List, Literal, Optional, Union

import anndata
import numpy as np
import pandas as pd

from .manifest import HOTSPOT_FLAG_SUFFIX

logger = logging.getLogger(__name__)

EMBEDDING_BASES = ["X_pca", "X_umap"]


def _id_frame(adata: anndata.AnnData, cell_id_col: str = "cell_id") -> pd.DataFrame:
    """Observation ids, plus sample ids when present."""
    ids = pd.DataFrame(index=adata.obs_names)
    if cell_id_col in adata.obs.columns:
        ids[cell_id_col] = adata.obs[cell_id_col].astype(str).to_numpy()
    else:
        ids[cell_id_col] = adata.obs_names.astype(str)
    if "sample_id" in adata.obs.columns:
        ids["sample_id"] = adata.obs["sample_id"].astype(str).to_numpy()
    return ids


def _prepare_output(output_file: Union[str, Path]) -> Path:
    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)
    return output_file


def export_labels(
    adata: anndata.AnnData,
    output_file: Union[str, Path],
    columns: List[str],
    cell_id_col: str = "cell_id",
) -> Path:
    """
    Write observation ids and the given obs label columns to CSV.

    Parameters
    ----------
    adata : anndata.AnnData
        Input AnnData object.
    output_file : str or Path
        Output CSV path.
    columns : list of str
        obs columns to export (e.g. clusters, niche).
    cell_id_col : str
        obs column holding observation ids; obs_names when absent.

    Returns
    -------
    Path
        The written file.
    """
    missing = [col for col in columns if col not in adata.obs.columns]
    if missing:
        raise ValueError(f"Columns not found in adata.obs: {missing}")

    export_df = _id_frame(adata, cell_id_col)
    for col in columns:
        export_df[col] = adata.obs[col].astype(str).to_numpy()

    output_file = _prepare_output(output_file)
    export_df.to_csv(output_file, index=False)
    logger.info(f"Exported {len(columns)} label column(s) for {len(export_df)} observations to {output_file}")
    return output_file


def export_embeddings(
    adata: anndata.AnnData,
    output_file: Union[str, Path],
    basis: str = "X_umap",
    format: Literal["parquet", "csv"] = "parquet",
    cell_id_col: str = "cell_id",
) -> Path:
    """
    Write an obsm embedding with one column per dimension.

    Columns are named ``{basis without X_}_{i}`` (1-based), e.g. umap_1.
    Parquet is written with pyarrow.
    """
    if basis not in adata.obsm:
        raise ValueError(f"Embedding '{basis}' not found in adata.obsm")
    if format not in ("parquet", "csv"):
        raise ValueError(f"Unsupported format '{format}'; use 'parquet' or 'csv'")

    embedding = np.asarray(adata.obsm[basis])
    prefix = basis[2:] if basis.startswith("X_") else basis
    export_df = _id_frame(adata, cell_id_col)
    for i in range(embedding.shape[1]):
        export_df[f"{prefix}_{i + 1}"] = embedding[:, i]

    output_file = _prepare_output(output_file)
    if format == "parquet":
        export_df.to_parquet(output_file, index=False, engine="pyarrow")
    else:
        export_df.to_csv(output_file, index=False)

    logger.info(f"Exported {basis} ({embedding.shape[1]} dims) to {output_file}")
    return output_file


def export_proportions(
    adata: anndata.AnnData,
    output_file: Union[str, Path],
    key: str = "deconvolution",
    cell_id_col: str = "cell_id",
) -> Path:
    """Write deconvolution proportions (observations x cell types) to CSV."""
    if key not in adata.obsm:
        raise ValueError(f"Proportions '{key}' not found in adata.obsm")

    proportions = adata.obsm[key]
    if not isinstance(proportions, pd.DataFrame):
        proportions = pd.DataFrame(np.asarray(proportions), index=adata.obs_names)

    export_df = _id_frame(adata, cell_id_col)
    for cell_type in proportions.columns:
        export_df[str(cell_type)] = proportions[cell_type].to_numpy()
    residual_col = f"{key}_residual"
    if residual_col in adata.obs.columns:
        export_df["residual"] = adata.obs[residual_col].to_numpy()

    output_file = _prepare_output(output_file)
    export_df.to_csv(output_file, index=False)
    logger.info(f"Exported proportions of {proportions.shape[1]} cell types to {output_file}")
    return output_file


def export_hotspots(
    adata: anndata.AnnData,
    output_file: Union[str, Path],
    features: Optional[List[str]] = None,
    cell_id_col: str = "cell_id",
) -> Path:
    """
    Write hotspot statistics, p-values and flags in long format.

    Columns: cell_id, [sample_id], feature, stat, pvalue, flag. All features
    with hotspot results are exported when ``features`` is None.
    """
    available = [
        col[: -len(HOTSPOT_FLAG_SUFFIX)]
        for col in adata.obs.columns
        if col.endswith(HOTSPOT_FLAG_SUFFIX)
    ]
    if features is None:
        features = available
    missing = [f for f in features if f not in available]
    if missing:
        raise ValueError(f"No hotspot results for features: {missing}")
    if not features:
        raise ValueError("No hotspot results found in adata.obs")

    ids = _id_frame(adata, cell_id_col)
    tables = []
    for feature in features:
        table = ids.copy()
        table["feature"] = feature
        table["stat"] = adata.obs[f"{feature}_hotspot_stat"].to_numpy()
        table["pvalue"] = adata.obs[f"{feature}_hotspot_pvalue"].to_numpy()
        table["flag"] = adata.obs[f"{feature}{HOTSPOT_FLAG_SUFFIX}"].astype(str).to_numpy()
        tables.append(table)

    output_file = _prepare_output(output_file)
    pd.concat(tables, ignore_index=True).to_csv(output_file, index=False)
    logger.info(f"Exported hotspots of {len(features)} feature(s) to {output_file}")
    return output_file


def export_all(
    adata: anndata.AnnData,
    output_dir: Union[str, Path],
    embedding_format: Literal["parquet", "csv"] = "parquet",
    label_columns: Optional[List[str]] = None,
    proportions_key: str = "deconvolution",
) -> Dict[str, Path]:
    """
    Export every available result into ``output_dir``.

    Writes labels.csv (clusters, niche and dominant cell type columns that
    exist), one file per embedding, proportions.csv and hotspots.csv.

    Returns
    -------
    dict
        Result name -> written path.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    suffix = "parquet" if embedding_format == "parquet" else "csv"

    if label_columns is None:
        label_columns = [
            col for col in ["clusters", "kmeans", "niche", "dominant_cell_type"]
            if col in adata.obs.columns
        ]

    written: Dict[str, Path] = {}
    if label_columns:
        written["labels"] = export_labels(adata, output_dir / "labels.csv", label_columns)

    for basis in EMBEDDING_BASES:
        if basis in adata.obsm:
            name = basis[2:]
            written[name] = export_embeddings(
                adata, output_dir / f"{name}.{suffix}", basis=basis, format=embedding_format
            )

    if proportions_key in adata.obsm:
        written["proportions"] = export_proportions(
            adata, output_dir / "proportions.csv", key=proportions_key
        )

    if any(col.endswith(HOTSPOT_FLAG_SUFFIX) for col in adata.obs.columns):
        written["hotspots"] = export_hotspots(adata, output_dir / "hotspots.csv")

    logger.info(f"Exported {len(written)} result file(s) to {output_dir}")
    return written

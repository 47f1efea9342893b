"""Readers for 10x Genomics Visium and Xenium output directories."""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import anndata
import numpy as np
import pandas as pd
import scanpy as sc
from PIL import Image
from scipy import sparse

from ..utils.deps import require_package

logger = logging.getLogger(__name__)

# Xenium feature name prefixes for probes and codewords that do not measure a gene
CONTROL_PREFIXES = (
    "NegControlProbe_",
    "NegControlCodeword_",
    "BLANK_",
    "UnassignedCodeword_",
    "DeprecatedCodeword_",
    "Intergenic_",
)

VISIUM_POSITION_COLUMNS = [
    "barcode",
    "in_tissue",
    "array_row",
    "array_col",
    "pxl_row_in_fullres",
    "pxl_col_in_fullres",
]

XENIUM_DEFAULT_PIXEL_SIZE = 0.2125  # microns per pixel at full resolution

XENIUM_IMAGE_CANDIDATES = [
    "morphology_focus.ome.tif",
    "morphology_focus/morphology_focus_0000.ome.tif",
    "morphology_mip.ome.tif",
    "morphology.ome.tif",
]


def is_control_feature(name: str) -> bool:
    """Return True if a Xenium feature name is a control probe or codeword."""
    return str(name).startswith(CONTROL_PREFIXES)


def _read_10x_counts(path: Path, h5_name: str, mtx_dir: str, gex_only: bool) -> anndata.AnnData:
    h5_file = path / h5_name
    mtx_path = path / mtx_dir

    if h5_file.exists():
        logger.info(f"Reading counts from {h5_file}")
        adata = sc.read_10x_h5(str(h5_file), gex_only=gex_only)
    elif mtx_path.is_dir():
        logger.info(f"Reading counts from {mtx_path}")
        adata = sc.read_10x_mtx(str(mtx_path), var_names="gene_symbols", gex_only=gex_only)
    else:
        raise FileNotFoundError(
            f"No count matrix found in {path}: expected '{h5_name}' or '{mtx_dir}/'"
        )

    adata.var_names_make_unique()
    return adata


def _load_png(image_path: Path) -> np.ndarray:
    with Image.open(image_path) as img:
        return np.asarray(img.convert("RGB"))


def _to_uint8(image: np.ndarray, upper_percentile: float = 99.5) -> np.ndarray:
    """Rescale an intensity image (e.g. DAPI) to 8 bits for display."""
    if image.dtype == np.uint8:
        return image
    image = image.astype(np.float32)
    upper = np.percentile(image, upper_percentile) if image.size else 0.0
    if upper <= 0:
        return np.zeros(image.shape, dtype=np.uint8)
    scaled = np.clip(image / upper, 0, 1) * 255
    return scaled.astype(np.uint8)


def read_visium_positions(spatial_dir: Path) -> pd.DataFrame:
    """
    Read the Space Ranger spot position table.

    Handles both ``tissue_positions.csv`` (with header) and the older
    ``tissue_positions_list.csv`` (no header).

    Parameters
    ----------
    spatial_dir : Path
        The ``spatial/`` directory of a Space Ranger output.

    Returns
    -------
    pd.DataFrame
        Positions indexed by barcode.
    """
    spatial_dir = Path(spatial_dir)
    new_format = spatial_dir / "tissue_positions.csv"
    old_format = spatial_dir / "tissue_positions_list.csv"

    if new_format.exists():
        positions = pd.read_csv(new_format)
    elif old_format.exists():
        positions = pd.read_csv(old_format, header=None)
        if positions.shape[1] != len(VISIUM_POSITION_COLUMNS):
            raise ValueError(
                f"Unexpected tissue positions format with {positions.shape[1]} columns"
            )
        positions.columns = VISIUM_POSITION_COLUMNS
    else:
        raise FileNotFoundError(f"No tissue positions file found in {spatial_dir}")

    missing = [c for c in VISIUM_POSITION_COLUMNS if c not in positions.columns]
    if missing:
        raise ValueError(f"Tissue positions file is missing columns: {missing}")

    positions["barcode"] = positions["barcode"].astype(str)
    return positions.set_index("barcode")


def read_visium(
    path: str,
    sample_name: Optional[str] = None,
    count_file: str = "filtered_feature_bc_matrix.h5",
    load_images: bool = True,
    in_tissue_only: bool = True,
) -> anndata.AnnData:
    """
    Import a Visium Space Ranger output directory.

    Parameters
    ----------
    path : str
        Space Ranger ``outs`` directory.
    sample_name : str, optional
        Sample identifier. Defaults to the directory name.
    count_file : str
        Name of the 10x HDF5 count matrix. When absent, the
        ``filtered_feature_bc_matrix/`` MTX directory is used.
    load_images : bool
        If True, load the hires and lowres tissue images.
    in_tissue_only : bool
        If True, keep only spots covered by tissue.

    Returns
    -------
    anndata.AnnData
        Spots x genes with full-resolution pixel coordinates in
        ``obsm['spatial']`` and images in ``uns['spatial'][sample_name]``.
    """
    path = Path(path)
    if not path.is_dir():
        raise FileNotFoundError(f"Visium directory not found: {path}")

    sample_name = sample_name or path.name
    logger.info(f"Importing Visium sample '{sample_name}' from {path}")

    mtx_dir = count_file.replace(".h5", "") if count_file.endswith(".h5") else count_file
    adata = _read_10x_counts(path, count_file, mtx_dir, gex_only=True)

    spatial_dir = path / "spatial"
    positions = read_visium_positions(spatial_dir)

    common = adata.obs_names.intersection(positions.index)
    if len(common) == 0:
        raise ValueError("No matching barcodes between count matrix and tissue positions")
    if len(common) < adata.n_obs:
        logger.warning(f"{adata.n_obs - len(common)} barcodes have no position and are dropped")

    adata = adata[common, :].copy()
    positions = positions.loc[common]

    for col in ["in_tissue", "array_row", "array_col"]:
        adata.obs[col] = positions[col].values

    adata.obsm["spatial"] = positions[
        ["pxl_col_in_fullres", "pxl_row_in_fullres"]
    ].values.astype(float)

    if in_tissue_only:
        in_tissue = adata.obs["in_tissue"].values == 1
        logger.info(f"Keeping {in_tissue.sum()} of {adata.n_obs} spots under tissue")
        adata = adata[in_tissue, :].copy()

    adata.obs["sample_id"] = sample_name
    adata.obs["assay_type"] = "Visium"
    adata.layers["counts"] = adata.X.copy()

    scalefactors: Dict = {}
    scalefactors_file = spatial_dir / "scalefactors_json.json"
    if scalefactors_file.exists():
        with open(scalefactors_file) as f:
            scalefactors = json.load(f)
    else:
        logger.warning(f"No scalefactors_json.json in {spatial_dir}")

    images = {}
    if load_images:
        for img_key in ["hires", "lowres"]:
            image_path = spatial_dir / f"tissue_{img_key}_image.png"
            if image_path.exists():
                images[img_key] = _load_png(image_path)
                logger.info(f"Loaded {img_key} image {images[img_key].shape}")

    adata.uns["spatial"] = {
        sample_name: {
            "images": images,
            "scalefactors": scalefactors,
            "metadata": {"platform": "Visium", "source": str(path)},
        }
    }

    logger.info(f"Imported {adata.n_obs} spots x {adata.n_vars} genes")
    return adata


def _read_xenium_cells(path: Path) -> pd.DataFrame:
    for name in ["cells.parquet", "cells.csv.gz", "cells.csv"]:
        cells_file = path / name
        if cells_file.exists():
            logger.info(f"Reading cell table from {cells_file}")
            if name.endswith(".parquet"):
                cells = pd.read_parquet(cells_file)
            else:
                cells = pd.read_csv(cells_file)
            break
    else:
        raise FileNotFoundError(f"No cells table (cells.parquet / cells.csv.gz) in {path}")

    for col in ["cell_id", "x_centroid", "y_centroid"]:
        if col not in cells.columns:
            raise ValueError(f"Column '{col}' not found in Xenium cell table")

    cells["cell_id"] = cells["cell_id"].map(
        lambda v: v.decode() if isinstance(v, bytes) else str(v)
    )
    return cells.set_index("cell_id")


def _read_xenium_pixel_size(path: Path) -> float:
    experiment_file = path / "experiment.xenium"
    if experiment_file.exists():
        with open(experiment_file) as f:
            experiment = json.load(f)
        return float(experiment.get("pixel_size", XENIUM_DEFAULT_PIXEL_SIZE))
    logger.warning(
        f"No experiment.xenium found, assuming pixel size {XENIUM_DEFAULT_PIXEL_SIZE} um"
    )
    return XENIUM_DEFAULT_PIXEL_SIZE


def read_xenium_image(image_path: str, resolution_level: int = 7) -> tuple:
    """
    Read one level of a pyramidal OME-TIFF morphology image.

    Parameters
    ----------
    image_path : str
        Path to the OME-TIFF file.
    resolution_level : int
        Pyramid level to read; 0 is full resolution, each level halves the size.
        Clipped to the deepest level present in the file.

    Returns
    -------
    tuple of (np.ndarray, int)
        (8-bit image, level actually read)
    """
    require_package("tifffile")
    import tifffile

    with tifffile.TiffFile(image_path) as tif:
        series = tif.series[0]
        levels = series.levels
        level = int(min(max(resolution_level, 0), len(levels) - 1))
        if level != resolution_level:
            logger.warning(
                f"Resolution level {resolution_level} not available, using level {level}"
            )
        image = levels[level].asarray()

    # Multi-channel morphology images: keep the first (nuclear) channel
    if image.ndim == 3 and image.shape[0] < image.shape[-1] and image.shape[0] <= 8:
        image = image[0]

    return _to_uint8(image), level


def read_xenium_transcripts(
    path: str,
    min_qv: float = 20.0,
    genes: Optional[Sequence[str]] = None,
    remove_controls: bool = True,
) -> pd.DataFrame:
    """
    Read the Xenium transcript (molecule) table.

    Parameters
    ----------
    path : str
        Xenium output directory.
    min_qv : float
        Minimum Phred-scaled quality value to keep a molecule.
    genes : sequence of str, optional
        Restrict to these feature names.
    remove_controls : bool
        Drop control probes and codewords.

    Returns
    -------
    pd.DataFrame
        Columns: feature_name, x_location, y_location, z_location, qv, cell_id.
    """
    path = Path(path)
    columns = ["feature_name", "x_location", "y_location", "z_location", "qv", "cell_id"]

    parquet_file = path / "transcripts.parquet"
    if parquet_file.exists():
        transcripts = pd.read_parquet(parquet_file, columns=columns)
    else:
        for name in ["transcripts.csv.gz", "transcripts.csv"]:
            if (path / name).exists():
                transcripts = pd.read_csv(path / name, usecols=columns)
                break
        else:
            raise FileNotFoundError(f"No transcripts table found in {path}")

    for col in ["feature_name", "cell_id"]:
        transcripts[col] = transcripts[col].map(
            lambda v: v.decode() if isinstance(v, bytes) else str(v)
        )

    n_total = len(transcripts)
    keep = transcripts["qv"] >= min_qv
    if remove_controls:
        keep &= ~transcripts["feature_name"].map(is_control_feature)
    if genes is not None:
        keep &= transcripts["feature_name"].isin(list(genes))

    transcripts = transcripts.loc[keep].reset_index(drop=True)
    transcripts["feature_name"] = transcripts["feature_name"].astype("category")

    logger.info(
        f"Kept {len(transcripts)} of {n_total} molecules (qv >= {min_qv})"
    )
    return transcripts


def read_xenium(
    path: str,
    sample_name: Optional[str] = None,
    resolution_level: int = 7,
    load_image: bool = True,
    import_molecules: bool = False,
    min_qv: float = 20.0,
    remove_controls: bool = True,
) -> anndata.AnnData:
    """
    Import a Xenium output directory.

    Parameters
    ----------
    path : str
        Xenium output bundle directory.
    sample_name : str, optional
        Sample identifier. Defaults to the directory name.
    resolution_level : int
        Pyramid level of the morphology image to load.
    load_image : bool
        If True, load the morphology image.
    import_molecules : bool
        If True, attach the transcript table as ``uns['molecules']``.
    min_qv : float
        Quality threshold for imported molecules.
    remove_controls : bool
        If True, drop control features and record their per-cell total in
        ``obs['control_counts']``.

    Returns
    -------
    anndata.AnnData
        Cells x genes with micron coordinates in ``obsm['spatial']``.
    """
    path = Path(path)
    if not path.is_dir():
        raise FileNotFoundError(f"Xenium directory not found: {path}")

    sample_name = sample_name or path.name
    logger.info(f"Importing Xenium sample '{sample_name}' from {path}")

    adata = _read_10x_counts(
        path, "cell_feature_matrix.h5", "cell_feature_matrix", gex_only=False
    )

    cells = _read_xenium_cells(path)
    common = adata.obs_names.intersection(cells.index)
    if len(common) == 0:
        raise ValueError("No matching cell ids between count matrix and cell table")
    adata = adata[common, :].copy()
    cells = cells.loc[common]

    for col in cells.columns:
        adata.obs[col] = cells[col].values
    adata.obsm["spatial"] = cells[["x_centroid", "y_centroid"]].values.astype(float)

    if remove_controls:
        if "feature_types" in adata.var.columns:
            is_control = (adata.var["feature_types"] != "Gene Expression").values
        else:
            is_control = np.zeros(adata.n_vars, dtype=bool)
        is_control |= np.array([is_control_feature(name) for name in adata.var_names])

        control_counts = adata[:, is_control].X
        if sparse.issparse(control_counts):
            control_counts = np.asarray(control_counts.sum(axis=1)).flatten()
        else:
            control_counts = np.asarray(control_counts).sum(axis=1)
        adata.obs["control_counts"] = control_counts

        logger.info(f"Removing {is_control.sum()} control features")
        adata = adata[:, ~is_control].copy()

    adata.obs["sample_id"] = sample_name
    adata.obs["assay_type"] = "Xenium"
    adata.layers["counts"] = adata.X.copy()

    pixel_size = _read_xenium_pixel_size(path)
    images = {}
    scalefactors = {"pixel_size": pixel_size}
    if load_image:
        image_path = next(
            (path / name for name in XENIUM_IMAGE_CANDIDATES if (path / name).exists()),
            None,
        )
        if image_path is None:
            logger.warning(f"No morphology image found in {path}")
        else:
            image, level = read_xenium_image(str(image_path), resolution_level)
            images["morphology"] = image
            scalefactors["resolution_level"] = level
            scalefactors["tissue_morphology_scalef"] = 1.0 / (pixel_size * 2**level)
            logger.info(f"Loaded morphology image level {level} {image.shape}")

    adata.uns["spatial"] = {
        sample_name: {
            "images": images,
            "scalefactors": scalefactors,
            "metadata": {"platform": "Xenium", "source": str(path)},
        }
    }

    if import_molecules:
        adata.uns["molecules"] = read_xenium_transcripts(
            str(path),
            min_qv=min_qv,
            genes=adata.var_names.tolist(),
            remove_controls=remove_controls,
        )

    logger.info(f"Imported {adata.n_obs} cells x {adata.n_vars} genes")
    return adata


def get_library_id(adata: anndata.AnnData) -> Optional[str]:
    """Return the first sample key under ``uns['spatial']``, if any."""
    spatial = adata.uns.get("spatial", {})
    if isinstance(spatial, dict) and spatial:
        return next(iter(spatial))
    return None


def list_images(adata: anndata.AnnData) -> List[str]:
    """List image keys stored for the first sample."""
    library_id = get_library_id(adata)
    if library_id is None:
        return []
    return list(adata.uns["spatial"][library_id].get("images", {}).keys())


def get_image(adata: anndata.AnnData, img_key: str) -> Tuple[str, np.ndarray, float]:
    """
    Look up a stored image and its scale factor.

    Returns
    -------
    tuple
        ``(library_id, image, scalef)`` where ``scalef`` maps full-resolution
        coordinates to image pixels (``tissue_{img_key}_scalef``, 1.0 when
        absent).
    """
    library_id = get_library_id(adata)
    if library_id is None:
        raise ValueError("No images found in adata.uns['spatial']")
    entry = adata.uns["spatial"][library_id]
    images = entry.get("images", {})
    if img_key not in images:
        raise ValueError(
            f"Image '{img_key}' not found for '{library_id}'. Available: {list(images)}"
        )
    scalef = float(entry.get("scalefactors", {}).get(f"tissue_{img_key}_scalef", 1.0))
    return library_id, np.asarray(images[img_key]), scalef

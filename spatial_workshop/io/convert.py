"""Conversion of RDS reference datasets (Seurat objects) to H5AD format."""

import hashlib
import json
import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import anndata
import pandas as pd
import scipy.io
import scipy.sparse as sp

logger = logging.getLogger(__name__)

DEFAULT_R_PACKAGES = ["Seurat", "Matrix"]

# Writes counts (genes x cells), feature names, barcodes and cell metadata.
# Seurat v5 objects expose LayerData(); older ones only GetAssayData(slot=).
# spacexr Reference objects carry counts and cell_types slots directly.
EXPORT_SCRIPT = r"""
args <- commandArgs(trailingOnly = TRUE)
input_rds <- args[1]
out_dir <- args[2]
assay <- args[3]
layer <- args[4]

suppressPackageStartupMessages({
    library(Matrix)
})

obj <- readRDS(input_rds)

if (inherits(obj, "Reference")) {
    m <- obj@counts
    meta <- data.frame(cell_type = as.character(obj@cell_types), row.names = names(obj@cell_types))
    meta$nUMI <- obj@nUMI[rownames(meta)]
} else if (inherits(obj, "Seurat")) {
    suppressPackageStartupMessages(library(Seurat))
    m <- tryCatch(
        SeuratObject::LayerData(obj, assay = assay, layer = layer),
        error = function(e) Seurat::GetAssayData(obj, assay = assay, slot = layer)
    )
    meta <- obj@meta.data
} else {
    stop(paste("Unsupported object class:", paste(class(obj), collapse = ",")))
}

m <- as(m, "CsparseMatrix")
Matrix::writeMM(m, file.path(out_dir, "matrix.mtx"))
writeLines(rownames(m), file.path(out_dir, "features.tsv"))
writeLines(colnames(m), file.path(out_dir, "barcodes.tsv"))
write.csv(meta[colnames(m), , drop = FALSE], file.path(out_dir, "metadata.csv"))
cat("EXPORTED", nrow(m), ncol(m), "\n")
"""


def check_r_available() -> Tuple[bool, str]:
    """
    Check if R and Rscript are available in PATH.

    Returns
    -------
    tuple[bool, str]
        (is_available, message)
    """
    try:
        result = subprocess.run(
            ["Rscript", "--version"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except FileNotFoundError:
        return False, (
            "Rscript not found in PATH. Please install R (>=4.2) and ensure "
            "it is available in your system PATH."
        )
    except subprocess.TimeoutExpired:
        return False, "Rscript command timed out"

    if result.returncode == 0:
        version_info = result.stderr.strip() or result.stdout.strip()
        return True, f"R is available: {version_info}"
    return False, "Rscript command failed"


def check_r_packages(packages: Optional[List[str]] = None) -> Tuple[bool, str, list]:
    """
    Check if required R packages are installed.

    Parameters
    ----------
    packages : list of str, optional
        Package names. Defaults to Seurat and Matrix.

    Returns
    -------
    tuple[bool, str, list]
        (all_available, message, missing_packages)
    """
    required_packages = packages or DEFAULT_R_PACKAGES

    check_script = """
    packages <- c({})
    missing <- c()
    for (pkg in packages) {{
        if (!requireNamespace(pkg, quietly = TRUE)) {{
            missing <- c(missing, pkg)
        }}
    }}
    if (length(missing) > 0) {{
        cat("MISSING:", paste(missing, collapse = ","))
    }} else {{
        cat("OK")
    }}
    """.format(", ".join([f'"{pkg}"' for pkg in required_packages]))

    try:
        result = subprocess.run(
            ["Rscript", "-e", check_script],
            capture_output=True,
            text=True,
            timeout=30,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        return False, f"Error checking R packages: {e}", list(required_packages)

    output = result.stdout.strip()
    if output.startswith("MISSING:"):
        missing = output.replace("MISSING:", "").strip().split(",")
        msg = (
            f"Missing R packages: {', '.join(missing)}\n"
            f"Install with:\n"
            f"  R -e \"install.packages(c({', '.join(repr(p) for p in missing)}))\"\n"
        )
        return False, msg, missing
    elif output == "OK":
        return True, "All required R packages are installed", []
    return False, f"Unexpected output from R package check: {output}", []


def generate_cache_key(input_rds: Union[str, Path], params: Dict) -> str:
    """
    Generate a stable cache key from input file and parameters.

    Parameters
    ----------
    input_rds : str or Path
        Path to input .rds file.
    params : dict
        Conversion parameters.

    Returns
    -------
    str
        16 character hash-based cache key.
    """
    path = Path(input_rds)
    stat = path.stat()
    cache_data = {
        "file_stats": {"size": stat.st_size, "mtime": stat.st_mtime},
        "params": params,
    }

    cache_str = json.dumps(cache_data, sort_keys=True)
    return hashlib.sha256(cache_str.encode()).hexdigest()[:16]


def assemble_exported_reference(export_dir: Union[str, Path]) -> anndata.AnnData:
    """
    Build an AnnData object from files written by the R export script.

    Expects ``matrix.mtx`` (features x cells), ``features.tsv``,
    ``barcodes.tsv`` and ``metadata.csv`` (first column holds cell ids).

    Parameters
    ----------
    export_dir : str or Path
        Directory holding the exported files.

    Returns
    -------
    anndata.AnnData
        Cells x features object with counts in X and layers['counts'].
    """
    export_dir = Path(export_dir)
    required = ["matrix.mtx", "features.tsv", "barcodes.tsv"]
    missing = [name for name in required if not (export_dir / name).exists()]
    if missing:
        raise FileNotFoundError(f"Exported reference is incomplete, missing: {missing}")

    matrix = sp.csr_matrix(scipy.io.mmread(export_dir / "matrix.mtx").T)
    features = pd.read_csv(export_dir / "features.tsv", header=None, sep="\t")[0].astype(str)
    barcodes = pd.read_csv(export_dir / "barcodes.tsv", header=None, sep="\t")[0].astype(str)

    if matrix.shape != (len(barcodes), len(features)):
        raise ValueError(
            f"Matrix shape {matrix.shape} does not match "
            f"{len(barcodes)} barcodes x {len(features)} features"
        )

    metadata_path = export_dir / "metadata.csv"
    if metadata_path.exists():
        obs = pd.read_csv(metadata_path, index_col=0)
        obs.index = obs.index.astype(str)
        obs = obs.reindex(barcodes.values)
    else:
        obs = pd.DataFrame(index=barcodes.values)

    adata = anndata.AnnData(
        X=matrix.astype("float32"),
        obs=obs,
        var=pd.DataFrame(index=features.values),
    )
    adata.var_names_make_unique()
    adata.layers["counts"] = adata.X.copy()

    logger.info(f"Assembled reference: {adata.n_obs} cells × {adata.n_vars} features")
    return adata


def convert_rds_to_h5ad(
    input_rds: Union[str, Path],
    output_dir: Union[str, Path],
    assay: str = "RNA",
    layer: str = "counts",
    overwrite: bool = False,
    use_cache: bool = True,
) -> Tuple[str, Dict]:
    """
    Convert an RDS reference (Seurat or spacexr Reference) to H5AD using R.

    Parameters
    ----------
    input_rds : str or Path
        Path to input .rds file.
    output_dir : str or Path
        Directory for the converted H5AD file.
    assay : str
        Seurat assay to extract (default: "RNA").
    layer : str
        Seurat layer/slot to extract: "counts" or "data" (default: "counts").
    overwrite : bool
        Whether to redo the conversion when the output already exists.
    use_cache : bool
        Whether to reuse a previous conversion with the same inputs.

    Returns
    -------
    tuple[str, dict]
        (output_h5ad_path, conversion_info)

    Raises
    ------
    FileNotFoundError
        If the input file does not exist.
    RuntimeError
        If R is not available or the export fails.
    """
    input_rds = Path(input_rds)
    if not input_rds.exists():
        raise FileNotFoundError(f"RDS file not found: {input_rds}")

    output_dir_path = Path(output_dir)
    output_dir_path.mkdir(parents=True, exist_ok=True)

    params = {"assay": assay, "layer": layer}
    cache_key = generate_cache_key(input_rds, params)
    output_h5ad = output_dir_path / f"{input_rds.stem}_{cache_key}.h5ad"

    if use_cache and output_h5ad.exists() and not overwrite:
        logger.info(f"Using cached conversion: {output_h5ad}")
        adata = anndata.read_h5ad(output_h5ad, backed="r")
        conversion_info = {
            "input_rds": str(input_rds),
            "output_h5ad": str(output_h5ad),
            "cached": True,
            "n_cells": adata.n_obs,
            "n_features": adata.n_vars,
            "params": params,
        }
        adata.file.close()
        return str(output_h5ad), conversion_info

    r_available, r_msg = check_r_available()
    if not r_available:
        raise RuntimeError(f"R is not available: {r_msg}")
    logger.info(f"R check: {r_msg}")

    packages_ok, packages_msg, _ = check_r_packages()
    if not packages_ok:
        raise RuntimeError(f"Required R packages missing:\n{packages_msg}")

    with tempfile.TemporaryDirectory() as tmp:
        tmp_path = Path(tmp)
        script_path = tmp_path / "export_reference.R"
        script_path.write_text(EXPORT_SCRIPT)

        cmd = ["Rscript", str(script_path), str(input_rds), str(tmp_path), assay, layer]
        logger.info(f"Running R export: {' '.join(cmd)}")

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=600)
        except subprocess.TimeoutExpired as e:
            raise RuntimeError(
                "R export timed out after 10 minutes. "
                "The input file may be too large."
            ) from e

        if result.stdout:
            logger.info(f"R script output:\n{result.stdout}")

        if result.returncode != 0:
            error_msg = result.stderr or "Unknown error"
            logger.error(f"R export failed with exit code {result.returncode}")
            raise RuntimeError(
                f"R export failed (exit code {result.returncode}):\n{error_msg}\n\n"
                f"stdout:\n{result.stdout}"
            )

        adata = assemble_exported_reference(tmp_path)

    adata.uns["conversion"] = {"input_rds": str(input_rds), **params}
    adata.write_h5ad(output_h5ad, compression="gzip")

    conversion_info = {
        "input_rds": str(input_rds),
        "output_h5ad": str(output_h5ad),
        "cached": False,
        "n_cells": adata.n_obs,
        "n_features": adata.n_vars,
        "params": params,
        "r_stdout": result.stdout,
    }

    logger.info(f"Conversion successful: {output_h5ad}")
    logger.info(f"Cells: {adata.n_obs}, Features: {adata.n_vars}")

    return str(output_h5ad), conversion_info


def load_reference(
    path: Union[str, Path],
    cell_type_col: str = "cell_type",
    output_dir: Optional[Union[str, Path]] = None,
    assay: str = "RNA",
) -> anndata.AnnData:
    """
    Load a single-cell reference dataset for deconvolution.

    ``.h5ad`` files are read directly; ``.rds`` files are converted first
    (into ``output_dir``, or next to the input file).

    Parameters
    ----------
    path : str or Path
        Reference file (.h5ad or .rds).
    cell_type_col : str
        Column in obs holding cell type labels.
    output_dir : str or Path, optional
        Where converted RDS files are cached.
    assay : str
        Seurat assay used when converting.

    Returns
    -------
    anndata.AnnData
        Reference with counts and a cell type column.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Reference file not found: {path}")

    suffix = path.suffix.lower()
    if suffix == ".h5ad":
        adata = anndata.read_h5ad(path)
    elif suffix == ".rds":
        h5ad_path, _ = convert_rds_to_h5ad(
            path, output_dir or path.parent, assay=assay, layer="counts"
        )
        adata = anndata.read_h5ad(h5ad_path)
    else:
        raise ValueError(f"Unsupported reference format '{suffix}'. Use .h5ad or .rds")

    if cell_type_col not in adata.obs.columns:
        raise ValueError(
            f"Cell type column '{cell_type_col}' not found in reference. "
            f"Available columns: {list(adata.obs.columns)}"
        )

    logger.info(
        f"Loaded reference with {adata.n_obs} cells, "
        f"{adata.obs[cell_type_col].nunique()} cell types"
    )
    return adata

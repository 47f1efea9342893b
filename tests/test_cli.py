"""Tests for the command-line interface."""

import gzip
import json

import numpy as np
import pandas as pd
import pytest
import scipy.io
import scipy.sparse as sp
from anndata import AnnData
from click.testing import CliRunner

from spatial_workshop import __version__
from spatial_workshop.cli import main
from spatial_workshop.io import load_h5ad, save_h5ad
from spatial_workshop.modeling import get_default_parameters, save_parameters


def create_analyzed_adata(n_obs=40, n_vars=8):
    """Two groups of cells on a grid, with counts, PCA and UMAP."""
    rng = np.random.default_rng(0)
    group = np.array(["1", "2"] * (n_obs // 2))
    X = rng.poisson(2, size=(n_obs, n_vars)).astype(float)
    X[group == "1", 0] += 10
    xs, ys = np.meshgrid(np.arange(n_obs // 4), np.arange(4))

    adata = AnnData(
        X=X,
        obs=pd.DataFrame(
            {"clusters": pd.Categorical(group), "sample_id": "s1"},
            index=[f"cell_{i}" for i in range(n_obs)],
        ),
        var=pd.DataFrame(index=[f"gene_{i}" for i in range(n_vars)]),
    )
    adata.layers["counts"] = X.copy()
    adata.obsm["spatial"] = np.column_stack([xs.ravel(), ys.ravel()]).astype(float) * 10
    adata.obsm["X_pca"] = np.column_stack([(group == "1") * 10.0, rng.normal(size=n_obs)])
    adata.obsm["X_umap"] = rng.normal(size=(n_obs, 2))
    return adata


@pytest.fixture
def h5ad_file(tmp_path):
    return save_h5ad(create_analyzed_adata(), tmp_path / "data.h5ad")


@pytest.fixture
def xenium_dir(tmp_path):
    """Minimal Xenium bundle with 6 cells and 3 genes."""
    bundle = tmp_path / "xenium"
    matrix_dir = bundle / "cell_feature_matrix"
    matrix_dir.mkdir(parents=True)

    counts = np.arange(18).reshape(6, 3) % 5
    cell_ids = [f"cell{i}" for i in range(6)]
    mtx_file = matrix_dir / "matrix.mtx"
    scipy.io.mmwrite(str(mtx_file), sp.coo_matrix(counts.T))
    with open(mtx_file, "rb") as src, gzip.open(matrix_dir / "matrix.mtx.gz", "wb") as dst:
        dst.write(src.read())
    mtx_file.unlink()
    with gzip.open(matrix_dir / "barcodes.tsv.gz", "wt") as f:
        f.write("".join(f"{c}\n" for c in cell_ids))
    with gzip.open(matrix_dir / "features.tsv.gz", "wt") as f:
        f.write("".join(f"ID{i}\tGene{i}\tGene Expression\n" for i in range(3)))

    pd.DataFrame(
        {
            "cell_id": cell_ids,
            "x_centroid": np.arange(6) * 10.0,
            "y_centroid": np.zeros(6),
            "cell_area": 50.0,
        }
    ).to_csv(bundle / "cells.csv.gz", index=False)
    return bundle


class TestGeneral:
    """Tests for the command group."""

    def test_version(self):
        result = CliRunner().invoke(main, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self):
        result = CliRunner().invoke(main, ["--help"])

        assert result.exit_code == 0
        for command in ["import-visium", "import-xenium", "hotspots", "register", "run"]:
            assert command in result.output


class TestValidate:
    """Tests for the validate command."""

    def test_valid_file(self, h5ad_file):
        result = CliRunner().invoke(main, ["validate", str(h5ad_file), "--strict"])

        assert result.exit_code == 0
        assert "Status: PASSED" in result.output

    def test_invalid_file(self, tmp_path):
        adata = AnnData(X=np.ones((5, 3)))
        path = save_h5ad(adata, tmp_path / "bare.h5ad")

        result = CliRunner().invoke(main, ["validate", str(path), "--strict"])

        assert result.exit_code == 1
        assert "Status: FAILED" in result.output


class TestCommands:
    """Tests for the analysis commands."""

    def test_import_xenium(self, xenium_dir, tmp_path):
        output = tmp_path / "xenium.h5ad"

        result = CliRunner().invoke(
            main, ["import-xenium", str(xenium_dir), "-o", str(output), "--no-image"]
        )

        assert result.exit_code == 0, result.output
        assert "Imported 6 cells x 3 genes" in result.output
        assert load_h5ad(output).obsm["spatial"].shape == (6, 2)

    def test_cluster_kmeans(self, h5ad_file, tmp_path):
        output = tmp_path / "clustered.h5ad"

        result = CliRunner().invoke(
            main, ["cluster", str(h5ad_file), "-o", str(output), "--method", "kmeans", "--n-clusters", "2"]
        )

        assert result.exit_code == 0, result.output
        assert "Assigned 2 clusters to obs['kmeans']" in result.output
        assert load_h5ad(output).obs["kmeans"].nunique() == 2

    def test_hotspots(self, h5ad_file, tmp_path):
        output = tmp_path / "hotspots.h5ad"

        result = CliRunner().invoke(
            main,
            ["hotspots", str(h5ad_file), "-o", str(output), "-f", "gene_0", "--permutations", "99"],
        )

        assert result.exit_code == 0, result.output
        assert "gene_0:" in result.output
        assert "gene_0_hotspot_flag" in load_h5ad(output).obs.columns

    def test_hotspots_radius_required(self, h5ad_file):
        result = CliRunner().invoke(
            main, ["hotspots", str(h5ad_file), "-f", "gene_0", "--graph", "radius"]
        )

        assert result.exit_code == 1
        assert "ERROR: Must specify 'radius'" in result.output

    def test_summarize(self, h5ad_file, tmp_path):
        output = tmp_path / "summary.json"

        result = CliRunner().invoke(
            main, ["summarize", str(h5ad_file), "-o", str(output), "--n-markers", "2"]
        )

        assert result.exit_code == 0, result.output
        with open(output) as f:
            summary = json.load(f)
        assert summary["qc"]["n_cells"] == 40
        assert summary["spatial"] is None
        assert summary["groups"]["label_col"] == "clusters"
        assert summary["groups"]["markers"]["1"][0] == "gene_0"

    def test_export(self, h5ad_file, tmp_path):
        output_dir = tmp_path / "exports"

        result = CliRunner().invoke(main, ["export", str(h5ad_file), "-o", str(output_dir)])

        assert result.exit_code == 0, result.output
        assert (output_dir / "labels.csv").exists()
        assert (output_dir / "umap.parquet").exists()
        assert (output_dir / "pca.parquet").exists()
        with open(output_dir / "run_manifest.json") as f:
            manifest = json.load(f)
        assert manifest["input"]["files"][0]["name"] == "data.h5ad"

    def test_run_rejects_config_for_other_platform(self, tmp_path):
        config = save_parameters(get_default_parameters("xenium"), tmp_path / "params.toml")
        data_dir = tmp_path / "visium"
        data_dir.mkdir()

        result = CliRunner().invoke(
            main, ["run", "visium", str(data_dir), "-o", str(tmp_path / "out"), "--config", str(config)]
        )

        assert result.exit_code == 2
        assert "config is for 'xenium'" in result.output

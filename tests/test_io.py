"""Tests for I/O module."""

import gzip
import json

import numpy as np
import pandas as pd
import pytest
import scipy.io
import scipy.sparse as sp
from anndata import AnnData
from PIL import Image

from spatial_workshop.io import converter, loader, readers, validator


def create_test_adata(n_obs=100, n_vars=50):
    """Create a minimal test AnnData object."""
    X = np.random.rand(n_obs, n_vars)
    obs = pd.DataFrame(
        {
            "x_slide_mm": np.random.rand(n_obs) * 1000,
            "y_slide_mm": np.random.rand(n_obs) * 1000,
            "SampleID": ["sample_1"] * (n_obs // 2) + ["sample_2"] * (n_obs // 2),
            "nCount_RNA": np.random.randint(10, 1000, n_obs),
            "nFeature_RNA": np.random.randint(5, 100, n_obs),
        },
        index=[f"cell_{i}" for i in range(n_obs)],
    )
    var = pd.DataFrame(index=[f"gene_{i}" for i in range(n_vars)])

    adata = AnnData(X=X, obs=obs, var=var)
    return adata


def write_10x_mtx(directory, counts, barcodes, features, feature_types):
    """Write a gzipped 10x v3 matrix directory (features x barcodes)."""
    directory.mkdir(parents=True)

    mtx_file = directory / "matrix.mtx"
    scipy.io.mmwrite(str(mtx_file), sp.coo_matrix(counts.T))
    with open(mtx_file, "rb") as src, gzip.open(directory / "matrix.mtx.gz", "wb") as dst:
        dst.write(src.read())
    mtx_file.unlink()

    with gzip.open(directory / "barcodes.tsv.gz", "wt") as f:
        f.write("".join(f"{b}\n" for b in barcodes))
    with gzip.open(directory / "features.tsv.gz", "wt") as f:
        f.write(
            "".join(
                f"ID{i}\t{name}\t{ftype}\n"
                for i, (name, ftype) in enumerate(zip(features, feature_types))
            )
        )


@pytest.fixture
def visium_dir(tmp_path):
    """Space Ranger style output with 6 spots, 5 of them under tissue."""
    rng = np.random.default_rng(0)
    n_spots, n_genes = 6, 8
    barcodes = [f"SPOT{i}-1" for i in range(n_spots)]
    genes = [f"Gene{i}" for i in range(n_genes)]
    counts = rng.poisson(5, size=(n_spots, n_genes))

    outs = tmp_path / "outs"
    write_10x_mtx(
        outs / "filtered_feature_bc_matrix",
        counts,
        barcodes,
        genes,
        ["Gene Expression"] * n_genes,
    )

    spatial_dir = outs / "spatial"
    spatial_dir.mkdir()
    positions = pd.DataFrame(
        {
            "barcode": barcodes,
            "in_tissue": [1, 1, 1, 1, 1, 0],
            "array_row": np.arange(n_spots),
            "array_col": np.arange(n_spots) * 2,
            "pxl_row_in_fullres": np.arange(n_spots) * 100 + 50,
            "pxl_col_in_fullres": np.arange(n_spots) * 200 + 10,
        }
    )
    positions.to_csv(spatial_dir / "tissue_positions.csv", index=False)

    with open(spatial_dir / "scalefactors_json.json", "w") as f:
        json.dump(
            {
                "tissue_hires_scalef": 0.2,
                "tissue_lowres_scalef": 0.05,
                "spot_diameter_fullres": 90.0,
            },
            f,
        )
    Image.fromarray(np.zeros((40, 60, 3), dtype=np.uint8)).save(spatial_dir / "tissue_lowres_image.png")

    return outs


@pytest.fixture
def xenium_dir(tmp_path):
    """Xenium style bundle with 5 cells, 4 genes and 1 control probe."""
    n_cells = 5
    cell_ids = [f"cell{i}" for i in range(n_cells)]
    features = ["GeneA", "GeneB", "GeneC", "GeneD", "NegControlProbe_1"]
    types = ["Gene Expression"] * 4 + ["Negative Control Probe"]
    counts = np.array(
        [
            [5, 0, 1, 2, 1],
            [0, 3, 0, 1, 0],
            [2, 2, 2, 2, 2],
            [1, 0, 0, 0, 0],
            [0, 0, 4, 1, 1],
        ]
    )

    bundle = tmp_path / "xenium"
    write_10x_mtx(bundle / "cell_feature_matrix", counts, cell_ids, features, types)

    cells = pd.DataFrame(
        {
            "cell_id": cell_ids,
            "x_centroid": [10.0, 20.0, 30.0, 40.0, 50.0],
            "y_centroid": [5.0, 15.0, 25.0, 35.0, 45.0],
            "cell_area": [50.0, 60.0, 55.0, 40.0, 70.0],
        }
    )
    cells.to_csv(bundle / "cells.csv.gz", index=False)

    transcripts = pd.DataFrame(
        {
            "feature_name": ["GeneA", "GeneA", "GeneB", "NegControlProbe_1", "GeneC"],
            "x_location": [10.0, 11.0, 20.0, 12.0, 50.0],
            "y_location": [5.0, 6.0, 15.0, 5.0, 45.0],
            "z_location": [1.0, 1.0, 1.0, 1.0, 1.0],
            "qv": [30.0, 10.0, 40.0, 40.0, 25.0],
            "cell_id": ["cell0", "cell0", "cell1", "cell0", "cell4"],
        }
    )
    transcripts.to_csv(bundle / "transcripts.csv.gz", index=False)

    return bundle


class TestLoader:
    """Tests for loader functions."""

    def test_detect_mappings(self):
        """Test automatic mapping detection."""
        adata = create_test_adata()

        mappings = loader.detect_mappings(adata)

        assert mappings["x_col"] == "x_slide_mm"
        assert mappings["y_col"] == "y_slide_mm"
        assert mappings["sample_id_col"] == "SampleID"
        assert mappings["units"] == "mm"

    def test_detect_mappings_from_assay_type(self):
        """Units fall back to the assay type when no coordinate column exists."""
        adata = AnnData(X=np.ones((3, 2)))
        adata.obs["assay_type"] = "Xenium"

        mappings = loader.detect_mappings(adata)

        assert mappings["x_col"] is None
        assert mappings["units"] == "um"

    def test_get_available_columns(self):
        """Test getting available columns."""
        adata = create_test_adata()

        cols = loader.get_available_columns(adata)

        assert "obs_columns" in cols
        assert "numeric_columns" in cols
        assert "categorical_columns" in cols
        assert len(cols["numeric_columns"]) >= 3  # x, y, nCount_RNA

    def test_summarize_adata(self):
        """Test AnnData summarization."""
        adata = create_test_adata(n_obs=100, n_vars=50)
        adata.uns["spatial"] = {"s1": {"images": {"hires": np.zeros((2, 2, 3))}}}

        summary = loader.summarize_adata(adata)

        assert summary["n_obs"] == 100
        assert summary["n_vars"] == 50
        assert "obs_columns" in summary
        assert summary["images"] == {"s1": ["hires"]}

    def test_save_and_load_h5ad(self, tmp_path):
        """Images and scale factors survive the h5ad round trip."""
        adata = create_test_adata(n_obs=10, n_vars=5)
        adata.uns["spatial"] = {
            "s1": {
                "images": {"lowres": np.zeros((4, 4, 3), dtype=np.uint8)},
                "scalefactors": {"tissue_lowres_scalef": 0.5},
            }
        }

        path = loader.save_h5ad(adata, tmp_path / "nested" / "data.h5ad")
        loaded = loader.load_h5ad(path)

        assert loaded.shape == (10, 5)
        assert loaded.uns["spatial"]["s1"]["images"]["lowres"].shape == (4, 4, 3)
        assert loaded.uns["spatial"]["s1"]["scalefactors"]["tissue_lowres_scalef"] == 0.5

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            loader.load_h5ad(tmp_path / "missing.h5ad")


class TestValidator:
    """Tests for validator functions."""

    def test_validate_schema_valid(self):
        """Test validation of valid AnnData."""
        adata = create_test_adata()
        adata.obsm["spatial"] = adata.obs[["x_slide_mm", "y_slide_mm"]].values
        adata.layers["counts"] = adata.X.copy()
        adata.obs["sample_id"] = adata.obs["SampleID"]

        is_valid, messages = validator.validate_schema(adata, strict=True)

        assert is_valid
        assert len(messages) == 0

    def test_validate_schema_no_spatial(self):
        """Test validation without spatial coordinates."""
        adata = create_test_adata()

        is_valid, messages = validator.validate_schema(adata, strict=False)

        assert is_valid  # Should pass in non-strict mode
        assert any("spatial" in msg.lower() for msg in messages)

    def test_validate_schema_strict_fails(self):
        """Missing coordinates, counts and sample ids are errors in strict mode."""
        adata = create_test_adata()

        is_valid, messages = validator.validate_schema(adata, strict=True)

        assert not is_valid
        assert sum(msg.startswith("ERROR") for msg in messages) == 3

    def test_validate_schema_missing_scalefactor(self):
        adata = create_test_adata(n_obs=4, n_vars=3)
        adata.uns["spatial"] = {"s1": {"images": {"hires": np.zeros((2, 2))}, "scalefactors": {}}}

        _, messages = validator.validate_schema(adata)

        assert any("tissue_hires_scalef" in msg for msg in messages)

    def test_check_required_fields(self):
        """Test checking required fields."""
        adata = create_test_adata()
        adata.obs["cell_id"] = adata.obs.index
        adata.obs["sample_id"] = adata.obs["SampleID"]

        all_present, missing = validator.check_required_fields(
            adata,
            required_obs_cols=["cell_id", "sample_id"],
            required_obsm_keys=["spatial"],
        )

        assert not all_present
        assert len(missing["missing_obs"]) == 0
        assert missing["missing_obsm"] == ["spatial"]

    def test_check_data_types(self):
        adata = create_test_adata(n_obs=10, n_vars=5)
        adata.layers["counts"] = np.ones((10, 5), dtype=np.int32)
        adata.obsm["spatial"] = np.zeros((10, 2))
        adata.obsm["deconvolution"] = pd.DataFrame({"T": np.ones(10)}, index=adata.obs_names)

        dtypes = validator.check_data_types(adata)

        assert dtypes["X"] == "float64"
        assert dtypes["layers/counts"] == "int32"
        assert dtypes["obsm/spatial"] == "float64"
        assert dtypes["obsm/deconvolution"] == "dataframe"

    def test_check_counts_data(self):
        """Test checking if data looks like counts."""
        adata = create_test_adata()
        adata.X = np.random.poisson(5, size=adata.shape)  # Integer counts

        stats = validator.check_counts_data(adata)

        assert stats["is_integer"]
        assert not stats["has_negative"]
        assert stats["max_value"] >= 0


class TestConverter:
    """Tests for converter functions."""

    def test_ensure_spatial_coords(self):
        """Test creation of spatial coordinates in obsm."""
        adata = create_test_adata()

        adata = converter.ensure_spatial_coords(
            adata, x_col="x_slide_mm", y_col="y_slide_mm"
        )

        assert "spatial" in adata.obsm
        assert adata.obsm["spatial"].shape == (adata.n_obs, 2)

    def test_ensure_spatial_coords_missing(self):
        adata = AnnData(X=np.ones((3, 2)))

        with pytest.raises(ValueError, match="No spatial coordinates"):
            converter.ensure_spatial_coords(adata)

    def test_normalize_metadata(self):
        """Test metadata normalization."""
        adata = create_test_adata()

        adata = converter.normalize_metadata(
            adata, sample_id_col="SampleID"
        )

        assert "cell_id" in adata.obs.columns
        assert "sample_id" in adata.obs.columns

    def test_convert_units(self):
        """Test unit conversion."""
        coords = np.array([[1.0, 2.0], [3.0, 4.0]])

        coords_um = converter.convert_units(coords, from_units="mm", to_units="um")

        assert coords_um[0, 0] == 1000.0
        assert coords_um[0, 1] == 2000.0

    def test_convert_units_pixels_need_factor(self):
        coords = np.array([[1.0, 2.0]])

        with pytest.raises(ValueError, match="conversion_factor"):
            converter.convert_units(coords, from_units="um", to_units="px")

        converted = converter.convert_units(coords, "um", "px", conversion_factor=2.0)
        assert converted[0, 1] == 4.0

    def test_standardize_column_names(self):
        adata = create_test_adata(n_obs=10)
        adata.obs["sample_id"] = "s1"

        converter.standardize_column_names(
            adata, {"nCount_RNA": "n_counts", "SampleID": "sample_id", "absent": "x"}
        )

        assert "n_counts" in adata.obs.columns
        assert "nCount_RNA" not in adata.obs.columns
        # Existing targets are not overwritten
        assert "SampleID" in adata.obs.columns

    def test_add_cell_id_column(self):
        """Test adding cell_id column."""
        adata = create_test_adata()

        # Remove index names
        adata.obs.index = [str(i) for i in range(adata.n_obs)]

        adata = converter.add_cell_id_column(adata, prefix="cell_")

        assert "cell_id" in adata.obs.columns
        assert adata.obs["cell_id"].iloc[0] == "cell_0"


class TestReaders:
    """Tests for Visium and Xenium readers."""

    def test_is_control_feature(self):
        assert readers.is_control_feature("NegControlProbe_ACTB")
        assert readers.is_control_feature("BLANK_0001")
        assert not readers.is_control_feature("EPCAM")

    def test_read_visium(self, visium_dir):
        """Spots outside tissue are dropped and images attached."""
        adata = readers.read_visium(str(visium_dir), sample_name="s1")

        assert adata.n_obs == 5
        assert adata.n_vars == 8
        assert "counts" in adata.layers
        assert (adata.obs["sample_id"] == "s1").all()
        assert (adata.obs["assay_type"] == "Visium").all()

        # Coordinates are (x, y) = (column, row) in full-resolution pixels
        first = adata.obs_names.get_loc("SPOT1-1")
        assert adata.obsm["spatial"][first].tolist() == [210.0, 150.0]

        entry = adata.uns["spatial"]["s1"]
        assert list(entry["images"]) == ["lowres"]
        assert entry["scalefactors"]["tissue_lowres_scalef"] == 0.05

    def test_read_visium_keep_all_spots(self, visium_dir):
        adata = readers.read_visium(str(visium_dir), in_tissue_only=False, load_images=False)

        assert adata.n_obs == 6
        assert adata.uns["spatial"]["outs"]["images"] == {}

    def test_read_visium_old_positions_format(self, visium_dir):
        """Headerless tissue_positions_list.csv is accepted."""
        spatial_dir = visium_dir / "spatial"
        positions = pd.read_csv(spatial_dir / "tissue_positions.csv")
        (spatial_dir / "tissue_positions.csv").unlink()
        positions.to_csv(spatial_dir / "tissue_positions_list.csv", index=False, header=False)

        table = readers.read_visium_positions(spatial_dir)

        assert table.index[0] == "SPOT0-1"
        assert table.loc["SPOT5-1", "in_tissue"] == 0

    def test_read_visium_missing_dir(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            readers.read_visium(str(tmp_path / "nope"))

    def test_read_xenium(self, xenium_dir):
        """Control probes are removed and counted per cell."""
        adata = readers.read_xenium(str(xenium_dir), sample_name="x1")

        assert adata.n_obs == 5
        assert list(adata.var_names) == ["GeneA", "GeneB", "GeneC", "GeneD"]
        assert adata.obs.loc["cell0", "control_counts"] == 1
        assert adata.obs.loc["cell4", "cell_area"] == 70.0
        assert adata.obsm["spatial"][0].tolist() == [10.0, 5.0]
        assert adata.uns["spatial"]["x1"]["scalefactors"]["pixel_size"] == readers.XENIUM_DEFAULT_PIXEL_SIZE
        assert "molecules" not in adata.uns

    def test_read_xenium_molecules(self, xenium_dir):
        """Low quality molecules and control probes are filtered out."""
        adata = readers.read_xenium(str(xenium_dir), import_molecules=True, min_qv=20)

        molecules = adata.uns["molecules"]
        assert len(molecules) == 3
        assert set(molecules["feature_name"].astype(str)) == {"GeneA", "GeneB", "GeneC"}

    def test_read_xenium_molecules_keep_controls(self, xenium_dir):
        """Control probes kept in the matrix are kept in the molecules too."""
        adata = readers.read_xenium(
            str(xenium_dir), import_molecules=True, min_qv=20, remove_controls=False
        )

        molecules = adata.uns["molecules"]
        assert "NegControlProbe_1" in adata.var_names
        assert len(molecules) == 4
        assert "NegControlProbe_1" in set(molecules["feature_name"].astype(str))

    def test_get_image(self, visium_dir):
        adata = readers.read_visium(str(visium_dir), sample_name="s1")

        library_id, image, scalef = readers.get_image(adata, "lowres")

        assert library_id == "s1"
        assert image.shape == (40, 60, 3)
        assert scalef == 0.05
        assert readers.list_images(adata) == ["lowres"]

        with pytest.raises(ValueError, match="hires"):
            readers.get_image(adata, "hires")

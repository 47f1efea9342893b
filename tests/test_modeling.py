"""Tests for preprocessing, clustering and parameter management."""

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp
from anndata import AnnData

from spatial_workshop import modeling
from spatial_workshop.modeling import clustering, parameters


def create_counts_adata(n_obs=60, n_vars=20, seed=0):
    """Poisson counts with two groups of observations."""
    rng = np.random.default_rng(seed)
    X = rng.poisson(3, size=(n_obs, n_vars)).astype(float)
    group = np.array(["a", "b"] * (n_obs // 2))
    X[group == "a", :5] += 15
    obs = pd.DataFrame({"group": group}, index=[f"cell_{i}" for i in range(n_obs)])
    var = pd.DataFrame(index=[f"gene_{i}" for i in range(n_vars)])
    return AnnData(X=X, obs=obs, var=var)


def create_blobs_adata(n_per_blob=30, seed=0):
    """Two well separated blobs in a 5-dimensional representation."""
    rng = np.random.default_rng(seed)
    blob_a = rng.normal(0, 0.5, size=(n_per_blob, 5))
    blob_b = rng.normal(20, 0.5, size=(n_per_blob, 5))
    adata = AnnData(X=np.zeros((2 * n_per_blob, 3)))
    adata.obsm["X_pca"] = np.vstack([blob_a, blob_b])
    adata.obs["blob"] = ["a"] * n_per_blob + ["b"] * n_per_blob
    return adata


class TestParameters:
    """Tests for workflow parameters."""

    def test_platform_defaults(self):
        visium = parameters.get_default_parameters("visium")
        xenium = parameters.get_default_parameters("xenium")

        assert visium.platform == "visium"
        assert visium.n_top_genes == 3000
        assert xenium.n_top_genes is None
        assert xenium.neighbors_method == "radius"
        assert xenium.min_counts < visium.min_counts

    def test_unknown_platform(self):
        with pytest.raises(ValueError, match="Unknown platform"):
            parameters.get_default_parameters("merfish")

    def test_defaults_are_valid(self):
        for platform in ("visium", "xenium"):
            is_valid, errors = parameters.validate_parameters(
                parameters.get_default_parameters(platform)
            )
            assert is_valid, errors

    def test_invalid_parameters(self):
        params = parameters.WorkflowParameters(
            normalization="sct",
            resolution=0,
            neighbors_method="radius",
            neighbors_radius=None,
            hotspot_alpha=1.5,
            deconvolution_n_jobs=0,
        )

        is_valid, errors = parameters.validate_parameters(params)

        assert not is_valid
        assert len(errors) == 5
        assert any("neighbors_radius" in e for e in errors)

    def test_hotspot_graph_needs_its_neighbor_setting(self):
        xenium = parameters.get_default_parameters("xenium")
        xenium.hotspot_graph = "knn"
        visium = parameters.get_default_parameters("visium")
        visium.hotspot_graph = "radius"

        xenium_valid, xenium_errors = parameters.validate_parameters(xenium)
        visium_valid, visium_errors = parameters.validate_parameters(visium)

        assert not xenium_valid
        assert xenium_errors == ["neighbors_k must be specified when hotspot_graph='knn'"]
        assert not visium_valid
        assert visium_errors == ["neighbors_radius must be specified when hotspot_graph='radius'"]

    def test_from_dict_ignores_unknown_keys(self):
        params = parameters.WorkflowParameters.from_dict({"resolution": 1.2, "novel": 3})

        assert params.resolution == 1.2
        assert params.to_dict()["resolution"] == 1.2

    def test_save_load_round_trip(self, tmp_path):
        params = parameters.get_default_parameters("xenium")
        params.hotspot_features = ["n_counts", "GeneA"]

        path = parameters.save_parameters(params, tmp_path / "config" / "params.toml")
        loaded = parameters.load_parameters(path)

        assert loaded == params
        assert "[workflow]" in path.read_text()

    def test_save_load_keeps_none_over_preset(self, tmp_path):
        """Fields set to None stay None even where the preset has a value."""
        params = parameters.get_default_parameters("visium")
        params.n_top_genes = None
        params.target_sum = None

        path = parameters.save_parameters(params, tmp_path / "params.toml")
        loaded = parameters.load_parameters(path)

        assert loaded.n_top_genes is None
        assert loaded.target_sum is None
        assert loaded == params

    def test_load_flat_file(self, tmp_path):
        path = tmp_path / "params.toml"
        path.write_text('platform = "xenium"\nresolution = 1.5\nunused = 1\n')

        params = parameters.load_parameters(path)

        assert params.platform == "xenium"
        assert params.resolution == 1.5
        # Unset keys come from the platform preset
        assert params.neighbors_radius == 15.0

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            parameters.load_parameters(tmp_path / "missing.toml")


class TestNormalization:
    """Tests for normalization."""

    def test_clr_transform_rows(self):
        matrix = np.array([[1.0, 3.0], [0.0, 0.0]])

        result = modeling.clr_transform(matrix, axis=1)

        geometric = np.exp((np.log(2) + np.log(4)) / 2)
        assert np.allclose(result[0], np.log1p(np.array([1.0, 3.0]) / geometric))
        assert np.allclose(result[1], 0)

    def test_clr_transform_sparse_columns(self):
        matrix = sp.csr_matrix(np.array([[2.0, 0.0], [2.0, 5.0]]))

        result = modeling.clr_transform(matrix, axis=0)

        assert isinstance(result, np.ndarray)
        # Constant column maps to a constant value
        assert np.isclose(result[0, 0], result[1, 0])

    def test_clr_transform_errors(self):
        with pytest.raises(ValueError, match="non-negative"):
            modeling.clr_transform(np.array([[-1.0, 2.0]]))
        with pytest.raises(ValueError, match="axis"):
            modeling.clr_transform(np.ones((2, 2)), axis=2)

    def test_log_normalization(self):
        adata = create_counts_adata()
        raw = adata.X.copy()

        modeling.normalize_data(adata, method="log", target_sum=1e4)

        assert np.allclose(adata.layers["counts"], raw)
        assert np.allclose(np.expm1(adata.X).sum(axis=1), 1e4, rtol=1e-3)
        assert np.allclose(adata.layers["normalized"], adata.X)
        assert adata.uns["normalization"]["method"] == "log"

    def test_clr_normalization(self):
        adata = create_counts_adata()

        modeling.normalize_data(adata, method="clr", axis=0)

        expected = modeling.clr_transform(adata.layers["counts"], axis=0)
        assert np.allclose(adata.X, expected, atol=1e-5)
        assert "target_sum" not in adata.uns["normalization"]
        assert adata.uns["normalization"]["axis"] == 0

    def test_normalization_is_repeatable(self):
        """Normalizing twice starts from the stored counts both times."""
        adata = create_counts_adata()

        modeling.normalize_data(adata, method="log")
        first = adata.X.copy()
        modeling.normalize_data(adata, method="log")

        assert np.allclose(adata.X, first)

    def test_normalization_errors(self):
        adata = create_counts_adata()

        with pytest.raises(ValueError, match="Unknown normalization"):
            modeling.normalize_data(adata, method="sct")
        with pytest.raises(ValueError, match="spliced"):
            modeling.normalize_data(adata, layer="spliced")


class TestReduction:
    """Tests for feature selection and embeddings."""

    def test_small_panel_keeps_all_features(self):
        adata = create_counts_adata()

        modeling.select_variable_features(adata, n_top_genes=100)

        assert adata.var["highly_variable"].all()

    def test_run_pca_clips_components(self):
        adata = create_counts_adata(n_obs=40, n_vars=20)
        modeling.normalize_data(adata)

        modeling.run_pca(adata, n_comps=30)

        assert adata.obsm["X_pca"].shape == (40, 19)
        assert adata.uns["pca"]["params"]["n_comps"] == 19
        assert len(adata.uns["pca"]["features"]) == 20

    def test_run_pca_uses_selected_features(self):
        adata = create_counts_adata(n_obs=40, n_vars=20)
        modeling.normalize_data(adata)
        adata.var["highly_variable"] = [True] * 8 + [False] * 12

        modeling.run_pca(adata, n_comps=5)

        assert adata.uns["pca"]["features"] == [f"gene_{i}" for i in range(8)]
        assert adata.n_vars == 20

    def test_run_umap_requires_representation(self):
        adata = create_counts_adata()

        with pytest.raises(ValueError, match="X_pca"):
            modeling.run_umap(adata)

    def test_preprocess(self):
        adata = create_counts_adata()
        params = parameters.get_default_parameters("xenium")
        params.n_comps = 10

        modeling.preprocess(adata, params)

        assert adata.obsm["X_pca"].shape == (60, 10)
        assert adata.obsm["X_umap"].shape == (60, 2)
        assert {"counts", "normalized"} <= set(adata.layers)
        assert "umap_neighbors_connectivities" in adata.obsp


class TestClustering:
    """Tests for SNN graphs and clustering."""

    def test_order_cluster_labels(self):
        labels = clustering.order_cluster_labels(["10", "2", "1", "b", "a", 2])

        assert list(labels.categories) == ["1", "2", "10", "a", "b"]
        assert labels.ordered

    def test_snn_jaccard_weights(self):
        adata = AnnData(X=np.zeros((6, 2)))
        adata.obsm["X_pca"] = np.array([[0.0], [1.0], [2.0], [10.0], [11.0], [12.0]])

        clustering.build_snn_graph(adata, n_dims=1, n_neighbors=3, prune=0)

        snn = adata.obsp["snn_connectivities"].toarray()
        expected = np.zeros((6, 6))
        expected[:3, :3] = 1
        expected[3:, 3:] = 1
        np.fill_diagonal(expected, 0)
        assert np.allclose(snn, expected)
        assert adata.uns["snn"]["params"]["n_neighbors"] == 3

    def test_snn_missing_representation(self):
        adata = AnnData(X=np.zeros((4, 2)))

        with pytest.raises(ValueError, match="X_pca"):
            clustering.build_snn_graph(adata)

    def test_cluster_leiden_separates_blobs(self):
        adata = create_blobs_adata()
        clustering.build_snn_graph(adata, n_neighbors=10)

        clustering.cluster_leiden(adata, resolution=0.3)

        clusters = adata.obs["clusters"]
        assert isinstance(clusters.dtype, pd.CategoricalDtype)
        assert clusters.nunique() >= 2
        # No cluster spans both blobs
        assert (adata.obs.groupby("clusters", observed=True)["blob"].nunique() == 1).all()

    def test_cluster_leiden_requires_graph(self):
        adata = create_blobs_adata()

        with pytest.raises(ValueError, match="build_snn_graph"):
            clustering.cluster_leiden(adata)

    def test_cluster_kmeans(self):
        adata = create_blobs_adata()

        clustering.cluster_kmeans(adata, n_clusters=2, use_rep="X_pca")

        assert list(adata.obs["kmeans"].cat.categories) == ["0", "1"]
        table = pd.crosstab(adata.obs["kmeans"], adata.obs["blob"])
        assert (table.to_numpy().max(axis=1) == 30).all()

    def test_cluster_kmeans_invalid_k(self):
        adata = create_blobs_adata(n_per_blob=2)

        with pytest.raises(ValueError, match="n_clusters"):
            clustering.cluster_kmeans(adata, n_clusters=5, use_rep="X_pca")
        with pytest.raises(ValueError, match="X_umap"):
            clustering.cluster_kmeans(adata, n_clusters=2, use_rep="X_umap")

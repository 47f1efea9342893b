"""Tests for spatial module."""

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp
from anndata import AnnData

from spatial_workshop.spatial import diagnostics, hotspots, neighbors, registration, transfer


def create_test_adata_with_spatial(n_obs=100, n_vars=50):
    """Create a test AnnData object with spatial coordinates."""
    X = np.random.rand(n_obs, n_vars)
    obs = pd.DataFrame(
        {
            "sample_id": ["sample_1"] * n_obs,
        },
        index=[f"cell_{i}" for i in range(n_obs)],
    )
    var = pd.DataFrame(index=[f"gene_{i}" for i in range(n_vars)])

    adata = AnnData(X=X, obs=obs, var=var)

    # Add spatial coordinates (random positions in 1000x1000 space)
    adata.obsm["spatial"] = np.random.rand(n_obs, 2) * 1000

    return adata


def create_grid_adata(side=15, seed=0):
    """Jittered grid with a high-signal block in the lower-left corner."""
    rng = np.random.default_rng(seed)
    xs, ys = np.meshgrid(np.arange(side, dtype=float), np.arange(side, dtype=float))
    coords = np.column_stack([xs.ravel(), ys.ravel()]) + rng.uniform(-0.1, 0.1, (side * side, 2))

    corner = (coords[:, 0] < 4) & (coords[:, 1] < 4)
    signal = np.where(corner, 10.0, 0.0) + rng.uniform(0, 0.5, side * side)

    adata = AnnData(
        X=np.column_stack([signal, rng.uniform(0, 1, side * side)]),
        var=pd.DataFrame(index=["Marker", "Noise"]),
    )
    adata.obs_names = [f"cell_{i}" for i in range(adata.n_obs)]
    adata.obsm["spatial"] = coords
    adata.obs["n_counts"] = signal * 10
    return adata, corner


class TestNeighbors:
    """Tests for neighbor graph construction."""

    def test_compute_neighbors_radius(self):
        """Test radius-based neighbor computation."""
        adata = create_test_adata_with_spatial()

        adata = neighbors.compute_neighbors(
            adata, method="radius", radius=150.0
        )

        assert "spatial_connectivities" in adata.obsp
        assert "spatial_distances" in adata.obsp
        assert "spatial_neighbors" in adata.uns

    def test_compute_neighbors_radius_requires_radius(self):
        adata = create_test_adata_with_spatial()

        with pytest.raises(ValueError, match="radius"):
            neighbors.compute_neighbors(adata, method="radius")

    def test_compute_neighbors_knn(self):
        """KNN graphs are symmetric and exclude self loops."""
        adata = create_test_adata_with_spatial()

        adata = neighbors.compute_neighbors(
            adata, method="knn", n_neighbors=10
        )

        conn = adata.obsp["spatial_connectivities"]
        assert (conn != conn.T).nnz == 0
        assert conn.diagonal().sum() == 0
        assert np.all(conn.getnnz(axis=1) >= 10)

    def test_compute_neighbors_delaunay(self):
        """A jittered grid gets its four lattice neighbors connected."""
        adata, _ = create_grid_adata(side=5)

        neighbors.compute_neighbors(adata, method="delaunay", key_added="hotspot")

        conn = adata.obsp["hotspot_connectivities"]
        assert "hotspot_neighbors" in adata.uns
        assert (conn != conn.T).nnz == 0
        # Center cell (2, 2) touches (1, 2), (3, 2), (2, 1), (2, 3)
        center = 2 * 5 + 2
        assert set([center - 1, center + 1, center - 5, center + 5]) <= set(conn[center].indices)

    def test_compute_neighbors_delaunay_too_few_points(self):
        adata = create_test_adata_with_spatial(n_obs=2)

        with pytest.raises(ValueError, match="at least 3"):
            neighbors.compute_neighbors(adata, method="delaunay")

    def test_build_spatial_graph(self):
        """Test building spatial graph with auto method selection."""
        adata = create_test_adata_with_spatial()

        # With radius
        adata = neighbors.build_spatial_graph(adata, radius=150.0)

        assert "spatial_connectivities" in adata.obsp
        assert adata.uns["spatial_neighbors"]["params"]["method"] == "radius"


class TestDiagnostics:
    """Tests for spatial graph diagnostics."""

    def test_graph_diagnostics(self):
        """Test computing graph diagnostics."""
        adata = create_test_adata_with_spatial()
        adata = neighbors.compute_neighbors(adata, method="radius", radius=150.0)

        diag = diagnostics.graph_diagnostics(adata)

        assert "n_cells" in diag
        assert "n_edges" in diag
        assert "degree" in diag
        assert "connected_components" in diag
        assert diag["n_cells"] == adata.n_obs
        assert diag["edge_length"]["max"] <= 150.0

    def test_compute_degree_distribution(self):
        """Test computing degree distribution."""
        adata = create_test_adata_with_spatial()
        adata = neighbors.compute_neighbors(adata, method="knn", n_neighbors=10)

        degree_dist = diagnostics.compute_degree_distribution(adata)

        assert len(degree_dist) > 0
        assert degree_dist.sum() == adata.n_obs

    def test_plot_degree_distribution(self):
        adata = create_test_adata_with_spatial(n_obs=20)
        neighbors.compute_neighbors(adata, method="knn", n_neighbors=4)

        fig = diagnostics.plot_degree_distribution(adata)

        ax = fig.axes[0]
        assert sum(patch.get_height() for patch in ax.patches) == 20
        assert "spatial_connectivities" in ax.get_title()

    def test_identify_isolated_cells(self):
        """Observations beyond the radius of everyone else are isolated."""
        adata = create_test_adata_with_spatial(n_obs=3)
        adata.obsm["spatial"] = np.array([[0.0, 0.0], [1.0, 0.0], [500.0, 500.0]])
        adata = neighbors.compute_neighbors(adata, method="radius", radius=10.0)

        isolated = diagnostics.identify_isolated_cells(adata)

        assert isolated.tolist() == [2]

    def test_get_neighbor_edges_for_visualization(self):
        adata = create_test_adata_with_spatial(n_obs=3)
        adata.obsm["spatial"] = np.array([[0.0, 0.0], [1.0, 0.0], [500.0, 500.0]])
        neighbors.compute_neighbors(adata, method="radius", radius=10.0)

        edge_x, edge_y = diagnostics.get_neighbor_edges_for_visualization(adata)

        assert edge_x == [0.0, 1.0, None]
        assert edge_y == [0.0, 0.0, None]


class TestHotspots:
    """Tests for Getis-Ord hotspot detection."""

    def test_get_feature_values(self):
        adata, _ = create_grid_adata(side=4)

        gene = hotspots.get_feature_values(adata, "Marker")
        column = hotspots.get_feature_values(adata, "n_counts")

        assert gene.shape == (16,)
        assert np.allclose(column, gene * 10)

        with pytest.raises(ValueError, match="not found"):
            hotspots.get_feature_values(adata, "missing")

    def test_hot_corner_is_flagged(self):
        """The high-signal block is hot, the opposite corner is never hot."""
        adata, corner = create_grid_adata()
        neighbors.compute_neighbors(adata, method="delaunay")

        summary = hotspots.getis_ord_hotspots(
            adata, ["Marker", "n_counts"], alpha=0.05, permutations=199
        )

        flags = adata.obs["Marker_hotspot_flag"]
        assert list(flags.cat.categories) == ["hot", "cold", "ns"]
        assert (flags[corner] == "hot").mean() > 0.5

        coords = adata.obsm["spatial"]
        far = (coords[:, 0] > 9) & (coords[:, 1] > 9)
        assert not (flags[far] == "hot").any()

        assert summary["feature"].tolist() == ["Marker", "n_counts"]
        assert summary.loc[0, "n_hot"] > 0
        assert adata.obs["Marker_hotspot_stat"][corner].mean() > 0
        assert adata.obs["Marker_hotspot_pvalue"].between(0, 1).all()
        assert adata.uns["hotspots_params"]["alpha"] == 0.05

    def test_cold_corner_is_flagged(self):
        """A depleted block on a flat background is cold under the normal approximation."""
        adata, corner = create_grid_adata()
        coords = adata.obsm["spatial"]
        depleted = (coords[:, 0] > 10.5) & (coords[:, 1] > 10.5)
        rng = np.random.default_rng(1)
        adata.obs["layered"] = (
            np.where(corner, 15.0, np.where(depleted, 0.0, 5.0)) + rng.uniform(0, 0.5, adata.n_obs)
        )
        neighbors.compute_neighbors(adata, method="delaunay")

        summary = hotspots.getis_ord_hotspots(adata, "layered", alpha=0.01, permutations=0)

        flags = adata.obs["layered_hotspot_flag"]
        assert (flags[depleted] == "cold").any()
        assert not (flags[corner] == "cold").any()
        assert (adata.obs["layered_hotspot_stat"][flags == "cold"] < 0).all()
        assert summary.loc[0, "n_cold"] == (flags == "cold").sum()
        assert summary.loc[0, "n_cold"] > 0
        assert summary.loc[0, "min_z"] < 0
        assert adata.uns["hotspots_params"]["permutations"] == 0

    def test_corrections_are_more_conservative(self):
        adata, _ = create_grid_adata()
        neighbors.compute_neighbors(adata, method="delaunay")

        results = {}
        for correction in ["none", "fdr_bh", "bonferroni"]:
            summary = hotspots.getis_ord_hotspots(
                adata, "Marker", alpha=0.01, permutations=0, correction=correction
            )
            results[correction] = (
                adata.obs["Marker_hotspot_pvalue"].to_numpy().copy(),
                summary.loc[0, "n_hot"],
            )

        raw_p, raw_hot = results["none"]
        for correction in ["fdr_bh", "bonferroni"]:
            adjusted_p, n_hot = results[correction]
            assert np.all(adjusted_p >= raw_p - 1e-12)
            assert np.all(adjusted_p <= 1.0)
            assert 0 < n_hot <= raw_hot
        assert np.all(results["bonferroni"][0] >= results["fdr_bh"][0] - 1e-12)
        assert adata.uns["hotspots_params"]["correction"] == "bonferroni"

    def test_build_weights_keeps_islands(self):
        """Self loops are dropped and unconnected observations stay in the weights."""
        graph = sp.csr_matrix(
            np.array(
                [
                    [1.0, 0.5, 0.0, 0.0],
                    [0.5, 0.0, 0.2, 0.0],
                    [0.0, 0.2, 0.0, 0.0],
                    [0.0, 0.0, 0.0, 0.0],
                ]
            )
        )

        w = hotspots.build_weights(graph)

        assert w.n == 4
        assert w.cardinalities == {0: 1, 1: 2, 2: 1, 3: 0}
        assert w.islands == [3]
        assert set(w.weights[1]) == {1.0}

    def test_constant_feature_has_no_hotspots(self):
        adata, _ = create_grid_adata(side=6)
        adata.obs["flat"] = 1.0
        neighbors.compute_neighbors(adata, method="delaunay")

        summary = hotspots.getis_ord_hotspots(adata, "flat", permutations=0)

        assert (adata.obs["flat_hotspot_flag"] == "ns").all()
        assert summary.loc[0, "n_hot"] == 0

    def test_missing_graph(self):
        adata, _ = create_grid_adata(side=4)

        with pytest.raises(ValueError, match="Compute a spatial graph"):
            hotspots.getis_ord_hotspots(adata, "Marker")

    def test_invalid_alpha(self):
        adata, _ = create_grid_adata(side=4)
        neighbors.compute_neighbors(adata, method="delaunay")

        with pytest.raises(ValueError, match="alpha"):
            hotspots.getis_ord_hotspots(adata, "Marker", alpha=1.5)


class TestRegistration:
    """Tests for landmark registration."""

    @staticmethod
    def similarity(points, angle=0.3, scale=2.0, shift=(5.0, -3.0)):
        rot = np.array([[np.cos(angle), -np.sin(angle)], [np.sin(angle), np.cos(angle)]])
        return scale * points @ rot.T + np.asarray(shift)

    def test_similarity_recovers_transform(self):
        source = np.array([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0], [7.0, 3.0]])
        target = self.similarity(source)

        matrix = registration.estimate_transform(source, target, kind="similarity")

        assert np.allclose(registration.apply_transform(source, matrix), target)
        assert registration.registration_error(source, target, matrix) < 1e-9

    def test_rigid_has_unit_scale(self):
        source = np.array([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0]])
        target = self.similarity(source, scale=1.0)

        matrix = registration.estimate_transform(source, target, kind="rigid")

        assert np.isclose(np.linalg.det(matrix[:2, :2]), 1.0)
        assert np.allclose(registration.apply_transform(source, matrix), target)

    def test_affine(self):
        source = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
        target = source @ np.array([[2.0, 0.5], [0.0, 1.0]]).T + [1.0, 2.0]

        matrix = registration.estimate_transform(source, target, kind="affine")

        assert np.allclose(matrix[:2, :2], [[2.0, 0.5], [0.0, 1.0]])
        assert np.allclose(matrix[:2, 2], [1.0, 2.0])

    def test_affine_needs_three_landmarks(self):
        with pytest.raises(ValueError, match="at least 3"):
            registration.estimate_transform([[0, 0], [1, 1]], [[0, 0], [1, 1]], kind="affine")

    def test_collinear_affine_landmarks(self):
        points = [[0, 0], [1, 1], [2, 2]]
        with pytest.raises(ValueError, match="degenerate"):
            registration.estimate_transform(points, points, kind="affine")

    def test_load_landmarks(self, tmp_path):
        path = tmp_path / "landmarks.csv"
        pd.DataFrame(
            {"source_x": [1, 2], "source_y": [3, 4], "target_x": [5, 6], "target_y": [7, 8]}
        ).to_csv(path, index=False)

        source, target = registration.load_landmarks(path)

        assert source.tolist() == [[1.0, 3.0], [2.0, 4.0]]
        assert target.tolist() == [[5.0, 7.0], [6.0, 8.0]]

    def test_load_landmarks_missing_columns(self, tmp_path):
        path = tmp_path / "landmarks.csv"
        pd.DataFrame({"source_x": [1]}).to_csv(path, index=False)

        with pytest.raises(ValueError, match="missing columns"):
            registration.load_landmarks(path)

    def test_warp_image_translation(self):
        image = np.zeros((10, 10), dtype=np.uint8)
        image[2, 3] = 255
        matrix = np.array([[1.0, 0.0, 2.0], [0.0, 1.0, 1.0], [0.0, 0.0, 1.0]])

        warped = registration.warp_image(image, matrix, (10, 10), order=0)

        assert warped.dtype == np.uint8
        assert warped[3, 5] == 255
        assert warped.sum() == 255

    def test_register_spatial_data(self):
        adata = create_test_adata_with_spatial(n_obs=20)
        source = np.array([[0.0, 0.0], [100.0, 0.0], [0.0, 100.0]])
        target = source + [10.0, 20.0]

        registration.register_spatial_data(adata, source, target, kind="rigid")

        assert np.allclose(adata.obsm["spatial_registered"], adata.obsm["spatial"] + [10.0, 20.0])
        assert adata.uns["registration"]["n_landmarks"] == 3
        assert adata.uns["registration"]["rmse"] < 1e-9

    def test_register_image_onto_reference(self):
        """The source image is resampled into the reference image frame."""
        adata = create_test_adata_with_spatial(n_obs=5)
        image = np.zeros((8, 8, 3), dtype=np.uint8)
        image[1, 1] = 200
        adata.uns["spatial"] = {
            "src": {"images": {"lowres": image}, "scalefactors": {"tissue_lowres_scalef": 0.1}}
        }
        reference = create_test_adata_with_spatial(n_obs=5)
        reference.uns["spatial"] = {
            "ref": {
                "images": {"hires": np.zeros((12, 12, 3), dtype=np.uint8)},
                "scalefactors": {"tissue_hires_scalef": 0.1},
            }
        }
        source = np.array([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0]])
        target = source + [20.0, 30.0]

        registration.register_spatial_data(
            adata, source, target, kind="rigid", reference=reference, img_key="lowres"
        )

        warped = adata.uns["spatial"]["src"]["images"]["registered"]
        assert warped.shape == (12, 12, 3)
        # Pixel (x=1, y=1) moves by (2, 3) pixels at scale 0.1
        assert warped[4, 3, 0] == 200
        assert adata.uns["registration"]["reference_img_key"] == "hires"


class TestTransfer:
    """Tests for cell-to-spot aggregation."""

    def create_pair(self):
        spots = AnnData(X=np.zeros((2, 1)))
        spots.obs_names = ["spot_a", "spot_b"]
        spots.obsm["spatial"] = np.array([[0.0, 0.0], [100.0, 0.0]])
        spots.uns["spatial"] = {"v": {"scalefactors": {"spot_diameter_fullres": 20.0}}}

        cells = AnnData(X=np.zeros((5, 1)))
        cells.obs["label"] = pd.Categorical(["T", "B", "T", "B", "T"])
        cells.obsm["spatial_registered"] = np.array(
            [[1.0, 1.0], [-2.0, 3.0], [99.0, 0.0], [50.0, 50.0], [101.0, 2.0]]
        )
        return spots, cells

    def test_aggregate_counts(self):
        spots, cells = self.create_pair()

        result = transfer.aggregate_cells_to_spots(spots, cells, "label")

        assert list(result.columns) == ["B", "T"]
        assert result.loc["spot_a"].tolist() == [1.0, 1.0]
        assert result.loc["spot_b"].tolist() == [0.0, 2.0]
        assert spots.obs["cell_type_counts_total"].tolist() == [2, 2]

    def test_aggregate_normalized(self):
        spots, cells = self.create_pair()

        result = transfer.aggregate_cells_to_spots(spots, cells, "label", normalize=True)

        assert np.allclose(result.sum(axis=1), 1.0)

    def test_missing_radius(self):
        spots, cells = self.create_pair()
        spots.uns = {}

        with pytest.raises(ValueError, match="spot_diameter_fullres"):
            transfer.aggregate_cells_to_spots(spots, cells, "label")

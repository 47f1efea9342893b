"""Tests for cluster interpretation functionality."""

import numpy as np
import pandas as pd
import pytest
import anndata as ad

from spatial_workshop import cluster_interpretation
from spatial_workshop.cluster_interpretation import utils


@pytest.fixture
def sample_adata():
    """Create a simple test AnnData object with a planted marker for domain A."""
    np.random.seed(42)
    n_cells = 90
    n_genes = 50

    X = np.random.poisson(2, size=(n_cells, n_genes)).astype(float)
    domain = np.array(['A', 'B', 'C'] * (n_cells // 3))
    X[domain == 'A', 0] += 20
    spatial = np.random.rand(n_cells, 2) * 1000

    obs = pd.DataFrame({
        'domain': domain,
        'cluster_leiden': np.random.choice([0, 1, 2], n_cells),
        'cell_type': np.random.choice(['T cell', 'B cell', 'Macrophage'], n_cells),
        'sample_id': np.random.choice(['sample1', 'sample2'], n_cells),
        'nCount_RNA': np.random.randint(500, 5000, n_cells),
        'nFeature_RNA': np.random.randint(100, 1000, n_cells),
    }, index=[f'cell_{i}' for i in range(n_cells)])

    var = pd.DataFrame(index=[f'gene_{i}' for i in range(n_genes)])

    adata = ad.AnnData(X=X, obs=obs, var=var)
    adata.obsm['spatial'] = spatial

    return adata


class TestUtils:
    """Test utility functions."""

    def test_get_candidate_label_columns(self, sample_adata):
        """Test getting candidate label columns."""
        candidates = cluster_interpretation.get_candidate_label_columns(sample_adata)

        # Should prioritize domain and cluster columns
        assert candidates[:3] == ['domain', 'cluster_leiden', 'cell_type']
        assert set(candidates) == set(sample_adata.obs.columns)

    def test_prepare_expression_data(self, sample_adata):
        """Counts are log-normalized, other data is left as is."""
        expr = cluster_interpretation.prepare_expression_data(sample_adata, normalize=True)

        assert expr.shape == sample_adata.X.shape
        assert isinstance(expr, np.ndarray)
        assert expr.max() < np.log1p(1e4) + 1e-9

        sample_adata.X = sample_adata.X + 0.5
        untouched = cluster_interpretation.prepare_expression_data(sample_adata, normalize=True)
        assert np.allclose(untouched, sample_adata.X)

    def test_group_masks_skip_missing_labels(self, sample_adata):
        sample_adata.obs['domain'] = sample_adata.obs['domain'].astype(object)
        sample_adata.obs.iloc[0, 0] = np.nan

        in_group, out_group = utils.group_masks(sample_adata, 'domain', 'A')

        assert not in_group[0] and not out_group[0]
        assert in_group.sum() == 29
        assert out_group.sum() == 60

    def test_group_masks_missing_column(self, sample_adata):
        with pytest.raises(ValueError, match="not found"):
            utils.group_masks(sample_adata, 'missing', 'A')

    def test_get_qc_columns(self, sample_adata):
        """Test QC column detection."""
        qc_cols = cluster_interpretation.get_qc_columns(sample_adata)

        assert 'nCount_RNA' in qc_cols
        assert 'nFeature_RNA' in qc_cols
        assert 'domain' not in qc_cols


class TestSummaries:
    """Test cluster summary functions."""

    def test_compute_cluster_summary(self, sample_adata):
        """Test cluster summary computation."""
        summary = cluster_interpretation.compute_cluster_summary(
            sample_adata, label_col='domain', sample_col='sample_id'
        )

        assert 'group_id' in summary.columns
        assert 'n_cells' in summary.columns
        assert 'percent_of_total' in summary.columns
        assert summary['group_id'].tolist() == ['A', 'B', 'C']
        assert summary['n_cells'].tolist() == [30, 30, 30]

        # Check that percentages sum to ~100
        assert abs(summary['percent_of_total'].sum() - 100.0) < 1.0

    def test_compute_cluster_summary_missing_sample_col(self, sample_adata):
        with pytest.raises(ValueError):
            cluster_interpretation.compute_cluster_summary(
                sample_adata, label_col='domain', sample_col='batch'
            )

    def test_compute_group_composition(self, sample_adata):
        """Test cell type composition."""
        composition = cluster_interpretation.compute_group_composition(
            sample_adata, label_col='domain', group_id='A', celltype_col='cell_type'
        )

        assert 'cell_type' in composition.columns
        assert 'n_cells' in composition.columns
        assert 'percent' in composition.columns
        assert composition['n_cells'].sum() == 30
        assert composition['n_cells'].is_monotonic_decreasing

    def test_compare_qc_metrics(self, sample_adata):
        """Test QC metrics comparison."""
        qc_cols = ['nCount_RNA', 'nFeature_RNA', 'not_there']
        comparison = cluster_interpretation.compare_qc_metrics(
            sample_adata, label_col='domain', group_id='A', qc_columns=qc_cols
        )

        assert 'metric' in comparison.columns
        assert 'mean_in_group' in comparison.columns
        assert 'mean_other' in comparison.columns
        assert len(comparison) == 2


class TestMarkers:
    """Test marker gene computation."""

    def test_compute_marker_genes(self, sample_adata):
        """Test marker gene computation."""
        markers = cluster_interpretation.compute_marker_genes(
            sample_adata, label_col='domain', group_id='A', n_genes=10, normalize=True
        )

        assert 'gene' in markers.columns
        assert 'logFC' in markers.columns
        assert 'p_value' in markers.columns
        assert 'adj_p_value' in markers.columns
        assert 'pct_in_group' in markers.columns
        assert 'pct_out_group' in markers.columns

        # Should return at most n_genes
        assert len(markers) <= 10

        # logFC should be positive (upregulated)
        assert (markers['logFC'] > 0).all()

        # The planted marker ranks first
        assert markers.iloc[0]['gene'] == 'gene_0'
        assert markers.iloc[0]['adj_p_value'] < 1e-6

    def test_compute_marker_genes_empty_group(self, sample_adata):
        with pytest.raises(ValueError):
            cluster_interpretation.compute_marker_genes(
                sample_adata, label_col='domain', group_id='Z'
            )

    def test_compute_fold_change(self, sample_adata):
        """Test fold change computation."""
        fc = cluster_interpretation.compute_fold_change(
            sample_adata, label_col='domain', group_id='A'
        )

        assert 'gene' in fc.columns
        assert 'logFC' in fc.columns
        assert len(fc) == sample_adata.n_vars
        assert fc.iloc[0]['gene'] == 'gene_0'

    def test_compute_group_means(self, sample_adata):
        sample_adata.obs['domain'] = pd.Categorical(
            sample_adata.obs['domain'], categories=['C', 'B', 'A']
        )

        means = cluster_interpretation.compute_group_means(
            sample_adata, 'domain', features=['gene_0', 'gene_1']
        )

        assert means.index.tolist() == ['C', 'B', 'A']
        assert means.columns.tolist() == ['gene_0', 'gene_1']
        expected = sample_adata.X[(sample_adata.obs['domain'] == 'A').to_numpy(), 0].mean()
        assert np.isclose(means.loc['A', 'gene_0'], expected)

    def test_compute_group_means_unknown_feature(self, sample_adata):
        with pytest.raises(ValueError, match="gene_x"):
            cluster_interpretation.compute_group_means(sample_adata, 'domain', features=['gene_x'])

    def test_top_markers_per_group(self, sample_adata):
        table = cluster_interpretation.top_markers_per_group(sample_adata, 'domain', n_genes=3)

        assert set(table['group']) <= {'A', 'B', 'C'}
        first_a = table[(table['group'] == 'A') & (table['rank'] == 1)]
        assert first_a['gene'].tolist() == ['gene_0']
        assert table.groupby('group').size().max() <= 3

    def test_top_markers_single_group(self, sample_adata):
        sample_adata.obs['one'] = 'x'

        table = cluster_interpretation.top_markers_per_group(sample_adata, 'one')

        assert table.empty
        assert 'gene' in table.columns

"""
Example Visium workflow, step by step.

This script shows how to:
1. Import a Space Ranger output directory
2. Apply QC filters
3. Normalize, select features, PCA and UMAP
4. Cluster spots (SNN + Leiden)
5. Deconvolve spots against a single-cell reference
6. Cluster cell type proportions into niches
7. Find Getis-Ord hotspots
8. Plot and export results

`spatial_workshop.workflow.run_visium_workflow` runs the same steps in one call.
"""

import logging
from pathlib import Path

from spatial_workshop import (
    cluster_interpretation,
    deconvolution,
    export,
    io,
    modeling,
    niche,
    qc,
    spatial,
    viz,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    """Run the example workflow."""
    visium_dir = "data/Visium_Anterior"  # Replace with your Space Ranger 'outs'
    reference_file = "data/reference.rds"  # Seurat object or spacexr Reference
    output_dir = Path("results/visium")
    params = modeling.get_default_parameters("visium")

    # ==================== 1. Import ====================
    logger.info("Step 1: Importing Visium data")
    adata = io.read_visium(visium_dir, sample_name="anterior")
    is_valid, messages = io.validate_schema(adata, strict=True)
    for msg in messages:
        logger.info(msg)
    if not is_valid:
        return

    # ==================== 2. QC Filtering ====================
    logger.info("Step 2: Applying QC filters")
    qc.calculate_qc_metrics(adata)
    filter_criteria = {"n_counts": (params.min_counts, None), "n_features": (params.min_features, None)}
    mask = qc.create_filter_mask(adata, filter_criteria)
    stats = qc.compute_filter_stats(adata, mask)
    logger.info(f"QC filtering: {stats['kept_cells']} spots kept ({100 * stats['kept_fraction']:.1f}%)")

    n_pre = adata.n_obs
    adata = adata[mask, :].copy()
    adata = qc.filter_features(adata, min_cells=params.min_cells)

    # ==================== 3. Preprocess ====================
    logger.info("Step 3: Normalization, features, PCA, UMAP")
    modeling.preprocess(adata, params)

    # ==================== 4. Clustering ====================
    logger.info("Step 4: SNN graph and Leiden clustering")
    modeling.build_snn_graph(adata, n_dims=params.n_comps, n_neighbors=params.n_neighbors)
    modeling.cluster_leiden(adata, resolution=params.resolution)
    markers = cluster_interpretation.top_markers_per_group(adata, "clusters", n_genes=5)

    # ==================== 5. Deconvolution ====================
    logger.info("Step 5: Deconvolution")
    reference = io.load_reference(reference_file, cell_type_col="cell_type", output_dir=output_dir / "reference")
    signatures = deconvolution.build_reference_signatures(reference, "cell_type", layer="counts")
    deconvolution.deconvolve_spots(adata, signatures, n_jobs=params.deconvolution_n_jobs)
    deconvolution.dominant_cell_type(adata)

    # ==================== 6. Niches ====================
    logger.info("Step 6: Niche clustering of CLR-normalized proportions")
    niche.run_niche_clustering(adata, proportions_key="deconvolution", n_niches=params.n_niches)

    # ==================== 7. Hotspots ====================
    logger.info("Step 7: Getis-Ord hotspots on a Delaunay graph")
    spatial.compute_neighbors(adata, method="delaunay", key_added="hotspot")
    spatial.getis_ord_hotspots(
        adata,
        features=["n_counts"],
        connectivities_key="hotspot_connectivities",
        alpha=params.hotspot_alpha,
    )

    # ==================== 8. Plots and Export ====================
    logger.info("Step 8: Plotting and exporting")
    figures = output_dir / "figures"
    viz.save_figure(viz.plot_spatial_scatter(adata, "clusters", img_key="hires"), figures / "clusters.html")
    viz.save_figure(viz.plot_marker_heatmap(adata, "clusters", features=list(markers["gene"].unique())),
                    figures / "markers.html")
    viz.save_figure(viz.plot_niche_heatmap(adata), figures / "niches.html")
    viz.save_figure(viz.plot_hotspots(adata, "n_counts", img_key="hires"), figures / "hotspots.html")
    viz.save_figure(viz.plot_composition_bars(adata, "niche", proportions_key="deconvolution"),
                    figures / "niche_composition.html")

    exported = export.export_all(adata, output_dir / "exports")
    manifest = export.create_manifest(
        adata,
        input_files=[visium_dir],
        parameters=params.to_dict(),
        qc_filters=filter_criteria,
        n_cells_pre_qc=n_pre,
    )
    export.save_manifest(manifest, output_dir / "run_manifest.json")
    io.save_h5ad(adata, output_dir / "anterior_visium.h5ad")

    logger.info("Workflow complete!")
    for name, path in exported.items():
        logger.info(f"  - {name}: {path}")


if __name__ == "__main__":
    main()

"""
Example Xenium workflow.

This script shows how to:
1. Run the Xenium workflow with parameters from a TOML file
2. Inspect clusters, niches and hotspots
3. Register the cells onto a Visium section with landmarks and count
   cell types under each spot
"""

import logging
from pathlib import Path

from spatial_workshop import io, modeling, niche, spatial, viz
from spatial_workshop.workflow import run_xenium_workflow

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    """Run the example workflow."""
    xenium_dir = "data/Xenium_BreastCancer"  # Replace with your Xenium bundle
    visium_file = "results/visium/breast_visium.h5ad"  # Processed Visium section
    landmarks_file = "data/xenium_to_visium_landmarks.csv"
    output_dir = Path("results/xenium")

    # ==================== 1. Parameters and Workflow ====================
    params_file = output_dir / "params.toml"
    if params_file.exists():
        params = modeling.load_parameters(params_file)
    else:
        params = modeling.get_default_parameters("xenium")
        modeling.save_parameters(params, params_file)

    adata = run_xenium_workflow(xenium_dir, params, output_dir=output_dir, import_molecules=True)

    # ==================== 2. Inspect ====================
    logger.info(f"{adata.obs['clusters'].nunique()} clusters, {adata.obs['niche'].nunique()} niches")
    enrichment = niche.compute_niche_enrichment(adata, niche_col="niche", cell_type_col="clusters")
    logger.info(f"Niche enrichment:\n{enrichment.round(2)}")

    figures = output_dir / "figures"
    viz.save_figure(viz.plot_spatial_scatter(adata, "niche", img_key="morphology"), figures / "niches.html")
    viz.save_figure(viz.plot_niche_heatmap(adata), figures / "niche_heatmap.html")
    for feature in params.hotspot_features:
        viz.save_figure(viz.plot_hotspots(adata, feature), figures / f"hotspots_{feature}.html")

    # ==================== 3. Registration onto Visium ====================
    visium = io.load_h5ad(visium_file)
    source_points, target_points = spatial.load_landmarks(landmarks_file)
    spatial.register_spatial_data(adata, source_points, target_points, kind="similarity")
    logger.info(f"Registration RMSE: {adata.uns['registration']['rmse']:.2f}")

    spatial.aggregate_cells_to_spots(visium, adata, label_col="clusters")
    viz.save_figure(
        viz.plot_composition_bars(visium, "clusters", proportions_key="cell_type_counts"),
        figures / "xenium_clusters_per_visium_cluster.html",
    )
    io.save_h5ad(visium, output_dir / "visium_with_xenium_counts.h5ad")


if __name__ == "__main__":
    main()

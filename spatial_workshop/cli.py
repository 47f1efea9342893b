"""Command-line interface for spatial-workshop."""

import json
import logging
import sys
from pathlib import Path

import click

from . import (
    __version__,
    cluster_interpretation,
    deconvolution,
    export,
    io,
    modeling,
    niche,
    qc,
    spatial,
    workflow,
)
from .modeling.parameters import get_default_parameters, load_parameters, save_parameters


def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


class WorkshopGroup(click.Group):
    """Command group reporting failures as ``ERROR: ...`` with exit status 1."""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except (click.ClickException, click.exceptions.Exit, click.Abort):
            raise
        except Exception as e:
            logging.getLogger(__name__).debug("Command failed", exc_info=True)
            click.echo(f"ERROR: {e}", err=True)
            ctx.exit(1)


def _default_output(input_file: str, suffix: str) -> str:
    path = Path(input_file)
    return str(path.with_name(f"{path.stem}_{suffix}.h5ad"))


def _parameters(config, platform):
    if config:
        return load_parameters(config)
    return get_default_parameters(platform)


@click.group(cls=WorkshopGroup)
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def main(verbose):
    """spatial-workshop: Visium and Xenium spatial transcriptomics workflows."""
    setup_logging(verbose)


@main.command("import-visium")
@click.argument("visium_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--output", "-o", type=click.Path(), required=True, help="Output H5AD file")
@click.option("--sample-name", default=None, help="Sample id [default: directory name]")
@click.option("--no-images", is_flag=True, help="Do not load tissue images")
@click.option("--all-spots", is_flag=True, help="Keep spots outside the tissue")
def import_visium(visium_dir, output, sample_name, no_images, all_spots):
    """
    Import a Space Ranger output directory.

    VISIUM_DIR: Space Ranger 'outs' directory
    """
    adata = io.read_visium(
        visium_dir,
        sample_name=sample_name,
        load_images=not no_images,
        in_tissue_only=not all_spots,
    )
    io.save_h5ad(adata, output)
    click.echo(f"Imported {adata.n_obs} spots x {adata.n_vars} genes: {output}")
    click.echo(f"Images: {', '.join(io.list_images(adata)) or 'none'}")


@main.command("import-xenium")
@click.argument("xenium_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--output", "-o", type=click.Path(), required=True, help="Output H5AD file")
@click.option("--sample-name", default=None, help="Sample id [default: directory name]")
@click.option("--resolution-level", type=int, default=7, help="Morphology image pyramid level")
@click.option("--no-image", is_flag=True, help="Do not load the morphology image")
@click.option("--molecules", is_flag=True, help="Import the transcript table")
@click.option("--min-qv", type=float, default=20.0, help="Transcript quality threshold")
def import_xenium(xenium_dir, output, sample_name, resolution_level, no_image, molecules, min_qv):
    """
    Import a Xenium output bundle.

    XENIUM_DIR: Xenium output directory
    """
    adata = io.read_xenium(
        xenium_dir,
        sample_name=sample_name,
        resolution_level=resolution_level,
        load_image=not no_image,
        import_molecules=molecules,
        min_qv=min_qv,
    )
    io.save_h5ad(adata, output)
    click.echo(f"Imported {adata.n_obs} cells x {adata.n_vars} genes: {output}")
    if molecules:
        click.echo(f"Molecules: {len(adata.uns['molecules'])}")


@main.command("convert-reference")
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--outdir", "-o", type=click.Path(), required=True, help="Output directory")
@click.option("--assay", default="RNA", help="Seurat assay name [default: RNA]")
@click.option("--layer", default="counts", help="Seurat layer to export [default: counts]")
@click.option("--overwrite", is_flag=True, help="Overwrite existing files")
@click.option("--no-cache", is_flag=True, help="Disable caching of conversion")
def convert_reference(input_file, outdir, assay, layer, overwrite, no_cache):
    """
    Convert an RDS reference (Seurat object or spacexr Reference) to H5AD.

    INPUT_FILE: Path to .rds file
    """
    r_available, r_msg = io.check_r_available()
    if not r_available:
        click.echo(f"ERROR: {r_msg}", err=True)
        click.echo("\nPlease install R (>=4.2) and required packages:")
        click.echo("  R -e \"install.packages(c('Seurat', 'Matrix'))\"")
        sys.exit(1)
    click.echo(f"✓ {r_msg}")

    output_path, info = io.convert_rds_to_h5ad(
        input_file,
        outdir,
        assay=assay,
        layer=layer,
        overwrite=overwrite,
        use_cache=not no_cache,
    )

    click.echo("\n=== Conversion Summary ===")
    click.echo(f"Output file: {output_path}")
    click.echo(f"Cells: {info['n_cells']}")
    click.echo(f"Features: {info['n_features']}")
    click.echo(f"Cached: {info['cached']}")

    manifest_path = Path(outdir) / "conversion_manifest.json"
    with open(manifest_path, "w") as f:
        json.dump(info, f, indent=2, default=str)
    click.echo(f"\nManifest saved to: {manifest_path}")


@main.command()
@click.argument("input_file", type=click.Path(exists=True))
@click.option("--strict", is_flag=True, help="Enable strict validation")
def validate(input_file, strict):
    """
    Validate H5AD file schema and required fields.

    INPUT_FILE: Path to H5AD file
    """
    adata = io.load_h5ad(input_file)
    is_valid, messages = io.validate_schema(adata, strict=strict)
    mappings = io.detect_mappings(adata)

    click.echo("\n=== Validation Results ===")
    click.echo(f"Status: {'PASSED' if is_valid else 'FAILED'}")
    click.echo("\nMessages:")
    for msg in messages:
        click.echo(f"  {msg}")

    click.echo("\n=== Detected Mappings ===")
    for key, value in mappings.items():
        click.echo(f"  {key}: {value}")

    sys.exit(0 if is_valid else 1)


@main.command()
@click.argument("input_file", type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Path(), help="Output H5AD file")
@click.option("--platform", type=click.Choice(["visium", "xenium"]), default="visium",
              help="Parameter preset")
@click.option("--config", type=click.Path(exists=True), help="TOML parameter file")
@click.option("--no-qc", is_flag=True, help="Skip QC filtering")
def preprocess(input_file, output, platform, config, no_qc):
    """
    QC filtering, normalization, feature selection, PCA and UMAP.

    INPUT_FILE: Path to H5AD file with raw counts
    """
    params = _parameters(config, platform)
    adata = io.load_h5ad(input_file)
    n_pre = adata.n_obs

    qc.calculate_qc_metrics(adata)
    if not no_qc:
        adata = qc.apply_qc_filters(
            adata,
            filter_criteria={
                "n_counts": (params.min_counts, None),
                "n_features": (params.min_features, None),
            },
        )
        adata = qc.filter_features(adata, min_cells=params.min_cells)

    modeling.preprocess(adata, params)

    output_file = output or _default_output(input_file, "preprocessed")
    io.save_h5ad(adata, output_file)
    click.echo(f"Preprocessing complete: {output_file}")
    click.echo(f"Kept {adata.n_obs}/{n_pre} observations, {adata.n_vars} features")


@main.command()
@click.argument("input_file", type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Path(), help="Output H5AD file")
@click.option("--method", type=click.Choice(["leiden", "kmeans"]), default="leiden")
@click.option("--resolution", type=float, default=0.5, help="Leiden resolution")
@click.option("--n-neighbors", type=int, default=10, help="SNN neighborhood size")
@click.option("--prune", type=float, default=1 / 15, help="SNN Jaccard pruning threshold")
@click.option("--n-dims", type=int, default=30, help="PCA dimensions used")
@click.option("--n-clusters", type=int, default=8, help="Number of k-means clusters")
@click.option("--random-state", type=int, default=42, help="Random seed")
def cluster(input_file, output, method, resolution, n_neighbors, prune, n_dims, n_clusters, random_state):
    """
    Cluster observations (SNN + Leiden, or k-means on PCA).

    INPUT_FILE: Path to preprocessed H5AD file
    """
    adata = io.load_h5ad(input_file)

    if method == "leiden":
        modeling.build_snn_graph(adata, n_dims=n_dims, n_neighbors=n_neighbors, prune=prune)
        modeling.cluster_leiden(adata, resolution=resolution, random_state=random_state)
        key = "clusters"
    else:
        modeling.cluster_kmeans(adata, n_clusters=n_clusters, use_rep="X_pca", random_state=random_state)
        key = "kmeans"

    output_file = output or _default_output(input_file, "clustered")
    io.save_h5ad(adata, output_file)
    click.echo(f"Clustering complete: {output_file}")
    click.echo(f"Assigned {adata.obs[key].nunique()} clusters to obs['{key}']")


@main.command()
@click.argument("input_file", type=click.Path(exists=True))
@click.option("--reference", "-r", type=click.Path(exists=True), required=True,
              help="Reference .h5ad or .rds")
@click.option("--output", "-o", type=click.Path(), help="Output H5AD file")
@click.option("--cell-type-col", default="cell_type", help="Reference cell type column")
@click.option("--n-jobs", type=int, default=1, help="Parallel workers")
@click.option("--min-cells", type=int, default=10, help="Minimum reference cells per type")
def deconvolve(input_file, reference, output, cell_type_col, n_jobs, min_cells):
    """
    Estimate cell type proportions of spots from a single-cell reference.

    INPUT_FILE: Path to Visium H5AD file with raw counts
    """
    adata = io.load_h5ad(input_file)
    ref = io.load_reference(reference, cell_type_col=cell_type_col)

    signatures = deconvolution.build_reference_signatures(
        ref,
        cell_type_col,
        layer="counts" if "counts" in ref.layers else None,
        min_cells=min_cells,
    )
    proportions = deconvolution.deconvolve_spots(adata, signatures, n_jobs=n_jobs)
    deconvolution.dominant_cell_type(adata)

    output_file = output or _default_output(input_file, "deconvolved")
    io.save_h5ad(adata, output_file)
    click.echo(f"Deconvolution complete: {output_file}")
    click.echo(f"Cell types: {', '.join(map(str, proportions.columns))}")


@main.command()
@click.argument("input_file", type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Path(), help="Output H5AD file")
@click.option("--label-col", default=None, help="Cell label column (cells)")
@click.option("--proportions-key", default=None, help="obsm proportions key (spots)")
@click.option("--n-niches", type=int, default=6, help="Number of niches")
@click.option("--method", type=click.Choice(["kmeans", "hierarchical"]), default="kmeans")
@click.option("--normalization", type=click.Choice(["clr", "none"]), default="clr")
@click.option("--neighbors-method", type=click.Choice(["radius", "knn", "delaunay"]), default="radius",
              help="Spatial graph for label neighborhoods")
@click.option("--radius", type=float, default=15.0, help="Neighbor radius")
@click.option("--k", "neighbors_k", type=int, default=6, help="Number of neighbors (KNN)")
@click.option("--random-state", type=int, default=42, help="Random seed")
def niches(input_file, output, label_col, proportions_key, n_niches, method, normalization,
           neighbors_method, radius, neighbors_k, random_state):
    """
    Cluster neighborhood compositions into niches.

    INPUT_FILE: Path to H5AD file with labels or proportions
    """
    adata = io.load_h5ad(input_file)

    if label_col is not None:
        spatial.compute_neighbors(
            adata,
            method=neighbors_method,
            radius=radius if neighbors_method == "radius" else None,
            n_neighbors=neighbors_k if neighbors_method == "knn" else None,
        )

    niche.run_niche_clustering(
        adata,
        label_col=label_col,
        proportions_key=proportions_key,
        n_niches=n_niches,
        normalization=normalization,
        method=method,
        random_state=random_state,
    )

    output_file = output or _default_output(input_file, "niches")
    io.save_h5ad(adata, output_file)
    click.echo(f"Niche clustering complete: {output_file}")
    for name, count in adata.obs["niche"].value_counts().sort_index().items():
        click.echo(f"  niche {name}: {count}")


@main.command()
@click.argument("input_file", type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Path(), help="Output H5AD file")
@click.option("--feature", "-f", "features", multiple=True, required=True,
              help="Gene or numeric obs column (repeatable)")
@click.option("--graph", type=click.Choice(["radius", "knn", "delaunay"]), default="delaunay")
@click.option("--radius", type=float, default=None, help="Neighbor radius")
@click.option("--k", "neighbors_k", type=int, default=6, help="Number of neighbors (KNN)")
@click.option("--alpha", type=float, default=0.01, help="Significance level")
@click.option("--permutations", type=int, default=999, help="Conditional permutations")
@click.option("--correction", type=click.Choice(["none", "fdr_bh", "bonferroni"]), default="none")
@click.option("--layer", default=None, help="Layer for gene values")
@click.option("--random-state", type=int, default=42, help="Random seed")
def hotspots(input_file, output, features, graph, radius, neighbors_k, alpha, permutations,
             correction, layer, random_state):
    """
    Getis-Ord Gi* hot and cold spots of genes or obs metrics.

    INPUT_FILE: Path to H5AD file
    """
    adata = io.load_h5ad(input_file)
    spatial.compute_neighbors(
        adata,
        method=graph,
        radius=radius,
        n_neighbors=neighbors_k if graph == "knn" else None,
        key_added="hotspot",
    )
    summary = spatial.getis_ord_hotspots(
        adata,
        features=list(features),
        connectivities_key="hotspot_connectivities",
        alpha=alpha,
        permutations=permutations,
        layer=layer,
        correction=correction,
        seed=random_state,
    )

    output_file = output or _default_output(input_file, "hotspots")
    io.save_h5ad(adata, output_file)
    click.echo(f"Hotspot detection complete: {output_file}")
    for row in summary.itertuples():
        click.echo(f"  {row.feature}: {row.n_hot} hot, {row.n_cold} cold")


@main.command()
@click.argument("input_file", type=click.Path(exists=True))
@click.option("--landmarks", "-l", type=click.Path(exists=True), required=True,
              help="CSV with source_x, source_y, target_x, target_y")
@click.option("--output", "-o", type=click.Path(), help="Output H5AD file")
@click.option("--kind", type=click.Choice(["affine", "similarity", "rigid"]), default="affine")
@click.option("--reference", type=click.Path(exists=True), default=None,
              help="Reference H5AD whose image frame the image is warped into")
@click.option("--img-key", default=None, help="Image of INPUT_FILE to warp")
@click.option("--reference-img-key", default=None, help="Reference image defining the frame")
def register(input_file, landmarks, output, kind, reference, img_key, reference_img_key):
    """
    Register coordinates (and optionally an image) onto a reference.

    INPUT_FILE: Path to H5AD file to register
    """
    adata = io.load_h5ad(input_file)
    source_points, target_points = spatial.load_landmarks(landmarks)
    ref = io.load_h5ad(reference) if reference else None

    spatial.register_spatial_data(
        adata,
        source_points,
        target_points,
        kind=kind,
        reference=ref,
        img_key=img_key,
        reference_img_key=reference_img_key,
    )

    output_file = output or _default_output(input_file, "registered")
    io.save_h5ad(adata, output_file)
    info = adata.uns["registration"]
    click.echo(f"Registration complete: {output_file}")
    click.echo(f"  {info['kind']} transform from {info['n_landmarks']} landmarks, RMSE {info['rmse']:.3f}")


@main.command()
@click.argument("input_file", type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Path(), help="Output JSON file")
@click.option("--label-col", default="clusters", help="Group column for markers")
@click.option("--n-markers", type=int, default=5, help="Marker genes per group")
def summarize(input_file, output, label_col, n_markers):
    """
    Generate QC, spatial graph, cluster and marker summaries.

    INPUT_FILE: Path to H5AD file
    """
    adata = io.load_h5ad(input_file)

    summary = {
        "qc": qc.compute_qc_summary(adata),
        "spatial": (
            spatial.graph_diagnostics(adata) if "spatial_connectivities" in adata.obsp else None
        ),
        "outputs": export.summarize_outputs(adata),
    }

    label_col = label_col or "clusters"
    if label_col in adata.obs.columns:
        groups = cluster_interpretation.compute_cluster_summary(adata, label_col)
        markers = cluster_interpretation.top_markers_per_group(adata, label_col, n_genes=n_markers)
        summary["groups"] = {
            "label_col": label_col,
            "sizes": groups.to_dict(orient="records"),
            "markers": {
                str(group): table["gene"].tolist()
                for group, table in markers.groupby("group", sort=False)
            },
        }

    output_file = output or str(Path(input_file).with_suffix("")) + "_summary.json"
    with open(output_file, "w") as f:
        json.dump(summary, f, indent=2, default=str)

    click.echo(f"Summary: {output_file}")


@main.command("export")
@click.argument("input_file", type=click.Path(exists=True))
@click.option("--output-dir", "-o", type=click.Path(), required=True, help="Output directory")
@click.option("--embedding-format", type=click.Choice(["parquet", "csv"]), default="parquet")
def export_cmd(input_file, output_dir, embedding_format):
    """
    Export labels, embeddings, proportions, hotspots and a run manifest.

    INPUT_FILE: Path to analyzed H5AD file
    """
    adata = io.load_h5ad(input_file)
    exported = export.export_all(adata, output_dir=output_dir, embedding_format=embedding_format)

    manifest = export.create_manifest(
        adata,
        input_files=[input_file],
        parameters=dict(adata.uns.get("workflow_params", {})),
    )
    if "spatial_connectivities" in adata.obsp:
        manifest = export.add_spatial_summary_to_manifest(manifest, spatial.graph_diagnostics(adata))
    manifest_file = export.save_manifest(manifest, Path(output_dir) / "run_manifest.json")

    click.echo("\n=== Exported Files ===")
    for key, path in exported.items():
        click.echo(f"  {key}: {path}")
    click.echo(f"  manifest: {manifest_file}")


@main.command()
@click.argument("platform", type=click.Choice(["visium", "xenium"]))
@click.argument("data_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--output-dir", "-o", type=click.Path(), required=True, help="Output directory")
@click.option("--config", type=click.Path(exists=True), help="TOML parameter file")
@click.option("--reference", "-r", type=click.Path(exists=True), default=None,
              help="Reference .h5ad or .rds for deconvolution (Visium)")
@click.option("--cell-type-col", default="cell_type", help="Reference cell type column")
@click.option("--sample-name", default=None, help="Sample id [default: directory name]")
@click.option("--molecules", is_flag=True, help="Import the transcript table (Xenium)")
def run(platform, data_dir, output_dir, config, reference, cell_type_col, sample_name, molecules):
    """
    Run the full workflow on a Visium or Xenium directory.

    PLATFORM: visium or xenium
    DATA_DIR: vendor output directory
    """
    params = _parameters(config, platform)
    if params.platform != platform:
        raise click.BadParameter(
            f"config is for '{params.platform}', not '{platform}'", param_hint="--config"
        )

    if platform == "visium":
        adata = workflow.run_visium_workflow(
            data_dir,
            params,
            reference=reference,
            cell_type_col=cell_type_col,
            output_dir=output_dir,
            sample_name=sample_name,
        )
    else:
        if reference:
            click.echo("Ignoring --reference for Xenium", err=True)
        adata = workflow.run_xenium_workflow(
            data_dir, params, output_dir=output_dir, sample_name=sample_name, import_molecules=molecules
        )

    save_parameters(params, Path(output_dir) / "params.toml")
    click.echo(f"Workflow complete: {adata.n_obs} observations, {adata.obs['clusters'].nunique()} clusters")
    if "niche" in adata.obs.columns:
        click.echo(f"Niches: {adata.obs['niche'].nunique()}")
    click.echo(f"Outputs: {output_dir}")


if __name__ == "__main__":
    main()

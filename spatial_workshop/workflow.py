"""End-to-end Visium and Xenium analysis workflows."""

import logging
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import anndata

from . import deconvolution, export, io, modeling, niche, qc, spatial
from .modeling.parameters import WorkflowParameters, get_default_parameters, validate_parameters
from .utils.serialize import clean_uns

logger = logging.getLogger(__name__)

HOTSPOT_GRAPH_KEY = "hotspot"


def _check_parameters(params: Optional[WorkflowParameters], platform: str) -> WorkflowParameters:
    params = params or get_default_parameters(platform)
    if params.platform != platform:
        raise ValueError(f"Parameters are for '{params.platform}', not '{platform}'")
    is_valid, errors = validate_parameters(params)
    if not is_valid:
        raise ValueError("Invalid workflow parameters: " + "; ".join(errors))
    return params


def _qc_criteria(params: WorkflowParameters) -> Dict[str, Tuple]:
    return {"n_counts": (params.min_counts, None), "n_features": (params.min_features, None)}


def _build_graph(
    adata: anndata.AnnData, method: str, params: WorkflowParameters, key_added: str
) -> anndata.AnnData:
    return spatial.compute_neighbors(
        adata,
        method=method,
        radius=params.neighbors_radius if method == "radius" else None,
        n_neighbors=params.neighbors_k if method == "knn" else None,
        key_added=key_added,
    )


def _quality_control(adata: anndata.AnnData, params: WorkflowParameters) -> Tuple[anndata.AnnData, int]:
    logger.info("Step: quality control")
    n_pre = adata.n_obs
    qc.calculate_qc_metrics(adata)
    adata = qc.apply_qc_filters(adata, filter_criteria=_qc_criteria(params))
    adata = qc.filter_features(adata, min_cells=params.min_cells)
    if adata.n_obs == 0:
        raise ValueError("No observations left after QC filtering")
    # Recompute on the filtered object
    qc.calculate_qc_metrics(adata)
    return adata, n_pre


def _expression_clusters(adata: anndata.AnnData, params: WorkflowParameters) -> anndata.AnnData:
    logger.info("Step: normalization, features, PCA and UMAP")
    modeling.preprocess(adata, params)

    logger.info("Step: SNN graph and Leiden clustering")
    modeling.build_snn_graph(
        adata,
        n_dims=params.n_comps,
        n_neighbors=params.n_neighbors,
        prune=params.snn_prune,
    )
    modeling.cluster_leiden(adata, resolution=params.resolution, random_state=params.random_state)
    return adata


def _hotspots(adata: anndata.AnnData, params: WorkflowParameters) -> anndata.AnnData:
    logger.info(f"Step: {params.hotspot_graph} graph and Getis-Ord hotspots")
    _build_graph(adata, params.hotspot_graph, params, key_added=HOTSPOT_GRAPH_KEY)
    spatial.getis_ord_hotspots(
        adata,
        features=params.hotspot_features,
        connectivities_key=f"{HOTSPOT_GRAPH_KEY}_connectivities",
        alpha=params.hotspot_alpha,
        permutations=params.permutations,
        correction=params.hotspot_correction,
        seed=params.random_state,
    )
    return adata


def _write_outputs(
    adata: anndata.AnnData,
    output_dir: Union[str, Path],
    input_path: Union[str, Path],
    params: WorkflowParameters,
    n_pre: int,
) -> Path:
    logger.info(f"Step: writing outputs to {output_dir}")
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    sample = io.get_library_id(adata) or params.platform
    h5ad_path = io.save_h5ad(adata, output_dir / f"{sample}_{params.platform}.h5ad")
    export.export_all(adata, output_dir / "exports")

    manifest = export.create_manifest(
        adata,
        input_files=[input_path, h5ad_path],
        parameters=params.to_dict(),
        qc_filters=_qc_criteria(params),
        n_cells_pre_qc=n_pre,
    )
    export.add_qc_summary_to_manifest(manifest, qc.compute_qc_summary(adata))
    if "spatial_connectivities" in adata.obsp:
        export.add_spatial_summary_to_manifest(manifest, spatial.graph_diagnostics(adata))
    export.save_manifest(manifest, output_dir / "run_manifest.json")
    return h5ad_path


def run_visium_workflow(
    visium_dir: Union[str, Path],
    params: Optional[WorkflowParameters] = None,
    reference: Optional[Union[str, Path, anndata.AnnData]] = None,
    cell_type_col: str = "cell_type",
    output_dir: Optional[Union[str, Path]] = None,
    sample_name: Optional[str] = None,
) -> anndata.AnnData:
    """
    Analyze one Visium sample.

    Steps: import, QC, normalization, feature selection, PCA, UMAP, SNN
    graph, Leiden clustering, then (with a reference) deconvolution and
    niche clustering of the CLR-normalized proportions, then a spatial
    graph and Getis-Ord hotspots of ``params.hotspot_features``.

    Parameters
    ----------
    visium_dir : str or Path
        Space Ranger output directory.
    params : WorkflowParameters, optional
        Defaults to the Visium preset.
    reference : str, Path or anndata.AnnData, optional
        Single-cell reference (.h5ad or .rds path, or an object) for
        deconvolution.
    cell_type_col : str
        Reference obs column with cell type labels.
    output_dir : str or Path, optional
        When given, the h5ad, tabular exports and a run manifest are written.
    sample_name : str, optional
        Sample id; defaults to the directory name.

    Returns
    -------
    anndata.AnnData
        Analyzed spots.
    """
    params = _check_parameters(params, "visium")

    logger.info("Step: import Visium")
    adata = io.read_visium(str(visium_dir), sample_name=sample_name)
    adata, n_pre = _quality_control(adata, params)
    adata = _expression_clusters(adata, params)

    logger.info(f"Step: spatial {params.neighbors_method} graph")
    _build_graph(adata, params.neighbors_method, params, key_added="spatial")

    if reference is not None:
        logger.info("Step: deconvolution")
        if not isinstance(reference, anndata.AnnData):
            cache_dir = Path(output_dir) / "reference" if output_dir is not None else None
            reference = io.load_reference(reference, cell_type_col=cell_type_col, output_dir=cache_dir)
        signatures = deconvolution.build_reference_signatures(
            reference,
            cell_type_col,
            layer="counts" if "counts" in reference.layers else None,
            min_cells=params.deconvolution_min_cells,
        )
        deconvolution.deconvolve_spots(adata, signatures, n_jobs=params.deconvolution_n_jobs)
        deconvolution.dominant_cell_type(adata)

        logger.info("Step: niche clustering of cell type proportions")
        niche.run_niche_clustering(
            adata,
            proportions_key="deconvolution",
            n_niches=params.n_niches,
            method=params.niche_method,
            random_state=params.random_state,
        )
    else:
        logger.info("No reference given; skipping deconvolution and niches")

    _hotspots(adata, params)

    adata.uns["workflow_params"] = clean_uns(params.to_dict())
    if output_dir is not None:
        _write_outputs(adata, output_dir, visium_dir, params, n_pre)

    logger.info("Visium workflow complete")
    return adata


def run_xenium_workflow(
    xenium_dir: Union[str, Path],
    params: Optional[WorkflowParameters] = None,
    output_dir: Optional[Union[str, Path]] = None,
    sample_name: Optional[str] = None,
    import_molecules: bool = False,
) -> anndata.AnnData:
    """
    Analyze one Xenium sample.

    Steps: import (morphology image at ``params.resolution_level``,
    optionally molecules), QC, normalization, PCA, UMAP, SNN graph, Leiden
    clustering, a spatial neighbor graph, niche clustering of the
    neighborhood cluster composition, then Getis-Ord hotspots on the
    ``params.hotspot_graph`` graph.

    Parameters
    ----------
    xenium_dir : str or Path
        Xenium output bundle.
    params : WorkflowParameters, optional
        Defaults to the Xenium preset.
    output_dir : str or Path, optional
        When given, the h5ad, tabular exports and a run manifest are written.
    sample_name : str, optional
        Sample id; defaults to the directory name.
    import_molecules : bool
        Attach the transcript table as uns['molecules'].

    Returns
    -------
    anndata.AnnData
        Analyzed cells.
    """
    params = _check_parameters(params, "xenium")

    logger.info("Step: import Xenium")
    adata = io.read_xenium(
        str(xenium_dir),
        sample_name=sample_name,
        resolution_level=params.resolution_level if params.resolution_level is not None else 7,
        import_molecules=import_molecules,
    )
    adata, n_pre = _quality_control(adata, params)
    adata = _expression_clusters(adata, params)

    logger.info(f"Step: spatial {params.neighbors_method} graph")
    _build_graph(adata, params.neighbors_method, params, key_added="spatial")

    logger.info("Step: niche clustering of neighborhood cluster composition")
    niche.run_niche_clustering(
        adata,
        label_col="clusters",
        n_niches=params.n_niches,
        method=params.niche_method,
        random_state=params.random_state,
    )

    _hotspots(adata, params)

    adata.uns["workflow_params"] = clean_uns(params.to_dict())
    if output_dir is not None:
        _write_outputs(adata, output_dir, xenium_dir, params, n_pre)

    logger.info("Xenium workflow complete")
    return adata

"""Parameter management for workshop workflow runs."""

import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import List, Literal, Optional, Union

import toml

logger = logging.getLogger(__name__)


@dataclass
class WorkflowParameters:
    """Parameters for a Visium or Xenium workflow run."""

    # Data platform
    platform: Literal["visium", "xenium"] = "visium"

    # QC
    min_counts: int = 500
    min_features: int = 200
    min_cells: int = 3

    # Preprocessing
    normalization: Literal["log", "clr"] = "log"
    target_sum: Optional[float] = 1e4
    n_top_genes: Optional[int] = 3000
    n_comps: int = 30

    # Clustering
    n_neighbors: int = 10
    snn_prune: float = 1 / 15
    umap_neighbors: int = 15
    resolution: float = 0.5

    # Niches
    niche_method: Literal["kmeans", "hierarchical"] = "kmeans"
    n_niches: int = 5

    # Spatial neighbors
    neighbors_method: Literal["radius", "knn", "delaunay"] = "knn"
    neighbors_radius: Optional[float] = None  # in coordinate units
    neighbors_k: Optional[int] = 6

    # Hotspots
    hotspot_graph: Literal["radius", "knn", "delaunay"] = "delaunay"
    hotspot_features: List[str] = field(default_factory=lambda: ["n_counts"])
    hotspot_alpha: float = 0.01
    hotspot_correction: Literal["none", "fdr_bh", "bonferroni"] = "none"
    permutations: int = 999

    # Deconvolution
    deconvolution_n_jobs: int = 1
    deconvolution_min_cells: int = 10

    # Images
    resolution_level: Optional[int] = None

    # Misc
    random_state: int = 42

    def to_dict(self):
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict):
        """Create from dictionary, ignoring unknown keys."""
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in names})


def get_default_parameters(platform: Literal["visium", "xenium"] = "visium") -> WorkflowParameters:
    """
    Get default parameters for a specific platform.

    Parameters
    ----------
    platform : {'visium', 'xenium'}
        Data platform.

    Returns
    -------
    WorkflowParameters
        Default parameters for the specified platform.
    """
    if platform == "visium":
        return WorkflowParameters(platform="visium")
    elif platform == "xenium":
        return WorkflowParameters(
            platform="xenium",
            min_counts=10,
            min_features=5,
            min_cells=1,
            target_sum=100,
            n_top_genes=None,  # Use the whole panel
            resolution=0.8,
            n_niches=6,
            neighbors_method="radius",
            neighbors_radius=15.0,  # microns
            neighbors_k=None,
            deconvolution_n_jobs=4,
            resolution_level=7,
        )
    else:
        raise ValueError(f"Unknown platform: {platform}")


def validate_parameters(params: WorkflowParameters) -> tuple[bool, list[str]]:
    """
    Validate parameters.

    Parameters
    ----------
    params : WorkflowParameters
        Parameters to validate.

    Returns
    -------
    tuple of (bool, list)
        (is_valid, list of error messages)
    """
    errors = []

    if params.platform not in ("visium", "xenium"):
        errors.append(f"platform must be 'visium' or 'xenium', got '{params.platform}'")

    if params.normalization not in ("log", "clr"):
        errors.append(f"normalization must be 'log' or 'clr', got '{params.normalization}'")
    if params.target_sum is not None and params.target_sum <= 0:
        errors.append("target_sum must be > 0")
    if params.n_top_genes is not None and params.n_top_genes < 1:
        errors.append("n_top_genes must be >= 1")

    if params.n_comps < 2:
        errors.append("n_comps must be >= 2")
    if params.n_neighbors < 2:
        errors.append("n_neighbors must be >= 2")
    if params.umap_neighbors < 2:
        errors.append("umap_neighbors must be >= 2")
    if not 0 <= params.snn_prune < 1:
        errors.append("snn_prune must be in [0, 1)")
    if params.resolution <= 0:
        errors.append("resolution must be > 0")

    if params.niche_method not in ("kmeans", "hierarchical"):
        errors.append(f"niche_method must be 'kmeans' or 'hierarchical', got '{params.niche_method}'")
    if params.n_niches < 2:
        errors.append("n_niches must be >= 2")

    if params.neighbors_method == "radius" and params.neighbors_radius is None:
        errors.append("neighbors_radius must be specified when neighbors_method='radius'")
    if params.neighbors_method == "knn" and params.neighbors_k is None:
        errors.append("neighbors_k must be specified when neighbors_method='knn'")
    if params.neighbors_method not in ("radius", "knn", "delaunay"):
        errors.append(f"Unknown neighbors_method '{params.neighbors_method}'")
    if params.hotspot_graph == "radius" and params.neighbors_radius is None:
        errors.append("neighbors_radius must be specified when hotspot_graph='radius'")
    if params.hotspot_graph == "knn" and params.neighbors_k is None:
        errors.append("neighbors_k must be specified when hotspot_graph='knn'")
    if params.hotspot_graph not in ("radius", "knn", "delaunay"):
        errors.append(f"Unknown hotspot_graph '{params.hotspot_graph}'")

    if not 0 < params.hotspot_alpha < 1:
        errors.append("hotspot_alpha must be in (0, 1)")
    if params.hotspot_correction not in ("none", "fdr_bh", "bonferroni"):
        errors.append(f"Unknown hotspot_correction '{params.hotspot_correction}'")
    if params.permutations < 0:
        errors.append("permutations must be >= 0")

    if params.deconvolution_n_jobs == 0:
        errors.append("deconvolution_n_jobs must not be 0 (use -1 for all cores)")

    if params.resolution_level is not None and params.resolution_level < 0:
        errors.append("resolution_level must be >= 0")

    is_valid = len(errors) == 0

    return is_valid, errors


def load_parameters(path: Union[str, Path]) -> WorkflowParameters:
    """
    Load parameters from a TOML file.

    Keys missing from the file take the preset of the file's ``platform``.
    Fields listed under ``none_fields`` are set to None, since TOML has no
    null value.

    Parameters
    ----------
    path : str or Path
        TOML file.

    Returns
    -------
    WorkflowParameters
        Loaded parameters.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Parameter file not found: {path}")

    data = toml.load(path)
    # Accept both a flat file and a [workflow] table
    data = data.get("workflow", data)
    none_fields = data.pop("none_fields", [])

    unknown = set(data) - {f.name for f in fields(WorkflowParameters)}
    if unknown:
        logger.warning(f"Ignoring unknown parameters: {sorted(unknown)}")

    merged = get_default_parameters(data.get("platform", "visium")).to_dict()
    merged.update(data)
    merged.update({name: None for name in none_fields if name in merged})
    params = WorkflowParameters.from_dict(merged)

    logger.info(f"Loaded {params.platform} parameters from {path}")
    return params


def save_parameters(params: WorkflowParameters, path: Union[str, Path]) -> Path:
    """Write parameters to a TOML file under a [workflow] table."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    values = params.to_dict()
    data = {k: v for k, v in values.items() if v is not None}
    data["none_fields"] = sorted(k for k, v in values.items() if v is None)
    with open(path, "w") as f:
        toml.dump({"workflow": data}, f)

    logger.info(f"Parameters saved to {path}")
    return path

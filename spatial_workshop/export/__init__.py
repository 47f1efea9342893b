"""Export of analysis results and run manifests."""

from .writers import (
    export_labels,
    export_embeddings,
    export_proportions,
    export_hotspots,
    export_all,
)
from .manifest import (
    compute_file_hash,
    create_manifest,
    save_manifest,
    summarize_outputs,
    add_qc_summary_to_manifest,
    add_spatial_summary_to_manifest,
    validate_manifest,
)

__all__ = [
    "export_labels",
    "export_embeddings",
    "export_proportions",
    "export_hotspots",
    "export_all",
    "compute_file_hash",
    "create_manifest",
    "save_manifest",
    "summarize_outputs",
    "add_qc_summary_to_manifest",
    "add_spatial_summary_to_manifest",
    "validate_manifest",
]

"""I/O utilities for importing, loading and validating spatial AnnData objects."""

from .readers import (
    read_visium,
    read_xenium,
    read_xenium_transcripts,
    read_xenium_image,
    is_control_feature,
    get_library_id,
    get_image,
    list_images,
)
from .loader import (
    load_h5ad,
    save_h5ad,
    detect_mappings,
    get_available_columns,
    summarize_adata,
)
from .validator import validate_schema, check_required_fields, check_counts_data
from .converter import ensure_spatial_coords, normalize_metadata, convert_units
from .convert import (
    check_r_available,
    check_r_packages,
    convert_rds_to_h5ad,
    assemble_exported_reference,
    load_reference,
)

__all__ = [
    "read_visium",
    "read_xenium",
    "read_xenium_transcripts",
    "read_xenium_image",
    "is_control_feature",
    "get_library_id",
    "get_image",
    "list_images",
    "load_h5ad",
    "save_h5ad",
    "detect_mappings",
    "get_available_columns",
    "summarize_adata",
    "validate_schema",
    "check_required_fields",
    "check_counts_data",
    "ensure_spatial_coords",
    "normalize_metadata",
    "convert_units",
    "check_r_available",
    "check_r_packages",
    "convert_rds_to_h5ad",
    "assemble_exported_reference",
    "load_reference",
]

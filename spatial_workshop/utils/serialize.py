"""Helpers for storing plain metadata in ``adata.uns``."""

from typing import Any, Dict


def clean_uns(d: Dict[str, Any]) -> Dict[str, Any]:
    """
    Drop None values (recursively) so the dict can be written to h5ad.

    h5ad has no representation for None.
    """
    cleaned = {}
    for key, value in d.items():
        if value is None:
            continue
        if isinstance(value, dict):
            value = clean_uns(value)
        cleaned[key] = value
    return cleaned

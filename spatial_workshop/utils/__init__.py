"""Utility functions and helpers."""

from .deps import MissingDependency, check_dependencies, require_package, get_install_hint
from .stats import adjust_pvalues, benjamini_hochberg, bonferroni
from .serialize import clean_uns

__all__ = [
    "MissingDependency",
    "check_dependencies",
    "require_package",
    "get_install_hint",
    "adjust_pvalues",
    "benjamini_hochberg",
    "bonferroni",
    "clean_uns",
]

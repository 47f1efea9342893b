"""Small statistics helpers shared across analysis modules."""

import numpy as np


def benjamini_hochberg(p_values: np.ndarray) -> np.ndarray:
    """
    Apply Benjamini-Hochberg FDR correction.

    Parameters
    ----------
    p_values : np.ndarray
        Array of p-values.

    Returns
    -------
    np.ndarray
        Adjusted p-values, in the original order.
    """
    p_values = np.asarray(p_values, dtype=float)
    n = len(p_values)
    if n == 0:
        return p_values.copy()

    order = np.argsort(p_values)
    ranked = p_values[order] * n / np.arange(1, n + 1)

    # Adjusted values must be non-decreasing in rank order
    ranked = np.minimum.accumulate(ranked[::-1])[::-1]

    adjusted = np.empty(n)
    adjusted[order] = np.minimum(ranked, 1.0)
    return adjusted


def bonferroni(p_values: np.ndarray, n_tests: int = None) -> np.ndarray:
    """Bonferroni correction, capped at 1."""
    p_values = np.asarray(p_values, dtype=float)
    n_tests = n_tests or len(p_values)
    return np.minimum(p_values * n_tests, 1.0)


def adjust_pvalues(p_values: np.ndarray, method: str = "fdr_bh") -> np.ndarray:
    """
    Adjust p-values for multiple testing.

    Parameters
    ----------
    p_values : np.ndarray
        Raw p-values.
    method : {'fdr_bh', 'bonferroni', 'none'}
        Correction method.

    Returns
    -------
    np.ndarray
        Adjusted p-values.
    """
    if method == "fdr_bh":
        return benjamini_hochberg(p_values)
    elif method == "bonferroni":
        return bonferroni(p_values)
    elif method == "none":
        return np.asarray(p_values, dtype=float)
    else:
        raise ValueError(f"Unknown correction method: {method}")

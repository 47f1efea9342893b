"""Checks for the optional analysis backends."""

import importlib
import logging
import os
import shutil
import sys
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# import name -> distribution name on the package index
OPTIONAL_BACKENDS = {
    "igraph": "igraph",
    "esda": "esda",
    "libpysal": "libpysal",
    "tifffile": "tifffile",
    "pyarrow": "pyarrow",
}


class MissingDependency(Exception):
    """Exception raised when a required dependency is missing."""

    def __init__(self, package_name: str, install_hint: str):
        self.package_name = package_name
        self.install_hint = install_hint
        super().__init__(f"Missing dependency: {package_name}\n{install_hint}")


def is_uv_available() -> bool:
    """Return True if the ``uv`` installer is on PATH."""
    return shutil.which("uv") is not None


def is_in_virtualenv() -> bool:
    """Return True when running inside a virtualenv or venv."""
    return (
        hasattr(sys, "real_prefix")
        or (hasattr(sys, "base_prefix") and sys.base_prefix != sys.prefix)
        or "VIRTUAL_ENV" in os.environ
    )


def get_install_hint(package_name: str, pip_package: Optional[str] = None) -> str:
    """
    Generate an install hint for a missing package.

    Parameters
    ----------
    package_name : str
        The Python import name of the package.
    pip_package : str, optional
        The distribution name if different from the import name. Falls back to
        ``OPTIONAL_BACKENDS`` and then to ``package_name``.

    Returns
    -------
    str
        Install hint message.
    """
    pip_pkg = pip_package or OPTIONAL_BACKENDS.get(package_name, package_name)

    commands = []
    if is_uv_available():
        commands.append(f"uv pip install {pip_pkg}")
    commands.append(f"pip install {pip_pkg}")
    if not is_in_virtualenv():
        commands.append(f"pip install --user {pip_pkg}")

    if len(commands) == 1:
        return f"Install with: {commands[0]}"
    cmd_list = "\n  - ".join(commands)
    return f"Install with one of:\n  - {cmd_list}"


def require_package(import_name: str, pip_package: Optional[str] = None) -> None:
    """
    Require a package to be installed, raising MissingDependency if not found.

    Parameters
    ----------
    import_name : str
        The Python import name of the package (e.g., 'igraph', 'esda').
    pip_package : str, optional
        The distribution name if different from the import name.

    Raises
    ------
    MissingDependency
        If the package cannot be imported.
    """
    try:
        importlib.import_module(import_name)
        logger.debug(f"Package '{import_name}' is available")
    except ImportError:
        hint = get_install_hint(import_name, pip_package)
        logger.error(f"Missing dependency: {import_name}")
        raise MissingDependency(import_name, hint)


def check_package(import_name: str) -> bool:
    """Return True if ``import_name`` can be imported."""
    try:
        importlib.import_module(import_name)
        return True
    except ImportError:
        return False


def check_dependencies(
    packages: Optional[Dict[str, Optional[str]]] = None,
) -> Tuple[List[str], List[str]]:
    """
    Check several optional backends at once.

    Parameters
    ----------
    packages : dict, optional
        Mapping of import names to distribution names. Defaults to
        ``OPTIONAL_BACKENDS``.

    Returns
    -------
    tuple of (list, list)
        (available_packages, missing_packages)
    """
    packages = packages if packages is not None else OPTIONAL_BACKENDS
    available = []
    missing = []

    for import_name in packages:
        if check_package(import_name):
            available.append(import_name)
            logger.debug(f"Package '{import_name}' is available")
        else:
            missing.append(import_name)
            logger.warning(f"Package '{import_name}' is missing")

    return available, missing

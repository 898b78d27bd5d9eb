"""Version information for gworkspace-auth."""

from pathlib import Path


def _get_version() -> str:
    """Get version from a VERSION file or fall back to the packaged default."""
    # Package-level VERSION file is written by release tooling
    pkg_version = Path(__file__).parent / "VERSION"
    if pkg_version.exists():
        return pkg_version.read_text().strip()

    # Source checkout keeps VERSION at the project root
    root_version = Path(__file__).parent.parent.parent / "VERSION"
    if root_version.exists():
        return root_version.read_text().strip()

    return "0.1.0"


__version__ = _get_version()

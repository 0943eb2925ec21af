"""Package version lookup."""

from importlib.metadata import PackageNotFoundError, version as metadata_version
from pathlib import Path

import tomllib

PACKAGE_NAME = "calmirror"

# Source checkouts run without installed metadata
_PYPROJECT = Path(__file__).resolve().parent.parent / "pyproject.toml"


def _version_from_pyproject() -> str | None:
    try:
        with _PYPROJECT.open("rb") as fh:
            project = tomllib.load(fh).get("project", {})
    except (OSError, tomllib.TOMLDecodeError):
        return None
    return project.get("version")


def get_version() -> str:
    """Return the installed version, else the one declared in pyproject.toml."""
    try:
        return metadata_version(PACKAGE_NAME)
    except PackageNotFoundError:
        return _version_from_pyproject() or "0.0.0"

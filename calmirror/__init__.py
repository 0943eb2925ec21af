"""calmirror - keep a local mirror of a Google Calendar convergent with the remote."""

from calmirror.version import get_version

__version__ = get_version()

__all__ = ["__version__"]

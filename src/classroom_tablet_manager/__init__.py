"""This package keeps classroom tablets locked to each student's scheduled apps."""

try:
    from ._version import __version__
except ImportError:
    # Fallback for development installs
    __version__ = "dev"

__all__ = ["__version__"]

"""Build a single USB stick that performs an unattended headless install."""

from .__version__ import __version__

__all__ = ["__version__"]

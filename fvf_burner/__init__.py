"""Provision bootable images onto block devices or files and regenerate their identity."""

from .__version__ import __version__


__all__ = ["__version__"]

"""Build bootable VM disk images from a minimal distribution bootstrap."""

from .__version__ import __version__


__all__ = ["__version__"]

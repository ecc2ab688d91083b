"""Build LUKS2-encrypted raw disk images for Kubernetes cluster nodes."""

from .__version__ import __version__

__all__ = ["__version__"]

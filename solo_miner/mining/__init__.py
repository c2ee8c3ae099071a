"""
Solo miner hashing layer.

This package holds the hash-engine interface and its backends (CPU and
OpenCL), the nonce/proof-of-work helpers, and the error taxonomy shared by
the session and coordinator.

Exports
-------
__version__ : str
    Semantic version string for the miner.
"""

from .version import __version__  # re-export

__all__ = ["__version__"]

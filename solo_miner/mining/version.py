from __future__ import annotations

import os
from importlib import metadata

# Bump this when the wire behaviour or persisted file format changes.
__version__ = "0.1.0"

DIST_NAME = "solo-stratum-miner"


def get_version() -> str:
    """
    Version string shown by `--version`:
      1) SOLO_MINER_VERSION if set
      2) the installed distribution's metadata
      3) the in-tree __version__
    """
    env = os.getenv("SOLO_MINER_VERSION")
    if env:
        return env
    try:
        return metadata.version(DIST_NAME)
    except metadata.PackageNotFoundError:
        return __version__


def user_agent() -> str:
    """Client identifier sent in `mining.subscribe`."""
    return f"solo-miner/{__version__}"


__all__ = ["__version__", "get_version", "user_agent"]

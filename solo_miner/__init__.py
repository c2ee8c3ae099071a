"""
Standalone solo Bitcoin miner package.

This module wires the Stratum session to the hash engines (CPU or OpenCL)
and exposes the asyncio-friendly `MiningCoordinator` used by the CLI entry
point.
"""

from .header import build_header
from .job import Job
from .miner import MiningCoordinator
from .stratum_client import ProtocolSession

__all__ = ["MiningCoordinator", "ProtocolSession", "build_header", "Job"]

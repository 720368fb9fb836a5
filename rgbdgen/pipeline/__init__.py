"""
Pipeline orchestration.

Responsibilities:
- Per-frame sequencing of the depth stages (DepthGenerator)
- Asset modes, caching, saving and recording (AssetHandler)
"""

from .asset_handler import AssetHandler
from .orchestrator import DepthGenerator

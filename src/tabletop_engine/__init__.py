"""
Tabletop Engine - A combat encounter engine for LLM dungeon masters, built with FastMCP 2.8.0+.
"""

from .main import mcp
from .models import Encounter, Participant
from .storage import EncounterStorage

try:
    from importlib.metadata import PackageNotFoundError, version as _get_version
    __version__ = _get_version("tabletop-engine")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback if metadata unavailable
__all__ = ["mcp", "Encounter", "Participant", "EncounterStorage"]

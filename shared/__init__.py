"""
Shared data structures available to both the LOD engine and the GUI.
"""

from .app_settings import LodSettings, LodSettingsStore
from .models import Sample, SampleSequence, ViewBuffer, ViewPoint

__all__ = ["LodSettings", "LodSettingsStore", "Sample", "SampleSequence", "ViewBuffer", "ViewPoint"]

__all__ = ["LodTraceRenderer", "TraceStyle"]

from .lod_curve import LodTraceRenderer
from .types import TraceStyle

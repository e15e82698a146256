"""
Hierarchical level-of-detail engine: segment fitting, tree build and view queries.
"""

from .errors import BuildCancelledError, InvalidArgumentError, InvalidRangeError, LodError
from .fitting import FitKind, PolynomialFit, SegmentFit, fit_segment
from .tree import BuildParams, SegmentNode, SegmentTree, SplitRule, build_segment_tree
from .view import collect, collect_for_view, collect_snapshots, px_scale_for_view, select_nodes

__all__ = [
    "BuildCancelledError",
    "BuildParams",
    "FitKind",
    "InvalidArgumentError",
    "InvalidRangeError",
    "LodError",
    "PolynomialFit",
    "SegmentFit",
    "SegmentNode",
    "SegmentTree",
    "SplitRule",
    "build_segment_tree",
    "collect",
    "collect_for_view",
    "collect_snapshots",
    "fit_segment",
    "px_scale_for_view",
    "select_nodes",
]

"""Tolerance-bounded view queries over a built segment tree.

A query walks the tree from the root and stops at the first node that is
either a leaf or whose error fits the requested pixel tolerance. Each
selected node is emitted as a few points evaluated from its own fits, so
the output size follows the view, not the trace length.
"""
from __future__ import annotations

import math
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from shared.models import SampleSequence, ViewBuffer

from .errors import InvalidArgumentError
from .fitting import eval_fit
from .tree import SegmentNode, SegmentTree

TimeRange = Tuple[float, float]

DEFAULT_POINTS_PER_NODE = 2


def _check_tolerance(view_tol_px: float) -> float:
    tol = float(view_tol_px)
    if not math.isfinite(tol) or tol < 0:
        raise InvalidArgumentError(f"view tolerance must be finite and non-negative, got {view_tol_px!r}")
    return tol


def _check_points_per_node(points_per_node: int) -> int:
    count = int(points_per_node)
    if count < 2:
        raise InvalidArgumentError("points_per_node must be at least 2 (segment start and end)")
    return count


def _check_time_range(time_range: Optional[TimeRange]) -> Optional[TimeRange]:
    if time_range is None:
        return None
    lo, hi = (float(v) for v in time_range)
    if math.isnan(lo) or math.isnan(hi) or hi < lo:
        raise InvalidArgumentError(f"invalid time range {time_range!r}")
    return lo, hi


def _resolve_samples(tree: SegmentTree, samples: Optional[SampleSequence]) -> SampleSequence:
    if samples is None:
        samples = tree.samples
        if samples is None:
            raise InvalidArgumentError("the sample sequence for this tree has been released")
    elif not tree.is_built_from(samples):
        raise InvalidArgumentError("samples are not the sequence this tree was built from")
    return samples


def _overlaps(node: SegmentNode, times: np.ndarray, window: TimeRange) -> bool:
    return times[node.start_idx] <= window[1] and times[node.end_idx - 1] >= window[0]


def _select(
    tree: SegmentTree,
    node_index: int,
    tol: float,
    times: Optional[np.ndarray],
    window: Optional[TimeRange],
) -> List[int]:
    selected: List[int] = []
    stack = [node_index]
    while stack:
        index = stack.pop()
        node = tree.node(index)
        if window is not None and not _overlaps(node, times, window):
            continue
        if node.is_leaf or node.error_px <= tol:
            selected.append(index)
            continue
        left, right = node.children
        # Right is pushed first so the left subtree is emitted first.
        stack.append(right)
        stack.append(left)
    return selected


def _emit(node: SegmentNode, times: np.ndarray, points_per_node: int, output) -> int:
    # A node spanning n distinct timestamps emits at most n points.
    count = min(points_per_node, node.distinct_times)
    t_start = float(times[node.start_idx])
    t_end = float(times[node.end_idx - 1])
    u = np.linspace(0.0, 1.0, count) if count > 1 else np.zeros(1)
    t_out = t_start + u * (t_end - t_start)
    ch1 = eval_fit(node.fit_ch1, u)
    ch2 = eval_fit(node.fit_ch2, u)
    if isinstance(output, ViewBuffer):
        output.extend_arrays(t_out, ch1, ch2)
    else:
        output.extend(zip(t_out.tolist(), ch1.tolist(), ch2.tolist()))
    return count


def select_nodes(
    tree: SegmentTree,
    view_tol_px: float,
    *,
    samples: Optional[SampleSequence] = None,
    time_range: Optional[TimeRange] = None,
) -> List[int]:
    """Arena indices of the coarsest adequate node set, in time order."""
    tol = _check_tolerance(view_tol_px)
    window = _check_time_range(time_range)
    times = _resolve_samples(tree, samples).t if window is not None else None
    return _select(tree, tree.root_index, tol, times, window)


def collect(
    tree: SegmentTree,
    node_index: int,
    view_tol_px: float,
    output,
    *,
    samples: Optional[SampleSequence] = None,
    points_per_node: int = DEFAULT_POINTS_PER_NODE,
    time_range: Optional[TimeRange] = None,
) -> int:
    """
    Append the view of the subtree rooted at `node_index` to `output`.

    A node is emitted when it is a leaf or its `error_px` is within
    `view_tol_px`; otherwise its children are visited left then right.
    `output` is a `ViewBuffer` or any list-like with `extend`, receiving
    `(time_micros, ch1, ch2)` tuples. Returns the number of points appended.
    """
    tol = _check_tolerance(view_tol_px)
    count = _check_points_per_node(points_per_node)
    window = _check_time_range(time_range)
    times = _resolve_samples(tree, samples).t
    appended = 0
    for index in _select(tree, int(node_index), tol, times, window):
        appended += _emit(tree.node(index), times, count, output)
    return appended


def collect_for_view(
    tree: SegmentTree,
    samples: SampleSequence,
    px_scale: float,
    view_tol_px: float,
    output,
    *,
    points_per_node: int = DEFAULT_POINTS_PER_NODE,
    time_range: Optional[TimeRange] = None,
) -> int:
    """
    Collect the points needed to draw `tree` within `view_tol_px` pixels.

    `px_scale` is the current pixels-per-unit scale. Node errors were stored
    at the build scale, so they are rescaled by `px_scale / build px_scale`
    before being compared with the tolerance.
    """
    tol = _check_tolerance(view_tol_px)
    scale = float(px_scale)
    if not math.isfinite(scale) or scale <= 0:
        raise InvalidArgumentError(f"px_scale must be finite and positive, got {px_scale!r}")
    node_tol = tol * tree.params.px_scale / scale
    return collect(
        tree,
        tree.root_index,
        node_tol,
        output,
        samples=samples,
        points_per_node=points_per_node,
        time_range=time_range,
    )


def collect_snapshots(
    tree: SegmentTree,
    samples: SampleSequence,
    px_scale: float,
    tolerances: Iterable[float],
    *,
    points_per_node: int = DEFAULT_POINTS_PER_NODE,
) -> Dict[float, ViewBuffer]:
    """Multi-resolution views of the same tree, keyed by tolerance."""
    snapshots: Dict[float, ViewBuffer] = {}
    for tol in tolerances:
        buffer = ViewBuffer()
        collect_for_view(tree, samples, px_scale, tol, buffer, points_per_node=points_per_node)
        snapshots[float(tol)] = buffer
    return snapshots


def px_scale_for_view(value_span: float, pixel_extent: float) -> float:
    """Pixels per value unit for a view showing `value_span` over `pixel_extent` pixels."""
    span = max(1e-10, abs(float(value_span)))
    return max(1e-10, float(pixel_extent)) / span


__all__ = [
    "DEFAULT_POINTS_PER_NODE",
    "collect",
    "collect_for_view",
    "collect_snapshots",
    "px_scale_for_view",
    "select_nodes",
]

"""Hierarchical segment tree over a frozen two-channel trace.

Nodes live in a flat arena (a tuple of `SegmentNode`) and refer to their
children by index. The arena is in post-order: both subtrees of a node are
complete before the node itself is appended, so the root is the last entry.
"""
from __future__ import annotations

import enum
import logging
import math
import threading
import time
import weakref
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from shared.models import SampleSequence

from .errors import BuildCancelledError, InvalidArgumentError, InvalidRangeError
from .fitting import FitKind, PolynomialFit, SegmentFit, fit_segment

logger = logging.getLogger(__name__)


class SplitRule(enum.Enum):
    """Which build rule decided a node's fate, in evaluation order."""

    MIN_SIZE = "min_size"  # size <= min_pts: leaf
    MAX_SIZE = "max_size"  # size > max_pts: forced split
    UNFITTABLE = "unfittable"  # zero time span: leaf
    WITHIN_TOLERANCE = "within_tolerance"  # error_px <= tol_px: leaf
    OVER_TOLERANCE = "over_tolerance"  # split

    @property
    def splits(self) -> bool:
        return self in (SplitRule.MAX_SIZE, SplitRule.OVER_TOLERANCE)


@dataclass(frozen=True)
class BuildParams:
    start: int
    end: int
    min_pts: int
    max_pts: int
    px_scale: float
    tol_px: float

    def __post_init__(self) -> None:
        if self.min_pts < 2:
            raise InvalidArgumentError("min_pts must be at least 2")
        if self.max_pts <= self.min_pts:
            raise InvalidArgumentError("max_pts must be greater than min_pts")
        if not math.isfinite(self.px_scale) or self.px_scale <= 0:
            raise InvalidArgumentError("px_scale must be a finite positive number")
        if not math.isfinite(self.tol_px) or self.tol_px < 0:
            raise InvalidArgumentError("tol_px must be a finite non-negative number")


@dataclass(frozen=True)
class SegmentNode:
    """One segment of the trace with its own fit; `children` holds arena indices."""

    start_idx: int
    end_idx: int
    fit_ch1: PolynomialFit
    fit_ch2: PolynomialFit
    error_px: float
    rmse_px: float
    kind: FitKind
    rule: SplitRule
    distinct_times: int = 1
    children: Optional[Tuple[int, int]] = None

    @property
    def size(self) -> int:
        return self.end_idx - self.start_idx

    @property
    def is_leaf(self) -> bool:
        return self.children is None


def split_rule(size: int, fit: SegmentFit, params: BuildParams) -> SplitRule:
    """Apply the split rules in order; the first match wins."""
    if size <= params.min_pts:
        return SplitRule.MIN_SIZE
    if size > params.max_pts:
        return SplitRule.MAX_SIZE
    if fit.kind.forces_leaf:
        return SplitRule.UNFITTABLE
    if fit.error_px <= params.tol_px:
        return SplitRule.WITHIN_TOLERANCE
    return SplitRule.OVER_TOLERANCE


class SegmentTree:
    """
    Immutable LOD tree plus the parameters it was built with.

    The tree keeps only a weak reference to its sample sequence; the owning
    session is expected to hold the samples for as long as it queries.
    """

    def __init__(
        self,
        nodes: Sequence[SegmentNode],
        root_index: int,
        params: BuildParams,
        samples: SampleSequence,
    ) -> None:
        if not nodes:
            raise ValueError("a segment tree needs at least one node")
        if not 0 <= root_index < len(nodes):
            raise ValueError("root_index out of range")
        self._nodes: Tuple[SegmentNode, ...] = tuple(nodes)
        self._root_index = int(root_index)
        self._params = params
        self._samples_ref = weakref.ref(samples)
        self._sample_count = len(samples)
        self._leaf_count = sum(1 for node in self._nodes if node.is_leaf)

    @property
    def nodes(self) -> Tuple[SegmentNode, ...]:
        return self._nodes

    @property
    def root_index(self) -> int:
        return self._root_index

    @property
    def root(self) -> SegmentNode:
        return self._nodes[self._root_index]

    @property
    def params(self) -> BuildParams:
        return self._params

    @property
    def sample_count(self) -> int:
        return self._sample_count

    @property
    def samples(self) -> Optional[SampleSequence]:
        """The sequence this tree was built from, or None once it was released."""
        return self._samples_ref()

    def is_built_from(self, samples: SampleSequence) -> bool:
        return self._samples_ref() is samples

    def node(self, index: int) -> SegmentNode:
        return self._nodes[index]

    def children_of(self, node: SegmentNode) -> Optional[Tuple[SegmentNode, SegmentNode]]:
        if node.children is None:
            return None
        left, right = node.children
        return self._nodes[left], self._nodes[right]

    def iter_nodes(self) -> Iterator[Tuple[int, SegmentNode]]:
        """Pre-order traversal from the root, left subtree first."""
        stack = [self._root_index]
        while stack:
            index = stack.pop()
            node = self._nodes[index]
            yield index, node
            if node.children is not None:
                stack.append(node.children[1])
                stack.append(node.children[0])

    def leaves(self) -> List[SegmentNode]:
        """Leaf nodes in index (and therefore time) order."""
        return [node for _, node in self.iter_nodes() if node.is_leaf]

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def leaf_count(self) -> int:
        return self._leaf_count

    @property
    def depth(self) -> int:
        deepest = 0
        stack = [(self._root_index, 1)]
        while stack:
            index, level = stack.pop()
            deepest = max(deepest, level)
            children = self._nodes[index].children
            if children is not None:
                stack.extend((child, level + 1) for child in children)
        return deepest

    def effective_tolerance(self, view_tol_px: float) -> float:
        """Detail discarded at build time cannot be recovered by a finer query."""
        return max(self._params.tol_px, float(view_tol_px))

    def summary(self) -> Dict[str, Any]:
        root = self.root
        return {
            "samples": self._sample_count,
            "range": (self._params.start, self._params.end),
            "nodes": self.node_count,
            "leaves": self._leaf_count,
            "depth": self.depth,
            "root_error_px": root.error_px,
            "root_rmse_px": root.rmse_px,
        }

    def __repr__(self) -> str:
        return (
            f"SegmentTree(range=[{self._params.start}, {self._params.end}), "
            f"nodes={self.node_count}, leaves={self._leaf_count})"
        )


@dataclass
class _Pending:
    """An upper-level node whose subtrees may still be building on the pool."""

    start: int
    end: int
    fit: SegmentFit
    rule: SplitRule
    left: Optional[Union["_Pending", Future]] = None
    right: Optional[Union["_Pending", Future]] = None


class _TreeBuilder:
    def __init__(
        self,
        samples: SampleSequence,
        params: BuildParams,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._samples = samples
        self._params = params
        self._cancel_event = cancel_event
        self.nodes: List[SegmentNode] = []

    def _check_cancel(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise BuildCancelledError("segment tree build cancelled")

    def _fit(self, start: int, end: int) -> Tuple[SegmentFit, SplitRule]:
        self._check_cancel()
        fit = fit_segment(self._samples, start, end, self._params.px_scale)
        return fit, split_rule(end - start, fit, self._params)

    def _append(
        self,
        start: int,
        end: int,
        fit: SegmentFit,
        rule: SplitRule,
        children: Optional[Tuple[int, int]],
    ) -> int:
        self.nodes.append(
            SegmentNode(
                start_idx=start,
                end_idx=end,
                fit_ch1=fit.fit_ch1,
                fit_ch2=fit.fit_ch2,
                error_px=fit.error_px,
                rmse_px=fit.rmse_px,
                kind=fit.kind,
                rule=rule,
                distinct_times=fit.distinct_times,
                children=children,
            )
        )
        return len(self.nodes) - 1

    def build(self, start: int, end: int) -> int:
        """Build `[start, end)` recursively; returns the arena index of its root."""
        fit, rule = self._fit(start, end)
        children = None
        if rule.splits:
            mid = start + (end - start) // 2
            left = self.build(start, mid)
            right = self.build(mid, end)
            children = (left, right)
        return self._append(start, end, fit, rule, children)

    def graft(self, subtree: Sequence[SegmentNode]) -> int:
        """Append a post-order subtree built elsewhere; returns its root index."""
        offset = len(self.nodes)
        for node in subtree:
            if node.children is not None:
                left, right = node.children
                node = replace(node, children=(left + offset, right + offset))
            self.nodes.append(node)
        return len(self.nodes) - 1

    def build_parallel(self, start: int, end: int, executor: ThreadPoolExecutor, depth: int) -> int:
        pending = self._schedule(start, end, executor, depth)
        return self._assemble(pending)

    def _schedule(
        self,
        start: int,
        end: int,
        executor: ThreadPoolExecutor,
        depth: int,
    ) -> Union[_Pending, Future]:
        if depth <= 0:
            return executor.submit(_build_subtree, self._samples, self._params, self._cancel_event, start, end)
        fit, rule = self._fit(start, end)
        pending = _Pending(start, end, fit, rule)
        if rule.splits:
            mid = start + (end - start) // 2
            pending.left = self._schedule(start, mid, executor, depth - 1)
            pending.right = self._schedule(mid, end, executor, depth - 1)
        return pending

    def _assemble(self, item: Union[_Pending, Future]) -> int:
        if isinstance(item, Future):
            return self.graft(item.result())
        children = None
        if item.left is not None and item.right is not None:
            children = (self._assemble(item.left), self._assemble(item.right))
        return self._append(item.start, item.end, item.fit, item.rule, children)


def _build_subtree(
    samples: SampleSequence,
    params: BuildParams,
    cancel_event: Optional[threading.Event],
    start: int,
    end: int,
) -> List[SegmentNode]:
    builder = _TreeBuilder(samples, params, cancel_event)
    builder.build(start, end)
    return builder.nodes


def _validate_range(samples: SampleSequence, start: int, end: int) -> None:
    count = len(samples)
    if start >= end:
        raise InvalidRangeError(f"empty or inverted range [{start}, {end})")
    if start < 0 or end > count:
        raise InvalidRangeError(f"range [{start}, {end}) out of bounds for {count} samples")


def build_segment_tree(
    samples: SampleSequence,
    start: int,
    end: int,
    min_pts: int,
    max_pts: int,
    px_scale: float,
    tol_px: float,
    *,
    workers: int = 0,
    cancel_event: Optional[threading.Event] = None,
) -> SegmentTree:
    """
    Build the LOD tree for `samples[start:end]`.

    Args:
        samples: Frozen sample sequence; the tree keeps a weak reference.
        start, end: Half-open index range to cover.
        min_pts: Ranges of at most this many samples are always leaves (>= 2).
        max_pts: Ranges larger than this are always split (> min_pts).
        px_scale: Pixels per native value unit used to express errors.
        tol_px: Build tolerance; a node whose error is within it stays a leaf.
        workers: When positive, subtrees below the root are built on a thread
            pool of this size. The resulting tree is identical.
        cancel_event: Optional event checked before every node fit.

    Raises:
        InvalidRangeError: empty sequence, inverted or out-of-bounds range.
        InvalidArgumentError: parameters outside their domain.
        BuildCancelledError: `cancel_event` was set during the build.
    """
    start = int(start)
    end = int(end)
    _validate_range(samples, start, end)
    params = BuildParams(
        start=start,
        end=end,
        min_pts=int(min_pts),
        max_pts=int(max_pts),
        px_scale=float(px_scale),
        tol_px=float(tol_px),
    )
    workers = int(workers)
    if workers < 0:
        raise InvalidArgumentError("workers must be non-negative")

    t0 = time.perf_counter()
    builder = _TreeBuilder(samples, params, cancel_event)
    if workers > 0:
        depth = max(1, workers.bit_length())
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="SegmentTreeBuild") as executor:
            root_index = builder.build_parallel(start, end, executor, depth)
    else:
        root_index = builder.build(start, end)

    tree = SegmentTree(builder.nodes, root_index, params, samples)
    logger.debug("Built segment tree in %.1f ms: %s", (time.perf_counter() - t0) * 1000.0, tree.summary())
    return tree


__all__ = [
    "BuildParams",
    "SegmentNode",
    "SegmentTree",
    "SplitRule",
    "build_segment_tree",
    "split_rule",
]

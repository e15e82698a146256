"""
Unit tests for view queries over a built segment tree.

The query must return the coarsest adequate node set in time order, shrink
as the tolerance grows, respect the error bound, and never touch the tree.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from lod import (
    InvalidArgumentError,
    SplitRule,
    build_segment_tree,
    collect,
    collect_for_view,
    collect_snapshots,
    px_scale_for_view,
    select_nodes,
)
from shared.models import SampleSequence, ViewBuffer
from fixtures.trace_generators import make_line, make_mouse_sweep, make_same_timestamp, make_uniform_noise


@pytest.fixture(scope="module")
def noise_trace():
    return make_uniform_noise(1000, seed=42)


@pytest.fixture(scope="module")
def noise_tree(noise_trace):
    return build_segment_tree(noise_trace, 0, 1000, min_pts=5, max_pts=200, px_scale=1.0, tol_px=1.0)


@pytest.fixture(scope="module")
def sweep_trace():
    return make_mouse_sweep(3000)


@pytest.fixture(scope="module")
def sweep_tree(sweep_trace):
    return build_segment_tree(sweep_trace, 0, 3000, min_pts=5, max_pts=1000, px_scale=1.0, tol_px=0.5)


def _query(tree, trace, tol, **kwargs) -> ViewBuffer:
    buf = ViewBuffer()
    collect_for_view(tree, trace, 1.0, tol, buf, **kwargs)
    return buf


class TestScenarios:
    def test_huge_tolerance_returns_a_handful_of_points(self, noise_tree, noise_trace):
        buf = _query(noise_tree, noise_trace, 1000.0)
        assert 1 <= len(buf) <= 4

    def test_line_view_is_its_endpoints(self):
        trace = make_line(20)
        tree = build_segment_tree(trace, 0, 20, 4, 1000, 1.0, 0.01)
        buf = _query(tree, trace, 0.5)

        assert len(buf) == 2
        np.testing.assert_allclose(buf.times, [0.0, 19.0])
        np.testing.assert_allclose(buf.ch1, [0.0, 19.0], atol=1e-8)
        np.testing.assert_allclose(buf.ch2, [0.0, 0.0], atol=1e-12)


class TestGuarantees:
    def test_output_is_time_ordered_and_spans_the_trace(self, sweep_tree, sweep_trace):
        for tol in (0.0, 0.5, 2.0, 10.0):
            buf = _query(sweep_tree, sweep_trace, tol)
            assert np.all(np.diff(buf.times) > 0)
            assert buf.times[0] == sweep_trace.t[0]
            assert buf.times[-1] == sweep_trace.t[-1]

    def test_monotonic_coarsening(self, sweep_tree, sweep_trace):
        tolerances = [0.0, 0.25, 0.5, 1.0, 2.0, 4.0, 8.0, 32.0, 1000.0]
        sizes = [len(_query(sweep_tree, sweep_trace, tol)) for tol in tolerances]
        assert sizes == sorted(sizes, reverse=True)
        assert sizes[0] > sizes[-1]

    def test_idempotent(self, noise_tree, noise_trace):
        a = _query(noise_tree, noise_trace, 3.0)
        b = _query(noise_tree, noise_trace, 3.0)
        assert a.points() == b.points()

    def test_error_bound(self, sweep_tree):
        tol = 1.0
        for index in select_nodes(sweep_tree, tol):
            node = sweep_tree.node(index)
            if node.error_px <= tol:
                continue
            # Only leaves may exceed the query tolerance, and only when they
            # sit at the min_pts floor or were accepted at the build tolerance.
            assert node.is_leaf
            if node.rule is SplitRule.WITHIN_TOLERANCE:
                assert node.error_px <= sweep_tree.params.tol_px
            else:
                assert node.rule is SplitRule.MIN_SIZE
                assert node.size <= sweep_tree.params.min_pts

    def test_zero_tolerance_selects_the_leaves(self, noise_tree, noise_trace):
        selected = select_nodes(noise_tree, 0.0)
        leaves = [i for i, node in noise_tree.iter_nodes() if node.is_leaf]
        assert selected == leaves
        assert len(selected) <= noise_tree.leaf_count
        assert len(_query(noise_tree, noise_trace, 0.0)) <= 2 * noise_tree.leaf_count

    def test_query_does_not_modify_tree(self, noise_tree, noise_trace):
        before = noise_tree.nodes
        _query(noise_tree, noise_trace, 0.0)
        _query(noise_tree, noise_trace, 5.0)
        assert noise_tree.nodes is before

    def test_concurrent_queries_match_sequential(self, sweep_tree, sweep_trace):
        tolerances = [0.0, 0.5, 1.0, 3.0, 10.0, 100.0] * 4
        expected = [_query(sweep_tree, sweep_trace, tol).points() for tol in tolerances]
        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(lambda tol: _query(sweep_tree, sweep_trace, tol).points(), tolerances))
        assert results == expected


class TestOutputBuffers:
    def test_list_output_matches_view_buffer(self, noise_tree, noise_trace):
        out = []
        appended = collect_for_view(noise_tree, noise_trace, 1.0, 4.0, out)
        buf = _query(noise_tree, noise_trace, 4.0)

        assert appended == len(out) == len(buf)
        assert [tuple(p) for p in buf.points()] == out

    def test_buffer_reuse_amortizes_allocation(self, sweep_tree, sweep_trace):
        buf = ViewBuffer(capacity=4)
        collect_for_view(sweep_tree, sweep_trace, 1.0, 0.0, buf)
        grown = buf.capacity
        first = buf.points()

        buf.clear()
        assert len(buf) == 0
        collect_for_view(sweep_tree, sweep_trace, 1.0, 0.0, buf)
        assert buf.capacity == grown
        assert buf.points() == first

    def test_appends_without_clearing(self, noise_tree, noise_trace):
        buf = ViewBuffer()
        n1 = collect_for_view(noise_tree, noise_trace, 1.0, 1000.0, buf)
        n2 = collect_for_view(noise_tree, noise_trace, 1.0, 1000.0, buf)
        assert len(buf) == n1 + n2

    def test_points_per_node(self):
        trace = make_line(40)
        tree = build_segment_tree(trace, 0, 40, 4, 1000, 1.0, 0.01)
        buf = _query(tree, trace, 1.0, points_per_node=5)

        assert len(buf) == 5
        np.testing.assert_allclose(buf.times, np.linspace(0.0, 39.0, 5))
        np.testing.assert_allclose(buf.ch1, buf.times, atol=1e-8)

    def test_small_nodes_emit_at_most_their_size(self):
        trace = make_uniform_noise(9, seed=3)
        tree = build_segment_tree(trace, 0, 9, 2, 100, 1.0, 0.0)
        buf = _query(tree, trace, 0.0, points_per_node=8)

        assert len(buf) == sum(min(8, leaf.size) for leaf in tree.leaves())

    def test_zero_span_nodes_emit_one_point(self):
        trace = make_same_timestamp(50)
        tree = build_segment_tree(trace, 0, 50, 2, 10, 1.0, 0.0)
        buf = _query(tree, trace, 0.0, points_per_node=4)

        assert tree.leaf_count > 1
        assert len(buf) == tree.leaf_count
        assert len(set(buf.points())) == len(buf)

    def test_points_limited_by_distinct_times(self):
        t = np.array([0, 0, 0, 10, 10, 10], dtype=np.int64)
        trace = SampleSequence.from_arrays(t, [1.0, 1.0, 1.0, 4.0, 4.0, 4.0], np.zeros(6))
        tree = build_segment_tree(trace, 0, 6, 2, 100, 1.0, 1.0)
        buf = _query(tree, trace, 1.0, points_per_node=5)

        assert tree.node_count == 1
        assert tree.root.distinct_times == 2
        np.testing.assert_allclose(buf.times, [0.0, 10.0])
        np.testing.assert_allclose(buf.ch1, [1.0, 4.0], atol=1e-9)


class TestScalesAndWindows:
    def test_px_scale_rescales_node_errors(self, sweep_tree, sweep_trace):
        base = ViewBuffer()
        doubled = ViewBuffer()
        collect_for_view(sweep_tree, sweep_trace, 1.0, 1.0, base)
        collect_for_view(sweep_tree, sweep_trace, 2.0, 2.0, doubled)
        assert base.points() == doubled.points()

    def test_zooming_in_reveals_more_detail(self, sweep_tree, sweep_trace):
        far = ViewBuffer()
        near = ViewBuffer()
        collect_for_view(sweep_tree, sweep_trace, 0.05, 1.0, far)
        collect_for_view(sweep_tree, sweep_trace, 5.0, 1.0, near)
        assert len(near) > len(far)

    def test_time_range_limits_output(self, sweep_tree, sweep_trace):
        full = _query(sweep_tree, sweep_trace, 0.5)
        lo, hi = float(sweep_trace.t[1000]), float(sweep_trace.t[1500])
        window = _query(sweep_tree, sweep_trace, 0.5, time_range=(lo, hi))

        assert 0 < len(window) < len(full)
        assert np.all(np.diff(window.times) > 0)
        # Nodes straddling the window edges are kept whole.
        assert window.times[0] <= lo
        assert window.times[-1] >= hi

        everything = _query(sweep_tree, sweep_trace, 0.5, time_range=(-1.0, 1e12))
        assert everything.points() == full.points()

    def test_time_range_outside_trace_is_empty(self, noise_tree, noise_trace):
        buf = _query(noise_tree, noise_trace, 0.5, time_range=(1e12, 2e12))
        assert len(buf) == 0

    def test_collect_from_subtree(self, noise_tree, noise_trace):
        left_index, _ = noise_tree.root.children
        left = noise_tree.node(left_index)
        buf = ViewBuffer()
        collect(noise_tree, left_index, 0.0, buf, samples=noise_trace)

        assert buf.times[0] == noise_trace.t[left.start_idx]
        assert buf.times[-1] == noise_trace.t[left.end_idx - 1]

    def test_snapshots(self, sweep_tree, sweep_trace):
        snapshots = collect_snapshots(sweep_tree, sweep_trace, 1.0, [0.5, 2.0, 8.0])

        assert list(snapshots) == [0.5, 2.0, 8.0]
        sizes = [len(snapshots[tol]) for tol in (0.5, 2.0, 8.0)]
        assert sizes == sorted(sizes, reverse=True)

    def test_px_scale_for_view(self):
        assert px_scale_for_view(100.0, 500.0) == pytest.approx(5.0)
        assert px_scale_for_view(-100.0, 500.0) == pytest.approx(5.0)
        assert np.isfinite(px_scale_for_view(0.0, 500.0))
        assert px_scale_for_view(10.0, 0.0) > 0.0


class TestValidation:
    @pytest.mark.parametrize("tol", [-0.1, float("nan"), float("inf")])
    def test_bad_tolerance(self, noise_tree, noise_trace, tol):
        with pytest.raises(InvalidArgumentError):
            collect_for_view(noise_tree, noise_trace, 1.0, tol, ViewBuffer())

    @pytest.mark.parametrize("px_scale", [0.0, -1.0, float("nan")])
    def test_bad_px_scale(self, noise_tree, noise_trace, px_scale):
        with pytest.raises(InvalidArgumentError):
            collect_for_view(noise_tree, noise_trace, px_scale, 1.0, ViewBuffer())

    def test_foreign_samples_rejected(self, noise_tree):
        other = make_uniform_noise(1000, seed=42)
        with pytest.raises(InvalidArgumentError):
            collect_for_view(noise_tree, other, 1.0, 1.0, ViewBuffer())

    def test_points_per_node_needs_endpoints(self, noise_tree, noise_trace):
        with pytest.raises(InvalidArgumentError):
            collect_for_view(noise_tree, noise_trace, 1.0, 1.0, ViewBuffer(), points_per_node=1)

    def test_inverted_time_range(self, noise_tree, noise_trace):
        with pytest.raises(InvalidArgumentError):
            collect_for_view(noise_tree, noise_trace, 1.0, 1.0, ViewBuffer(), time_range=(10.0, 0.0))

    def test_select_nodes_rejects_negative_tolerance(self, noise_tree):
        with pytest.raises(InvalidArgumentError):
            select_nodes(noise_tree, -1.0)

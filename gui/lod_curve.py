from __future__ import annotations

import logging
from typing import Callable, Optional

import numpy as np
import pyqtgraph as pg

from lod.tree import SegmentTree
from lod.view import DEFAULT_POINTS_PER_NODE, collect_for_view, px_scale_for_view
from shared.app_settings import LodSettings, LodSettingsStore
from shared.models import SampleSequence, ViewBuffer

from .types import TraceStyle

logger = logging.getLogger(__name__)

_US_PER_SEC = 1_000_000.0


class LodTraceRenderer:
    """
    Draws both channels of a segment tree and re-queries it on every zoom/pan.

    The x axis is time in seconds. The pixel scale handed to the query is the
    current vertical pixels-per-unit of the view box, so zooming in lowers
    the effective tolerance and reveals finer nodes.
    """

    def __init__(
        self,
        plot_item: pg.PlotItem,
        style: Optional[TraceStyle] = None,
        *,
        view_tol_px: float = 1.0,
        points_per_node: int = DEFAULT_POINTS_PER_NODE,
        settings_store: Optional[LodSettingsStore] = None,
    ) -> None:
        self._plot_item = plot_item
        self._style = style or TraceStyle()
        self._curves = (
            pg.PlotCurveItem(pen=pg.mkPen(self._style.ch1_color, width=self._style.width)),
            pg.PlotCurveItem(pen=pg.mkPen(self._style.ch2_color, width=self._style.width)),
        )
        for curve in self._curves:
            self._plot_item.addItem(curve)
        self._view_box = self._plot_item.getViewBox()
        self._view_box.sigRangeChanged.connect(self._on_range_changed)

        # State
        self._tree: Optional[SegmentTree] = None
        self._samples: Optional[SampleSequence] = None
        self._buffer = ViewBuffer()
        self._view_tol_px = float(view_tol_px)
        self._points_per_node = int(points_per_node)
        self.last_point_count = 0
        self._settings_unsub: Optional[Callable[[], None]] = None
        if settings_store is not None:
            self._settings_unsub = settings_store.subscribe(self._on_settings_changed)

    def set_tree(self, tree: Optional[SegmentTree], samples: Optional[SampleSequence]) -> None:
        self._tree = tree
        self._samples = samples
        self.refresh()

    def set_view_tolerance(self, view_tol_px: float) -> None:
        self._view_tol_px = float(view_tol_px)
        self.refresh()

    def update_style(self, style: TraceStyle) -> None:
        self._style = style
        self._curves[0].setPen(pg.mkPen(style.ch1_color, width=style.width))
        self._curves[1].setPen(pg.mkPen(style.ch2_color, width=style.width))
        for curve in self._curves:
            curve.setVisible(style.display_enabled)
        self.refresh()

    def _on_settings_changed(self, settings: LodSettings) -> None:
        self._view_tol_px = float(settings.view_tol_px)
        self._points_per_node = int(settings.points_per_node)
        self.refresh()

    def _on_range_changed(self, *_args) -> None:
        self.refresh()

    def refresh(self) -> None:
        if self._tree is None or self._samples is None or not self._style.display_enabled:
            self._set_data(np.zeros(0), np.zeros(0), np.zeros(0))
            return

        (x_lo, x_hi), (y_lo, y_hi) = self._view_box.viewRange()
        px_scale = px_scale_for_view(y_hi - y_lo, self._view_box.boundingRect().height())
        time_range = (x_lo * _US_PER_SEC, x_hi * _US_PER_SEC)

        self._buffer.clear()
        collect_for_view(
            self._tree,
            self._samples,
            px_scale,
            self._view_tol_px,
            self._buffer,
            points_per_node=self._points_per_node,
            time_range=time_range,
        )
        # Buffer views are overwritten by the next refresh
        ch1 = np.array(self._buffer.ch1)
        ch2 = -self._buffer.ch2 if self._style.invert_ch2 else np.array(self._buffer.ch2)
        self._set_data(self._buffer.times / _US_PER_SEC, ch1, ch2)

    def _set_data(self, t_sec: np.ndarray, ch1: np.ndarray, ch2: np.ndarray) -> None:
        self.last_point_count = int(t_sec.size)
        self._curves[0].setData(t_sec, ch1)
        self._curves[1].setData(t_sec, ch2)

    def clear(self) -> None:
        self._tree = None
        self._samples = None
        for curve in self._curves:
            curve.clear()
        self.last_point_count = 0

    def cleanup(self) -> None:
        """Remove curves from plot."""
        if self._settings_unsub:
            self._settings_unsub()
            self._settings_unsub = None
        try:
            self._view_box.sigRangeChanged.disconnect(self._on_range_changed)
        except (RuntimeError, TypeError) as exc:
            logger.debug("Range signal already disconnected: %s", exc)
        for curve in self._curves:
            self._plot_item.removeItem(curve)


__all__ = ["LodTraceRenderer"]

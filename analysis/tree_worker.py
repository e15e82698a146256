from __future__ import annotations

import logging
import queue
import threading
from typing import Optional

from lod.errors import BuildCancelledError
from lod.tree import SegmentTree, build_segment_tree
from shared.app_settings import LodSettings, LodSettingsStore
from shared.models import EndOfStream, SampleSequence

logger = logging.getLogger(__name__)


class TreeBuildWorker(threading.Thread):
    """Background worker that builds a segment tree off the interactive path."""

    def __init__(
        self,
        samples: SampleSequence,
        settings: Optional[LodSettings] = None,
        *,
        settings_store: Optional[LodSettingsStore] = None,
        start: int = 0,
        end: Optional[int] = None,
    ) -> None:
        super().__init__(name="TreeBuildWorker", daemon=True)
        if settings is None:
            settings = settings_store.get() if settings_store is not None else LodSettings()
        self._samples = samples
        self._settings = settings
        self._start = int(start)
        self._end = len(samples) if end is None else int(end)
        self.output_queue: "queue.Queue[SegmentTree | EndOfStream]" = queue.Queue(maxsize=1)
        self._cancel_evt = threading.Event()
        self._done_evt = threading.Event()
        self._tree: Optional[SegmentTree] = None
        self._error: Optional[BaseException] = None

    @property
    def settings(self) -> LodSettings:
        return self._settings

    def run(self) -> None:  # type: ignore[override]
        s = self._settings
        try:
            self._tree = build_segment_tree(
                self._samples,
                self._start,
                self._end,
                s.min_pts,
                s.max_pts,
                s.px_scale,
                s.tol_px,
                workers=s.build_workers,
                cancel_event=self._cancel_evt,
            )
        except BuildCancelledError as exc:
            logger.debug("Segment tree build cancelled")
            self._error = exc
        except Exception as exc:
            logger.warning("Segment tree build failed: %s", exc)
            self._error = exc
        finally:
            self._done_evt.set()
            self.output_queue.put(self._tree if self._tree is not None else EndOfStream)

    def done(self) -> bool:
        return self._done_evt.is_set()

    def result(self, timeout: Optional[float] = None) -> SegmentTree:
        """Block until the build finishes; re-raises the build's error."""
        if not self._done_evt.wait(timeout):
            raise TimeoutError("segment tree build still running")
        if self._error is not None:
            raise self._error
        assert self._tree is not None
        return self._tree

    def stop(self, timeout: float = 1.0) -> None:
        self._cancel_evt.set()
        if self.is_alive():
            self.join(timeout=timeout)


__all__ = ["TreeBuildWorker"]

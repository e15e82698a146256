"""GUI type definitions for trace display settings."""
from __future__ import annotations

from dataclasses import dataclass, field
from PySide6 import QtGui

@dataclass
class TraceStyle:
    ch1_color: QtGui.QColor = field(default_factory=lambda: QtGui.QColor(0, 0, 139))
    ch2_color: QtGui.QColor = field(default_factory=lambda: QtGui.QColor(178, 34, 34))
    width: float = 2.0
    display_enabled: bool = True
    # Vertical deltas are drawn negated so "up" on the device is up on screen.
    invert_ch2: bool = True

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, fields, replace
from typing import Any, Callable, Dict, Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LodSettings:
    min_pts: int = 5
    max_pts: int = 1000
    px_scale: float = 1.0
    tol_px: float = 1.0
    view_tol_px: float = 1.0
    points_per_node: int = 2
    build_workers: int = 0

    def __post_init__(self) -> None:
        if self.min_pts < 2:
            raise ValueError("min_pts must be at least 2")
        if self.max_pts <= self.min_pts:
            raise ValueError("max_pts must be greater than min_pts")
        if not math.isfinite(self.px_scale) or self.px_scale <= 0:
            raise ValueError("px_scale must be positive")
        for name in ("tol_px", "view_tol_px"):
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0:
                raise ValueError(f"{name} must be non-negative")
        if self.points_per_node < 2:
            raise ValueError("points_per_node must be at least 2")
        if self.build_workers < 0:
            raise ValueError("build_workers must be non-negative")


class SettingsPersistence(Protocol):
    def value(self, key: str, default: Any) -> Any: ...

    def set_value(self, key: str, value: Any) -> None: ...


class InMemoryPersistence:
    """Dictionary-backed persistence for headless use and tests."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._values: Dict[str, Any] = dict(initial or {})

    def value(self, key: str, default: Any) -> Any:
        return self._values.get(key, default)

    def set_value(self, key: str, value: Any) -> None:
        self._values[key] = value


class QSettingsPersistence:
    """Persistence through Qt's QSettings; PySide6 is only imported here."""

    def __init__(
        self,
        *,
        organization: str = "MouseTrace",
        application: str = "MouseTrace",
        qsettings: Any = None,
    ) -> None:
        if qsettings is None:
            from PySide6.QtCore import QSettings

            qsettings = QSettings(organization, application)
        self._qsettings = qsettings

    def value(self, key: str, default: Any) -> Any:
        return self._qsettings.value(f"lod/{key}", default)

    def set_value(self, key: str, value: Any) -> None:
        self._qsettings.setValue(f"lod/{key}", value)


def _coerce(kind: type, raw: Any, default: Any) -> Any:
    try:
        return kind(raw)
    except (TypeError, ValueError):
        return default


class LodSettingsStore:
    """Thread-safe persistent store for the LOD build and view parameters."""

    def __init__(self, persistence: Optional[SettingsPersistence] = None) -> None:
        self._lock = threading.Lock()
        self._subscribers: Dict[int, Callable[[LodSettings], None]] = {}
        self._next_token = 0
        self._persistence = persistence if persistence is not None else InMemoryPersistence()
        self._settings = self._load_settings()

    def _load_settings(self) -> LodSettings:
        defaults = LodSettings()
        values = {}
        for f in fields(LodSettings):
            default = getattr(defaults, f.name)
            kind = type(default)
            values[f.name] = _coerce(kind, self._persistence.value(f.name, default), default)
        try:
            return LodSettings(**values)
        except ValueError as exc:
            logger.warning("Ignoring invalid persisted LOD settings: %s", exc)
            return defaults

    def get(self) -> LodSettings:
        with self._lock:
            return self._settings

    def update(self, **kwargs) -> LodSettings:
        with self._lock:
            new_settings = replace(self._settings, **kwargs)
            self._settings = new_settings
            callbacks = list(self._subscribers.values())
            self._persist(new_settings)
        for callback in callbacks:
            try:
                callback(new_settings)
            except Exception as exc:
                logger.debug("LOD settings subscriber callback failed: %s", exc)
                continue
        return new_settings

    def subscribe(self, callback: Callable[[LodSettings], None], *, replay: bool = True) -> Callable[[], None]:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = callback
            snapshot = self._settings
        if replay:
            callback(snapshot)

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe

    def _persist(self, settings: LodSettings) -> None:
        for f in fields(LodSettings):
            self._persistence.set_value(f.name, getattr(settings, f.name))


__all__ = [
    "InMemoryPersistence",
    "LodSettings",
    "LodSettingsStore",
    "QSettingsPersistence",
    "SettingsPersistence",
]

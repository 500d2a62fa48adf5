"""Engine configuration."""
from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Literal, Mapping

from .rendering import validate_factor

PACKAGE_VERSION = "0.1.0"
SCHEMA_VERSION = "2.1.0"
ENV_PREFIX = "OVERLAYTOOLS_"

PersistencePolicy = Literal["report", "raise"]


@dataclass(slots=True)
class OverlaySettings:
    tile_size: int = 1000
    render_factor: int = 3  # must be odd so every k×k block has a centre pixel
    max_templates: int = 10
    zoom_out_threshold: float = 0.75  # log2(scale) <= threshold means zoomed out
    zoom_opacity: float = 0.4
    cache_size: int = 256
    status_interval: float = 0.5  # seconds between compositor status messages
    product_name: str = "BlueMarble"
    script_version: str = PACKAGE_VERSION
    schema_version: str = SCHEMA_VERSION
    storage_key: str = "bmTemplates"
    workers: int = 1
    persistence_policy: PersistencePolicy = "report"

    def __post_init__(self) -> None:
        if self.tile_size <= 0:
            raise ValueError("tile_size must be positive")
        validate_factor(self.render_factor)
        if self.max_templates < 0:
            raise ValueError("max_templates must be non-negative")
        if not 0.0 <= self.zoom_opacity <= 1.0:
            raise ValueError("zoom_opacity must be between 0 and 1")
        if self.cache_size <= 0:
            raise ValueError("cache_size must be positive")
        if self.workers <= 0:
            raise ValueError("workers must be positive")
        if self.persistence_policy not in ("report", "raise"):
            raise ValueError("persistence_policy must be 'report' or 'raise'")

    @property
    def draw_size(self) -> int:
        """Edge length of a composited tile in output pixels."""
        return self.tile_size * self.render_factor

    @property
    def whoami(self) -> str:
        return self.product_name.replace(" ", "")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: Any) -> "OverlaySettings":
        """Build settings from ``OVERLAYTOOLS_*`` variables, then ``overrides``.

        ``OVERLAYTOOLS_TILE_SIZE=500`` sets ``tile_size``; values are coerced to
        the type of the field default.
        """

        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for item in fields(cls):
            raw = env.get(ENV_PREFIX + item.name.upper())
            if raw is None:
                continue
            default = item.default
            try:
                if isinstance(default, bool):
                    values[item.name] = raw.strip().lower() in {"1", "true", "yes", "on"}
                elif isinstance(default, int):
                    values[item.name] = int(raw)
                elif isinstance(default, float):
                    values[item.name] = float(raw)
                else:
                    values[item.name] = raw
            except ValueError as exc:
                raise ValueError(f"Invalid value for {ENV_PREFIX}{item.name.upper()}: {raw!r}") from exc
        values.update(overrides)
        return cls(**values)

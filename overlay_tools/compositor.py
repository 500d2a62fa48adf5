"""Draw enabled templates onto incoming canvas tiles."""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, List, Sequence, Tuple

from PIL import Image

from .cache import COLOR_AUTO, COLOR_ORIGINAL, ZOOMED_IN, ZOOMED_OUT, cache_key
from .color_index import ColorIndexStore
from .registry import TemplateRegistry
from .rendering import decode_image, encode_png
from .slicing import parse_tile_key, tile_coord_key, tile_prefix


logger = logging.getLogger(__name__)

PaletteSelector = Callable[[int], None]


@dataclass(slots=True)
class ChunkDraw:
    id_key: str
    bitmap: Image.Image
    offset_x: int
    offset_y: int


def _with_opacity(bitmap: Image.Image, opacity: float) -> Image.Image:
    if opacity >= 1.0:
        return bitmap
    faded = bitmap.copy()
    lut = [int(round(alpha * opacity)) for alpha in range(256)]
    faded.putalpha(bitmap.getchannel("A").point(lut))
    return faded


class TileCompositor:
    """Composite templates from ``registry`` onto canvas tiles.

    Zoom state arrives through :meth:`set_zoom_signal`; nothing here listens
    for events. Results are cached in ``registry.cache`` under a key that
    embeds the registry's cache version.
    """

    def __init__(
        self,
        registry: TemplateRegistry,
        *,
        palette_selector: PaletteSelector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.settings = registry.settings
        self.index_store = ColorIndexStore(registry.palette, registry.settings.render_factor)
        self.palette_selector = palette_selector
        self.clock = clock
        self.zoom_level: float | None = None
        self.is_zoomed_out = True
        self.last_selected_index: int | None = None
        self._status_last_update: float | None = None

    @property
    def zoom_mode(self) -> str:
        return ZOOMED_OUT if self.is_zoomed_out else ZOOMED_IN

    @property
    def color_mode(self) -> str:
        return COLOR_AUTO if self.registry.auto_color_live else COLOR_ORIGINAL

    def set_zoom_signal(self, scale: float | None = None, *, zoom: float | None = None) -> bool:
        """Update the zoom state from a viewport scale or a zoom level.

        ``scale`` is mapped to ``log2(scale)``. The view counts as zoomed out
        when the level is at or below ``zoom_out_threshold``. A flip bumps the
        registry cache version. Returns the new zoomed-out flag.
        """

        level = zoom
        if level is None and scale is not None and not math.isnan(float(scale)):
            level = math.log2(max(1e-6, float(scale)))
        if level is None or math.isnan(level):
            return self.is_zoomed_out
        previous = self.is_zoomed_out
        self.zoom_level = level
        self.is_zoomed_out = level <= self.settings.zoom_out_threshold
        if previous != self.is_zoomed_out:
            logger.debug("Zoom mode changed level=%.3f zoomed_out=%s", level, self.is_zoomed_out)
            self.registry.bump_version()
        return self.is_zoomed_out

    def _collect_chunks(self, tile_x: int, tile_y: int, auto_color: bool, masked: bool) -> List[ChunkDraw]:
        prefix = tile_prefix(tile_x, tile_y)
        draws: List[ChunkDraw] = []
        for template in self.registry.enabled_sorted():
            source = template.chunk_map(auto_color, masked)
            for key in sorted(template.keys_for_tile(prefix)):
                bitmap = source.get(key)
                if bitmap is None:
                    bitmap = template.chunked.get(key)
                if bitmap is None:
                    continue
                _tx, _ty, offset_x, offset_y = parse_tile_key(key)
                draws.append(ChunkDraw(template.id_key, bitmap, offset_x, offset_y))
        return draws

    def _report_status(self, draws: Sequence[ChunkDraw]) -> None:
        now = self.clock()
        if self._status_last_update is not None and now - self._status_last_update < self.settings.status_interval:
            return
        self._status_last_update = now
        shown = {draw.id_key for draw in draws}
        count = len(shown)
        total = sum(template.pixel_count for template in self.registry.templates if template.id_key in shown)
        self.registry.status(
            f"Displaying {count} template{'' if count == 1 else 's'}.\nTotal pixels: {total:,}"
        )

    def composite_tile(
        self,
        base_tile: bytes,
        tile_coord: Tuple[int, int],
        zoom_mode: str | None = None,
        color_mode: str | None = None,
    ) -> bytes:
        """Return ``base_tile`` with every overlapping enabled template drawn on it.

        Templates are drawn in ascending ``sort_id`` order so the highest one
        ends up on top. Tiles with nothing to draw are returned unchanged and
        are not cached.
        """

        if not self.registry.templates_should_be_drawn:
            return base_tile
        tile_x, tile_y = int(tile_coord[0]), int(tile_coord[1])
        zoom = zoom_mode or self.zoom_mode
        color = color_mode or self.color_mode
        if zoom not in (ZOOMED_OUT, ZOOMED_IN):
            raise ValueError(f"Unknown zoom mode {zoom!r}")
        if color not in (COLOR_AUTO, COLOR_ORIGINAL):
            raise ValueError(f"Unknown colour mode {color!r}")

        with self.registry.lock:
            draws = self._collect_chunks(tile_x, tile_y, color == COLOR_AUTO, zoom == ZOOMED_IN)
            if not draws:
                return base_tile
            version = self.registry.cache_version
            key = cache_key(tile_coord_key(tile_x, tile_y), color, zoom, version)
            cached = self.registry.cache.get(key)
            if cached is not None:
                return cached

        self._report_status(draws)
        factor = self.settings.render_factor
        draw_size = self.settings.draw_size
        opacity = self.settings.zoom_opacity if zoom == ZOOMED_OUT else 1.0

        canvas = decode_image(base_tile)
        if canvas.size != (draw_size, draw_size):
            canvas = canvas.resize((draw_size, draw_size), Image.NEAREST)
        for draw in draws:
            overlay = _with_opacity(draw.bitmap.convert("RGBA"), opacity)
            canvas.alpha_composite(overlay, dest=(draw.offset_x * factor, draw.offset_y * factor))
        logger.debug(
            "Composited tile=%s chunks=%s zoom=%s color=%s",
            tile_coord_key(tile_x, tile_y),
            len(draws),
            zoom,
            color,
        )
        result = encode_png(canvas)

        with self.registry.lock:
            # an invalidation while compositing makes this result stale
            if self.registry.cache_version == version:
                self.registry.cache.put(key, result)
        return result

    def pick_palette_index_at(self, tile_coord: Tuple[int, int], pixel_coord: Tuple[int, int]) -> int:
        """Palette index of the topmost enabled template at a pixel, else 0."""

        tile_x, tile_y = int(tile_coord[0]), int(tile_coord[1])
        pixel_x, pixel_y = int(pixel_coord[0]), int(pixel_coord[1])
        for template in reversed(self.registry.enabled_sorted()):
            index = self.index_store.index_at(template, tile_x, tile_y, pixel_x, pixel_y)
            if index > 0:
                return index
        return 0

    def maybe_auto_select_color(self, tile_coord: Tuple[int, int], pixel_coord: Tuple[int, int]) -> int:
        """Forward the picked palette index to ``palette_selector`` when it changes."""

        if not self.registry.auto_color_live or self.palette_selector is None:
            return 0
        index = self.pick_palette_index_at(tile_coord, pixel_coord)
        if index > 0 and index != self.last_selected_index:
            self.palette_selector(index)
            self.last_selected_index = index
        return index

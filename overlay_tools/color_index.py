"""Per-template palette-index grids used for live colour lookups."""
from __future__ import annotations

import logging

import numpy as np

from .palette_ops import Palette
from .rendering import sample_blocks, validate_factor
from .slicing import parse_tile_key, tile_prefix
from .templates import ColorIndexGrid, Template


logger = logging.getLogger(__name__)


class ColorIndexStore:
    """Look up palette indices inside a template's regions.

    Grids computed at slicing time are used directly. Imported templates have
    bitmaps only; their grids are rebuilt on demand by :meth:`ensure_grid` and
    cached on the template.
    """

    def __init__(self, palette: Palette, render_factor: int = 3) -> None:
        self.palette = palette
        self.render_factor = validate_factor(render_factor)

    def ensure_grid(self, template: Template, key: str) -> ColorIndexGrid | None:
        existing = template.color_index_tiles.get(key)
        if existing is not None:
            return existing
        bitmap = template.chunked.get(key)
        if bitmap is None or bitmap.width == 0 or bitmap.height == 0:
            return None

        samples = sample_blocks(bitmap, self.render_factor)
        height, width = samples.shape[:2]
        indices = np.zeros((height, width), dtype=np.uint16)
        visible = samples[..., 3] != 0
        if visible.any():
            indices[visible] = self.palette.nearest_indices(samples[..., :3][visible])
        grid = ColorIndexGrid(width=width, height=height, indices=indices)
        template.color_index_tiles[key] = grid
        logger.debug("Computed index grid lazily key=%s size=%sx%s", key, width, height)
        return grid

    def ensure_tile(self, template: Template, prefix: str) -> int:
        """Build missing grids for every chunk under ``prefix``; return how many."""

        built = 0
        for key in template.keys_for_tile(prefix):
            if key not in template.color_index_tiles:
                if self.ensure_grid(template, key) is not None:
                    built += 1
        return built

    def index_at(self, template: Template, tile_x: int, tile_y: int, pixel_x: int, pixel_y: int) -> int:
        """Palette index at a pixel of tile ``(tile_x, tile_y)``; 0 when uncovered."""

        prefix = tile_prefix(tile_x, tile_y)
        self.ensure_tile(template, prefix)
        for key, grid in template.color_index_tiles.items():
            if not key.startswith(prefix):
                continue
            _tx, _ty, start_x, start_y = parse_tile_key(key)
            value = grid.value_at(pixel_x - start_x, pixel_y - start_y)
            if value > 0:
                return value
        return 0

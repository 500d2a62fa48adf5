"""Split a source image into tile-aligned regions and classify their pixels."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterator, List, Tuple

import numpy as np
from PIL import Image

from .errors import MalformedAnchor, SlicingCancelled
from .palette_ops import ColorTuple, Palette


logger = logging.getLogger(__name__)

SENTINEL_RGB: ColorTuple = (222, 250, 206)  # "#DEFACE" placeholder marker
SENTINEL_ALPHA = 32


def tile_prefix(tile_x: int, tile_y: int) -> str:
    """Return the ``"TTTT,TTTT,"`` prefix shared by every chunk of a tile."""
    return f"{tile_x:04d},{tile_y:04d},"


def tile_coord_key(tile_x: int, tile_y: int) -> str:
    return f"{tile_x:04d},{tile_y:04d}"


def format_tile_key(tile_x: int, tile_y: int, offset_x: int, offset_y: int) -> str:
    return f"{tile_x:04d},{tile_y:04d},{offset_x:03d},{offset_y:03d}"


def parse_tile_key(key: str) -> Tuple[int, int, int, int]:
    parts = key.split(",")
    if len(parts) != 4:
        raise ValueError(f"Tile key must have four fields: {key!r}")
    tile_x, tile_y, offset_x, offset_y = (int(part) for part in parts)
    return tile_x, tile_y, offset_x, offset_y


@dataclass(slots=True)
class RegionPlan:
    """Geometry of one region before its pixels are classified."""

    tile_key: str
    source_x: int
    source_y: int
    width: int
    height: int


@dataclass(slots=True)
class TileRegion:
    tile_key: str
    source_x: int
    source_y: int
    width: int
    height: int
    original: np.ndarray  # (h, w, 4) uint8
    mapped: np.ndarray  # (h, w, 4) uint8, palette-mapped colours
    indices: np.ndarray  # (h, w) uint16, 0 = no paintable colour


@dataclass(slots=True)
class SliceResult:
    width: int
    height: int
    regions: List[TileRegion]

    @property
    def pixel_count(self) -> int:
        # bounding-box area, not the number of opaque pixels
        return self.width * self.height

    @property
    def tile_keys(self) -> List[str]:
        return [region.tile_key for region in self.regions]


def _axis_spans(start: int, extent: int, tile_size: int) -> Iterator[Tuple[int, int]]:
    """Yield ``(absolute_coord, length)`` pairs covering ``extent`` pixels."""

    coord = start
    end = start + extent
    while coord < end:
        length = min(tile_size - (coord % tile_size), end - coord)
        yield coord, length
        coord += length


def plan_regions(
    width: int,
    height: int,
    anchor: Tuple[int, int, int, int],
    tile_size: int,
) -> List[RegionPlan]:
    """Compute region geometry in row-major tile order.

    Pixel anchors larger than ``tile_size`` carry into the tile coordinate, so
    ``(0, 0, 1500, 0)`` and ``(1, 0, 500, 0)`` produce the same keys.
    """

    if tile_size <= 0:
        raise ValueError("tile_size must be positive")
    tile_x0, tile_y0, px0, py0 = anchor
    if min(anchor) < 0:
        raise MalformedAnchor(f"Anchor coordinates must be non-negative: {anchor}")
    plans: List[RegionPlan] = []
    for abs_y, span_h in _axis_spans(py0, height, tile_size):
        for abs_x, span_w in _axis_spans(px0, width, tile_size):
            key = format_tile_key(
                tile_x0 + abs_x // tile_size,
                tile_y0 + abs_y // tile_size,
                abs_x % tile_size,
                abs_y % tile_size,
            )
            plans.append(
                RegionPlan(
                    tile_key=key,
                    source_x=abs_x - px0,
                    source_y=abs_y - py0,
                    width=span_w,
                    height=span_h,
                )
            )
    return plans


def classify_region(crop: np.ndarray, palette: Palette) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Return ``(original, mapped, indices)`` for an RGBA crop.

    Sentinel pixels become a checkerboard of translucent black and clear
    cells whatever their source alpha; other visible pixels are forced opaque.
    """

    height, width = crop.shape[:2]
    rgb = crop[..., :3]
    alpha = crop[..., 3]
    original = crop.copy()
    mapped = crop.copy()
    indices = np.zeros((height, width), dtype=np.uint16)

    sentinel = np.all(rgb == np.array(SENTINEL_RGB, dtype=np.uint8), axis=-1)
    opaque = (alpha != 0) & ~sentinel

    if opaque.any():
        visible = rgb[opaque]
        indices[opaque] = palette.nearest_indices(visible)
        original[opaque, 3] = 255
        mapped[opaque, :3] = palette.nearest_colors(visible)
        mapped[opaque, 3] = 255

    if sentinel.any():
        ys, xs = np.indices((height, width))
        dark = sentinel & ((xs + ys) % 2 == 0)
        clear = sentinel & ~dark
        for buffer in (original, mapped):
            buffer[dark] = (0, 0, 0, SENTINEL_ALPHA)
            buffer[clear, 3] = 0
    return original, mapped, indices


def _build_region(
    pixels: np.ndarray,
    plan: RegionPlan,
    palette: Palette,
    cancel: threading.Event | None,
) -> TileRegion:
    if cancel is not None and cancel.is_set():
        raise SlicingCancelled(f"Slicing cancelled before region {plan.tile_key}")
    crop = pixels[
        plan.source_y : plan.source_y + plan.height,
        plan.source_x : plan.source_x + plan.width,
    ]
    original, mapped, indices = classify_region(crop, palette)
    return TileRegion(
        tile_key=plan.tile_key,
        source_x=plan.source_x,
        source_y=plan.source_y,
        width=plan.width,
        height=plan.height,
        original=original,
        mapped=mapped,
        indices=indices,
    )


def slice_image(
    image: Image.Image,
    anchor: Tuple[int, int, int, int],
    tile_size: int,
    palette: Palette,
    *,
    workers: int = 1,
    cancel: threading.Event | None = None,
) -> SliceResult:
    """Slice ``image`` into regions aligned to the ``tile_size`` grid.

    Regions are independent, so ``workers > 1`` classifies them on a thread
    pool; output order is row-major either way. Setting ``cancel`` aborts with
    :class:`SlicingCancelled` and returns nothing.
    """

    pixels = np.asarray(image.convert("RGBA"), dtype=np.uint8)
    height, width = pixels.shape[:2]
    plans = plan_regions(width, height, anchor, tile_size)
    logger.debug(
        "Slicing image size=%sx%s anchor=%s tile_size=%s regions=%s workers=%s",
        width,
        height,
        anchor,
        tile_size,
        len(plans),
        workers,
    )
    if workers > 1 and len(plans) > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(_build_region, pixels, plan, palette, cancel) for plan in plans]
            try:
                regions = [future.result() for future in futures]
            except SlicingCancelled:
                for future in futures:
                    future.cancel()
                raise
    else:
        regions = [_build_region(pixels, plan, palette, cancel) for plan in plans]
    return SliceResult(width=width, height=height, regions=regions)

"""Upscaled chunk bitmaps and their PNG encoding."""
from __future__ import annotations

import base64
import binascii
import io
import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import DecodeFailure
from .slicing import TileRegion


logger = logging.getLogger(__name__)

DEFAULT_RENDER_FACTOR = 3


class RenderFactorError(ValueError):
    """Raised for render factors without a centre pixel."""


def validate_factor(factor: int) -> int:
    if not isinstance(factor, int) or factor <= 0 or factor % 2 == 0:
        raise RenderFactorError(f"Render factor must be a positive odd integer, got {factor!r}")
    return factor


def dot_mask(width: int, height: int, factor: int) -> np.ndarray:
    """Boolean mask keeping the centre pixel of every ``factor`` block."""

    validate_factor(factor)
    cell = np.zeros((factor, factor), dtype=bool)
    center = factor // 2
    cell[center, center] = True
    return np.tile(cell, (height, width))


def upscale(buffer: np.ndarray, factor: int) -> np.ndarray:
    """Nearest-neighbour enlarge an ``(h, w, c)`` buffer by ``factor``."""

    validate_factor(factor)
    return np.repeat(np.repeat(buffer, factor, axis=0), factor, axis=1)


def sample_blocks(bitmap: Image.Image, factor: int) -> np.ndarray:
    """Read back the source-resolution RGBA buffer from the centre of each block."""

    pixels = np.asarray(bitmap.convert("RGBA"), dtype=np.uint8)
    width = max(1, round(bitmap.width / factor))
    height = max(1, round(bitmap.height / factor))
    mid = factor // 2
    sample_x = np.minimum(np.arange(width) * factor + mid, bitmap.width - 1)
    sample_y = np.minimum(np.arange(height) * factor + mid, bitmap.height - 1)
    return np.ascontiguousarray(pixels[np.ix_(sample_y, sample_x)])


def render_chunk(buffer: np.ndarray, factor: int = DEFAULT_RENDER_FACTOR) -> Tuple[Image.Image, Image.Image]:
    """Return ``(masked, full)`` RGBA bitmaps for one region buffer."""

    height, width = buffer.shape[:2]
    full = np.ascontiguousarray(upscale(buffer, factor), dtype=np.uint8)
    masked = full.copy()
    masked[~dot_mask(width, height, factor)] = 0
    return Image.fromarray(masked), Image.fromarray(full)


@dataclass(slots=True)
class ChunkVariants:
    original_masked: Image.Image
    auto_masked: Image.Image
    original_full: Image.Image
    auto_full: Image.Image
    encoded: bytes  # PNG of original_masked, the persisted form


def render_variants(region: TileRegion, factor: int = DEFAULT_RENDER_FACTOR) -> ChunkVariants:
    original_masked, original_full = render_chunk(region.original, factor)
    auto_masked, auto_full = render_chunk(region.mapped, factor)
    logger.debug(
        "Rendered chunk key=%s size=%sx%s factor=%s",
        region.tile_key,
        original_full.width,
        original_full.height,
        factor,
    )
    return ChunkVariants(
        original_masked=original_masked,
        auto_masked=auto_masked,
        original_full=original_full,
        auto_full=auto_full,
        encoded=encode_png(original_masked),
    )


def encode_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def decode_image(data: bytes) -> Image.Image:
    """Decode ``data`` into an RGBA image or raise :class:`DecodeFailure`."""

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            return img.convert("RGBA")
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise DecodeFailure(f"Could not decode image: {exc}") from exc


def png_to_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def base64_to_png(text: str) -> bytes:
    """Decode a base64 tile, accepting an optional ``data:`` URL prefix."""

    payload = text.strip()
    if payload.startswith("data:"):
        _header, _sep, payload = payload.partition(",")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeFailure(f"Invalid base64 tile data: {exc}") from exc


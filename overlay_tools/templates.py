"""Template records and their creation from uploaded images."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np
from PIL import Image

from .errors import MalformedAnchor, SlicingCancelled
from .palette_ops import Palette
from .rendering import png_to_base64, render_chunk, render_variants, sample_blocks
from .slicing import slice_image


logger = logging.getLogger(__name__)

AUTHOR_ID_ALPHABET = "!#$%&'()*+,-./0123456789:;<=>?@ABCDEFGHIJKLMNOPQRSTUVWXYZ[]^_`abcdefghijklmnopqrstuvwxyz{|}~"

ChunkMap = Dict[str, Image.Image]


def number_to_encoded(number: int, alphabet: str = AUTHOR_ID_ALPHABET) -> str:
    """Encode a non-negative integer with a custom digit alphabet."""

    if number < 0:
        raise ValueError("Only non-negative numbers can be encoded")
    base = len(alphabet)
    if number == 0:
        return alphabet[0]
    digits: List[str] = []
    while number > 0:
        number, remainder = divmod(number, base)
        digits.append(alphabet[remainder])
    return "".join(reversed(digits))


def compose_id_key(sort_id: int, author_id: str) -> str:
    return f"{sort_id} {author_id}"


def split_id_key(id_key: str) -> Tuple[int | None, str]:
    """Split ``"0 $Z"`` into ``(0, "$Z")``; a non-numeric sort id gives ``None``."""

    head, _sep, tail = id_key.partition(" ")
    try:
        sort_id = int(head)
    except ValueError:
        sort_id = None
    return sort_id, tail or "0"


@dataclass(frozen=True, slots=True)
class Anchor:
    tile_x: int
    tile_y: int
    pixel_x: int
    pixel_y: int

    @classmethod
    def parse(cls, value: Any) -> "Anchor":
        """Accept an :class:`Anchor`, a 4-sequence, or ``"tx, ty, px, py"``."""

        if isinstance(value, Anchor):
            return value
        if isinstance(value, str):
            parts: Sequence[Any] = [part.strip() for part in value.split(",")]
        elif isinstance(value, Sequence):
            parts = value
        else:
            raise MalformedAnchor(f"Anchor must be four coordinates, got {value!r}")
        if len(parts) != 4:
            raise MalformedAnchor(f"Anchor must be four coordinates, got {value!r}")
        coords: List[int] = []
        for part in parts:
            if isinstance(part, bool):
                raise MalformedAnchor(f"Anchor coordinate is not numeric: {part!r}")
            try:
                number = float(part)
            except (TypeError, ValueError) as exc:
                raise MalformedAnchor(f"Anchor coordinate is not numeric: {part!r}") from exc
            if not number.is_integer() or number < 0:
                raise MalformedAnchor(f"Anchor coordinate must be a non-negative integer: {part!r}")
            coords.append(int(number))
        return cls(*coords)

    def as_tuple(self) -> Tuple[int, int, int, int]:
        return (self.tile_x, self.tile_y, self.pixel_x, self.pixel_y)

    def __str__(self) -> str:
        return ", ".join(str(value) for value in self.as_tuple())


@dataclass(slots=True)
class ColorIndexGrid:
    """One palette index per source pixel of a region, row-major."""

    width: int
    height: int
    indices: np.ndarray

    def value_at(self, x: int, y: int) -> int:
        if 0 <= x < self.width and 0 <= y < self.height:
            return int(self.indices[y, x])
        return 0


@dataclass(slots=True)
class Template:
    display_name: str = "My template"
    sort_id: int = 0
    author_id: str = ""
    id_key: str = ""
    anchor: Anchor | None = None
    tile_size: int = 1000
    pixel_count: int = 0
    enabled: bool = True
    chunks_original_masked: ChunkMap = field(default_factory=dict)
    chunks_auto_masked: ChunkMap = field(default_factory=dict)
    chunks_original_full: ChunkMap = field(default_factory=dict)
    chunks_auto_full: ChunkMap = field(default_factory=dict)
    chunked: ChunkMap = field(default_factory=dict)
    color_index_tiles: Dict[str, ColorIndexGrid] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.id_key:
            self.id_key = compose_id_key(self.sort_id, self.author_id)

    def select_active(self, auto_color: bool) -> None:
        """Point ``chunked`` at the masked map for the given colour mode."""

        if auto_color and self.chunks_auto_masked:
            self.chunked = self.chunks_auto_masked
        elif self.chunks_original_masked:
            self.chunked = self.chunks_original_masked

    def chunk_map(self, auto_color: bool, masked: bool) -> ChunkMap:
        """Return the bitmap set for a colour/zoom combination.

        A template holding only masked bitmaps falls back to the masked map of
        the same colour, then to ``chunked``.
        """

        if auto_color:
            masked_map = self.chunks_auto_masked or self.chunked
            full_map = self.chunks_auto_full or masked_map
        else:
            masked_map = self.chunks_original_masked or self.chunked
            full_map = self.chunks_original_full or masked_map
        return masked_map if masked else full_map

    def keys_for_tile(self, prefix: str) -> List[str]:
        return [key for key in self.chunked if key.startswith(prefix)]


def build_template(
    image: Image.Image,
    name: str,
    anchor: Anchor,
    palette: Palette,
    *,
    tile_size: int = 1000,
    render_factor: int = 3,
    auto_color: bool = False,
    workers: int = 1,
    cancel: threading.Event | None = None,
) -> Tuple[Template, Dict[str, str]]:
    """Slice and render ``image``; return the template and its base64 tiles.

    Nothing is shared with a registry until the caller registers the result,
    so a failure or cancellation leaves no partial chunk maps behind.
    """

    sliced = slice_image(
        image,
        anchor.as_tuple(),
        tile_size,
        palette,
        workers=workers,
        cancel=cancel,
    )
    template = Template(display_name=name, anchor=anchor, tile_size=tile_size)
    template.pixel_count = sliced.pixel_count
    logger.info(
        "Template pixel analysis dimensions=%sx%s pixels=%s",
        sliced.width,
        sliced.height,
        sliced.pixel_count,
    )
    buffers: Dict[str, str] = {}
    for region in sliced.regions:
        if cancel is not None and cancel.is_set():
            raise SlicingCancelled("Template rendering cancelled")
        variants = render_variants(region, render_factor)
        key = region.tile_key
        template.chunks_original_masked[key] = variants.original_masked
        template.chunks_auto_masked[key] = variants.auto_masked
        template.chunks_original_full[key] = variants.original_full
        template.chunks_auto_full[key] = variants.auto_full
        template.color_index_tiles[key] = ColorIndexGrid(region.width, region.height, region.indices)
        buffers[key] = png_to_base64(variants.encoded)
    template.select_active(auto_color)
    return template, buffers


def restore_variants(template: Template, palette: Palette, render_factor: int = 3) -> int:
    """Rebuild the full and palette-mapped chunk maps of an imported template.

    Only the masked original bitmaps are persisted. Each one is sampled back
    to its source buffer, which is then rendered like a freshly sliced
    region. Returns the number of chunks restored.
    """

    restored = 0
    for key, bitmap in template.chunks_original_masked.items():
        original = sample_blocks(bitmap, render_factor)
        mapped = original.copy()
        # sentinel checkerboard cells are translucent and keep their colour
        opaque = original[..., 3] == 255
        if opaque.any():
            mapped[opaque, :3] = palette.nearest_colors(original[..., :3][opaque])
        _masked, original_full = render_chunk(original, render_factor)
        auto_masked, auto_full = render_chunk(mapped, render_factor)
        template.chunks_original_full[key] = original_full
        template.chunks_auto_masked[key] = auto_masked
        template.chunks_auto_full[key] = auto_full
        restored += 1
    logger.debug("Restored %s chunk variant set(s) for template id=%s", restored, template.id_key)
    return restored

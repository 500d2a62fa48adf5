"""Canvas palette and nearest-colour helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

import numpy as np


ColorTuple = Tuple[int, int, int]

TRANSPARENT_NAME = "Transparent"
FALLBACK_INDEX = 1


@dataclass(frozen=True, slots=True)
class PaletteEntry:
    name: str
    rgb: ColorTuple


class PaletteError(ValueError):
    """Raised when palette data cannot be parsed."""


def hex_to_rgb(value: str) -> ColorTuple:
    value = value.strip()
    if value.startswith("#"):
        value = value[1:]
    if len(value) != 6:
        raise PaletteError("Expected hex RGB in the form RRGGBB")
    try:
        r = int(value[0:2], 16)
        g = int(value[2:4], 16)
        b = int(value[4:6], 16)
    except ValueError as exc:
        raise PaletteError(f"Invalid hex colour: {value!r}") from exc
    return (r, g, b)


class Palette:
    """Fixed, ordered set of named colours.

    The entry named ``Transparent`` keeps its slot (index 0 by convention) but
    never takes part in a nearest-colour search. Ties resolve to the entry that
    appears first.
    """

    def __init__(self, entries: Iterable[PaletteEntry]) -> None:
        self.entries: Tuple[PaletteEntry, ...] = tuple(entries)
        self._search_slots = np.array(
            [i for i, entry in enumerate(self.entries) if entry.name != TRANSPARENT_NAME],
            dtype=np.int64,
        )
        self._search_rgb = np.array(
            [self.entries[i].rgb for i in self._search_slots], dtype=np.int32
        ).reshape(-1, 3)
        self._full_rgb = np.array(
            [entry.rgb for entry in self.entries], dtype=np.uint8
        ).reshape(-1, 3)
        self.fallback_index = self.index_of("Black", default=FALLBACK_INDEX)

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[str, Sequence[int]]]) -> "Palette":
        entries: List[PaletteEntry] = []
        for name, rgb in pairs:
            if len(rgb) != 3:
                raise PaletteError(f"Palette entry {name!r} needs three channels")
            entries.append(PaletteEntry(str(name), (int(rgb[0]), int(rgb[1]), int(rgb[2]))))
        return cls(entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def searchable(self) -> bool:
        return self._search_slots.size > 0

    def index_of(self, name: str, *, default: int = -1) -> int:
        for i, entry in enumerate(self.entries):
            if entry.name == name:
                return i
        return default

    def color_at(self, index: int) -> ColorTuple | None:
        if 0 <= index < len(self.entries):
            return self.entries[index].rgb
        return None

    def _nearest_slot(self, r: int, g: int, b: int) -> int | None:
        if not self.searchable:
            return None
        diff = self._search_rgb - np.array((r, g, b), dtype=np.int32)
        dist = np.einsum("ij,ij->i", diff, diff)
        return int(self._search_slots[int(np.argmin(dist))])

    def nearest_color(self, r: int, g: int, b: int) -> ColorTuple:
        slot = self._nearest_slot(r, g, b)
        if slot is None:
            return (r, g, b)
        return self.entries[slot].rgb

    def nearest_index(self, r: int, g: int, b: int) -> int:
        slot = self._nearest_slot(r, g, b)
        return self.fallback_index if slot is None else slot

    def nearest_indices(self, rgb: np.ndarray) -> np.ndarray:
        """Vectorised :meth:`nearest_index` over an ``(..., 3)`` array."""

        flat = np.asarray(rgb, dtype=np.uint8).reshape(-1, 3)
        shape = np.asarray(rgb).shape[:-1]
        if not self.searchable:
            return np.full(shape, self.fallback_index, dtype=np.uint16)
        if flat.shape[0] == 0:
            return np.zeros(shape, dtype=np.uint16)
        # search unique colours only; sprites rarely carry many
        unique, inverse = np.unique(flat, axis=0, return_inverse=True)
        slots = np.empty(unique.shape[0], dtype=np.uint16)
        step = 16_384
        for start in range(0, unique.shape[0], step):
            block = unique[start : start + step].astype(np.int32)
            diff = block[:, None, :] - self._search_rgb[None, :, :]
            dist = np.einsum("ijk,ijk->ij", diff, diff)
            slots[start : start + step] = self._search_slots[np.argmin(dist, axis=1)]
        return slots[inverse.reshape(-1)].reshape(shape)

    def nearest_colors(self, rgb: np.ndarray) -> np.ndarray:
        """Vectorised :meth:`nearest_color`; returns uint8 ``(..., 3)``."""

        source = np.asarray(rgb, dtype=np.uint8)
        if not self.searchable:
            return source.copy()
        return self._full_rgb[self.nearest_indices(source)]


_CANVAS_COLORS: Sequence[Tuple[str, ColorTuple]] = (
    ("Transparent", (0, 0, 0)),
    ("Black", (0, 0, 0)),
    ("Dark Gray", (60, 60, 60)),
    ("Gray", (120, 120, 120)),
    ("Light Gray", (210, 210, 210)),
    ("White", (255, 255, 255)),
    ("Deep Red", (96, 0, 24)),
    ("Red", (237, 28, 36)),
    ("Orange", (255, 127, 39)),
    ("Gold", (246, 170, 9)),
    ("Yellow", (249, 221, 59)),
    ("Light Yellow", (255, 250, 188)),
    ("Dark Green", (14, 185, 104)),
    ("Green", (19, 230, 123)),
    ("Light Green", (135, 255, 94)),
    ("Dark Teal", (12, 129, 110)),
    ("Teal", (16, 174, 166)),
    ("Light Teal", (19, 225, 190)),
    ("Dark Blue", (40, 80, 158)),
    ("Blue", (64, 147, 228)),
    ("Cyan", (96, 247, 242)),
    ("Indigo", (107, 80, 246)),
    ("Light Indigo", (153, 177, 251)),
    ("Dark Purple", (120, 12, 153)),
    ("Purple", (170, 56, 185)),
    ("Light Purple", (224, 159, 249)),
    ("Dark Pink", (203, 0, 122)),
    ("Pink", (236, 31, 128)),
    ("Light Pink", (243, 141, 169)),
    ("Dark Brown", (104, 70, 52)),
    ("Brown", (149, 104, 42)),
    ("Beige", (248, 178, 119)),
    ("Medium Gray", (170, 170, 170)),
    ("Dark Red", (165, 14, 30)),
    ("Light Red", (250, 128, 114)),
    ("Dark Orange", (228, 92, 26)),
    ("Light Tan", (214, 181, 148)),
    ("Dark Goldenrod", (156, 132, 49)),
    ("Goldenrod", (197, 173, 49)),
    ("Light Goldenrod", (232, 212, 95)),
    ("Dark Olive", (74, 107, 58)),
    ("Olive", (90, 148, 74)),
    ("Light Olive", (132, 197, 115)),
    ("Dark Cyan", (15, 121, 159)),
    ("Light Cyan", (187, 250, 242)),
    ("Light Blue", (125, 199, 255)),
    ("Dark Indigo", (77, 49, 184)),
    ("Dark Slate Blue", (74, 66, 132)),
    ("Slate Blue", (122, 113, 196)),
    ("Light Slate Blue", (181, 174, 241)),
    ("Light Brown", (219, 164, 99)),
    ("Dark Beige", (209, 128, 81)),
    ("Light Beige", (255, 197, 165)),
    ("Dark Peach", (155, 82, 73)),
    ("Peach", (209, 128, 120)),
    ("Light Peach", (250, 182, 164)),
    ("Dark Tan", (123, 99, 82)),
    ("Tan", (156, 132, 107)),
    ("Dark Slate", (51, 57, 65)),
    ("Slate", (109, 117, 141)),
    ("Light Slate", (179, 185, 209)),
    ("Dark Stone", (109, 100, 63)),
    ("Stone", (148, 140, 107)),
    ("Light Stone", (205, 197, 158)),
)

DEFAULT_PALETTE = Palette.from_pairs(_CANVAS_COLORS)

"""Bounded cache for composited tiles."""
from __future__ import annotations

from collections import OrderedDict
from typing import Literal

ColorMode = Literal["auto", "orig"]
ZoomMode = Literal["full", "mask"]

COLOR_AUTO: ColorMode = "auto"
COLOR_ORIGINAL: ColorMode = "orig"
ZOOMED_OUT: ZoomMode = "full"
ZOOMED_IN: ZoomMode = "mask"


def cache_key(tile_coord_key: str, color_mode: str, zoom_mode: str, version: int) -> str:
    return f"{tile_coord_key}|{color_mode}|{zoom_mode}|v{version}"


class TileCache:
    """Least-recently-used map of cache key to composited PNG bytes."""

    def __init__(self, max_entries: int = 256) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, bytes]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: str) -> bytes | None:
        data = self._entries.get(key)
        if data is not None:
            self._entries.move_to_end(key)
        return data

    def put(self, key: str, data: bytes) -> None:
        self._entries[key] = data
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

import io

import pytest
from PIL import Image

from overlay_tools.palette_ops import Palette
from overlay_tools.registry import TemplateRegistry
from overlay_tools.settings import OverlaySettings
from overlay_tools.storage import MemoryStore


def _png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def png_bytes():
    return _png_bytes


@pytest.fixture
def solid_png():
    def make(width: int, height: int, color=(255, 0, 0, 255)) -> bytes:
        return _png_bytes(Image.new("RGBA", (width, height), color))

    return make


@pytest.fixture
def small_palette() -> Palette:
    return Palette.from_pairs(
        [
            ("Transparent", (0, 0, 0)),
            ("Black", (0, 0, 0)),
            ("White", (255, 255, 255)),
            ("Red", (255, 0, 0)),
            ("Blue", (0, 0, 255)),
        ]
    )


@pytest.fixture
def settings() -> OverlaySettings:
    return OverlaySettings(tile_size=10, render_factor=3, max_templates=3, status_interval=0.0)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def messages() -> list:
    return []


@pytest.fixture
def registry(settings, small_palette, store, messages) -> TemplateRegistry:
    return TemplateRegistry(settings, palette=small_palette, store=store, status=messages.append)

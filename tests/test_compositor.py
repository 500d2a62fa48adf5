import io

import pytest
from PIL import Image

from overlay_tools import compositor as compositor_module
from overlay_tools.cache import COLOR_AUTO, COLOR_ORIGINAL, ZOOMED_IN, ZOOMED_OUT
from overlay_tools.compositor import TileCompositor
from overlay_tools.registry import TemplateRegistry

RED = (255, 0, 0, 255)
BLUE = (0, 0, 255, 255)


def _open(data: bytes) -> Image.Image:
    return Image.open(io.BytesIO(data)).convert("RGBA")


@pytest.fixture
def base_tile(png_bytes):
    return png_bytes(Image.new("RGBA", (10, 10), (255, 255, 255, 255)))


@pytest.fixture
def encode_calls(monkeypatch):
    calls = []
    real = compositor_module.encode_png

    def counting(image):
        calls.append(image.size)
        return real(image)

    monkeypatch.setattr(compositor_module, "encode_png", counting)
    return calls


@pytest.fixture
def stacked(registry, solid_png):
    bottom, _ = registry.create_template(solid_png(1, 1, RED), "bottom", "0,0,2,3")
    top, _ = registry.create_template(solid_png(1, 1, BLUE), "top", "0,0,2,3")
    return bottom, top


def test_tile_without_templates_is_returned_unchanged(registry, base_tile, encode_calls):
    compositor = TileCompositor(registry)
    assert compositor.composite_tile(base_tile, (5, 5)) is base_tile
    assert len(registry.cache) == 0
    assert encode_calls == []


def test_topmost_template_wins_when_zoomed_in(registry, stacked, base_tile):
    bottom, top = stacked
    compositor = TileCompositor(registry)
    result = _open(compositor.composite_tile(base_tile, (0, 0), ZOOMED_IN, COLOR_ORIGINAL))
    assert result.size == (30, 30)
    assert result.getpixel((7, 10)) == BLUE
    assert result.getpixel((6, 9)) == (255, 255, 255, 255)

    registry.set_enabled(top.id_key, False)
    result = _open(compositor.composite_tile(base_tile, (0, 0), ZOOMED_IN, COLOR_ORIGINAL))
    assert result.getpixel((7, 10)) == RED


def test_zoomed_out_uses_solid_blocks_at_reduced_opacity(registry, solid_png, base_tile):
    registry.create_template(solid_png(1, 1, RED), "only", "0,0,2,3")
    compositor = TileCompositor(registry)
    result = _open(compositor.composite_tile(base_tile, (0, 0), ZOOMED_OUT, COLOR_ORIGINAL))
    for point in ((6, 9), (7, 10), (8, 11)):
        r, g, b, a = result.getpixel(point)
        assert (r, a) == (255, 255)
        assert 150 <= g <= 156 and 150 <= b <= 156
    assert result.getpixel((9, 9)) == (255, 255, 255, 255)


def test_repeat_calls_hit_the_cache(registry, stacked, base_tile, encode_calls):
    compositor = TileCompositor(registry)
    first = compositor.composite_tile(base_tile, (0, 0), ZOOMED_IN, COLOR_AUTO)
    second = compositor.composite_tile(base_tile, (0, 0), ZOOMED_IN, COLOR_AUTO)
    assert first == second
    assert len(encode_calls) == 1
    assert f"0000,0000|auto|mask|v{registry.cache_version}" in registry.cache


def test_state_change_invalidates_cached_tiles(registry, stacked, base_tile, encode_calls):
    bottom, _top = stacked
    compositor = TileCompositor(registry)
    compositor.composite_tile(base_tile, (0, 0), ZOOMED_IN, COLOR_AUTO)
    version = registry.cache_version
    registry.set_enabled(bottom.id_key, True)
    assert registry.cache_version > version
    compositor.composite_tile(base_tile, (0, 0), ZOOMED_IN, COLOR_AUTO)
    assert len(encode_calls) == 2


def test_modes_are_cached_separately(registry, stacked, base_tile, encode_calls):
    compositor = TileCompositor(registry)
    compositor.composite_tile(base_tile, (0, 0), ZOOMED_IN, COLOR_AUTO)
    compositor.composite_tile(base_tile, (0, 0), ZOOMED_OUT, COLOR_AUTO)
    compositor.composite_tile(base_tile, (0, 0), ZOOMED_IN, COLOR_ORIGINAL)
    assert len(encode_calls) == 3
    assert len(registry.cache) == 3


def test_result_is_not_cached_when_invalidated_mid_render(registry, stacked, base_tile, monkeypatch):
    real = compositor_module.encode_png

    def encode_and_invalidate(image):
        registry.bump_version()
        return real(image)

    monkeypatch.setattr(compositor_module, "encode_png", encode_and_invalidate)
    TileCompositor(registry).composite_tile(base_tile, (0, 0), ZOOMED_IN, COLOR_AUTO)
    assert len(registry.cache) == 0


def test_zoom_signal_flips_bump_version(registry):
    compositor = TileCompositor(registry)
    assert compositor.zoom_mode == ZOOMED_OUT
    version = registry.cache_version
    assert compositor.set_zoom_signal(1.0) is True
    assert registry.cache_version == version
    assert compositor.set_zoom_signal(4.0) is False
    assert compositor.zoom_mode == ZOOMED_IN
    assert registry.cache_version == version + 1
    assert compositor.set_zoom_signal(zoom=0.5) is True
    assert registry.cache_version == version + 2
    assert compositor.set_zoom_signal() is True
    assert registry.cache_version == version + 2


def test_default_modes_follow_live_state(registry, stacked, base_tile):
    compositor = TileCompositor(registry)
    compositor.set_zoom_signal(zoom=2.0)
    registry.set_auto_color_live(False)
    compositor.composite_tile(base_tile, (0, 0))
    assert f"0000,0000|orig|mask|v{registry.cache_version}" in registry.cache


def test_global_draw_toggle(registry, stacked, base_tile):
    registry.set_templates_should_be_drawn(False)
    assert TileCompositor(registry).composite_tile(base_tile, (0, 0)) is base_tile


def test_unknown_modes_are_rejected(registry, stacked, base_tile):
    with pytest.raises(ValueError):
        TileCompositor(registry).composite_tile(base_tile, (0, 0), "sideways", COLOR_AUTO)


def test_status_reports_displayed_templates(registry, stacked, base_tile, messages):
    TileCompositor(registry).composite_tile(base_tile, (0, 0), ZOOMED_IN, COLOR_AUTO)
    assert messages[-1] == "Displaying 2 templates.\nTotal pixels: 2"


def test_status_is_throttled(registry, stacked, base_tile, messages):
    now = [100.0]
    registry.settings.status_interval = 10.0
    compositor = TileCompositor(registry, clock=lambda: now[0])
    compositor.composite_tile(base_tile, (0, 0), ZOOMED_IN, COLOR_AUTO)
    count = len(messages)
    compositor.composite_tile(base_tile, (0, 0), ZOOMED_OUT, COLOR_AUTO)
    assert len(messages) == count
    now[0] += 11
    compositor.composite_tile(base_tile, (0, 0), ZOOMED_IN, COLOR_ORIGINAL)
    assert len(messages) == count + 1


def test_pick_palette_index_respects_z_order(registry, stacked):
    _bottom, top = stacked
    compositor = TileCompositor(registry)
    assert compositor.pick_palette_index_at((0, 0), (2, 3)) == 4
    registry.set_enabled(top.id_key, False)
    assert compositor.pick_palette_index_at((0, 0), (2, 3)) == 3
    assert compositor.pick_palette_index_at((0, 0), (3, 3)) == 0
    assert compositor.pick_palette_index_at((1, 0), (2, 3)) == 0


def test_auto_select_only_fires_on_change(registry, stacked):
    selected = []
    compositor = TileCompositor(registry, palette_selector=selected.append)
    assert compositor.maybe_auto_select_color((0, 0), (2, 3)) == 4
    compositor.maybe_auto_select_color((0, 0), (2, 3))
    compositor.maybe_auto_select_color((0, 0), (9, 9))
    assert selected == [4]
    registry.set_auto_color_live(False)
    assert compositor.maybe_auto_select_color((0, 0), (2, 3)) == 0


def test_imported_templates_render_and_pick(registry, stacked, base_tile, settings, small_palette):
    restored = TemplateRegistry(settings, palette=small_palette)
    restored.import_json(registry.export_json())
    compositor = TileCompositor(restored)
    result = _open(compositor.composite_tile(base_tile, (0, 0), ZOOMED_OUT, COLOR_AUTO))
    r, g, b, _a = result.getpixel((7, 10))
    assert b > r
    assert compositor.pick_palette_index_at((0, 0), (2, 3)) == 4


def test_nan_scale_keeps_zoom_state(registry):
    compositor = TileCompositor(registry)
    compositor.set_zoom_signal(4.0)
    version = registry.cache_version
    assert compositor.set_zoom_signal(float("nan")) is False
    assert registry.cache_version == version


def test_reloaded_template_honours_colour_and_zoom_modes(registry, solid_png, base_tile, settings, small_palette):
    registry.create_template(solid_png(1, 1, (250, 100, 20, 255)), "ember", "0,0,2,3")
    restored = TemplateRegistry(settings, palette=small_palette)
    restored.import_json(registry.export_json())
    compositor = TileCompositor(restored)

    auto = _open(compositor.composite_tile(base_tile, (0, 0), ZOOMED_IN, COLOR_AUTO))
    orig = _open(compositor.composite_tile(base_tile, (0, 0), ZOOMED_IN, COLOR_ORIGINAL))
    assert auto.getpixel((7, 10)) == RED
    assert orig.getpixel((7, 10)) == (250, 100, 20, 255)

    solid = _open(compositor.composite_tile(base_tile, (0, 0), ZOOMED_OUT, COLOR_ORIGINAL))
    r, g, _b, a = solid.getpixel((6, 9))
    assert 251 <= r <= 255 and a == 255
    assert 190 <= g <= 196

import json
import os

import pytest
from PIL import Image

from overlay_tools import cli
from overlay_tools.storage import JsonFileStore


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    for name in list(os.environ):
        if name.startswith("OVERLAYTOOLS_"):
            monkeypatch.delenv(name)
    image = tmp_path / "heart.png"
    Image.new("RGBA", (2, 1), (237, 28, 36, 255)).save(image)
    tile = tmp_path / "tile.png"
    Image.new("RGBA", (10, 10), (255, 255, 255, 255)).save(tile)
    return tmp_path


def _run(workspace, *argv):
    store = workspace / "templates.json"
    return cli.main(["--store", str(store), "--tile-size", "10", *argv])


def _create(workspace):
    return _run(workspace, "create", str(workspace / "heart.png"), "--coords", "0,0,2,3")


def test_create_persists_template(workspace, capsys):
    assert _create(workspace) == 0
    out = capsys.readouterr().out
    assert "[OK] 0 ! -> 1 tile chunk(s)" in out
    assert "Template created at 0, 0, 2, 3! Total pixels: 2" in out
    document = json.loads(JsonFileStore(workspace / "templates.json").get("bmTemplates"))
    assert document["whoami"] == "BlueMarble"
    assert list(document["templates"]["0 !"]["tiles"]) == ["0000,0000,002,003"]
    assert document["templates"]["0 !"]["name"] == "heart"


def test_list_enable_disable(workspace, capsys):
    _create(workspace)
    capsys.readouterr()
    assert _run(workspace, "list") == 0
    assert "[on ] '0 !' heart" in capsys.readouterr().out
    assert _run(workspace, "disable", "0 !") == 0
    _run(workspace, "list")
    assert "[off] '0 !' heart" in capsys.readouterr().out
    assert _run(workspace, "enable", "0 !") == 0


def test_list_empty_store(workspace, capsys):
    assert _run(workspace, "list") == 0
    assert "No templates stored." in capsys.readouterr().out


def test_render_writes_upscaled_tile(workspace):
    _create(workspace)
    out = workspace / "out" / "tile.png"
    assert _run(workspace, "render", str(workspace / "tile.png"), "--tile", "0", "0", "--out", str(out)) == 0
    with Image.open(out) as result:
        assert result.size == (30, 30)
        assert result.convert("RGBA").getpixel((7, 10)) == (237, 28, 36, 255)


def test_pick_reports_palette_colour(workspace, capsys):
    _create(workspace)
    capsys.readouterr()
    assert _run(workspace, "pick", "--tile", "0", "0", "--pixel", "3", "3") == 0
    assert capsys.readouterr().out.strip().splitlines()[-1] == "7 Red"
    _run(workspace, "pick", "--tile", "0", "0", "--pixel", "0", "0")
    assert capsys.readouterr().out.strip().splitlines()[-1] == "0 -"


def test_unknown_template_fails(workspace, capsys):
    assert _run(workspace, "remove", "9 !") == 1
    assert "[FAIL] Unknown template '9 !'" in capsys.readouterr().out


def test_bad_coordinates_fail(workspace, capsys):
    assert _run(workspace, "create", str(workspace / "heart.png"), "--coords", "0,0,-1,3") == 1
    assert "[FAIL]" in capsys.readouterr().out


def test_invalid_environment_is_a_usage_error(workspace, monkeypatch):
    monkeypatch.setenv("OVERLAYTOOLS_TILE_SIZE", "huge")
    with pytest.raises(SystemExit):
        cli.main(["--store", str(workspace / "templates.json"), "list"])


def test_render_colour_modes_differ_after_reload(workspace):
    Image.new("RGBA", (1, 1), (250, 100, 20, 255)).save(workspace / "ember.png")
    assert _run(workspace, "create", str(workspace / "ember.png"), "--coords", "0,0,2,3", "--auto-color") == 0
    tile = str(workspace / "tile.png")
    auto_out = workspace / "auto.png"
    orig_out = workspace / "orig.png"
    assert _run(workspace, "render", tile, "--tile", "0", "0", "--out", str(auto_out)) == 0
    assert _run(workspace, "render", tile, "--tile", "0", "0", "--out", str(orig_out), "--original") == 0
    with Image.open(auto_out) as auto, Image.open(orig_out) as orig:
        assert orig.convert("RGBA").getpixel((7, 10)) == (250, 100, 20, 255)
        assert auto.convert("RGBA").getpixel((7, 10)) != (250, 100, 20, 255)


def test_zoomed_out_render_fills_whole_blocks_after_reload(workspace):
    _create(workspace)
    out = workspace / "solid.png"
    assert _run(workspace, "render", str(workspace / "tile.png"), "--tile", "0", "0", "--out", str(out), "--zoomed-out") == 0
    with Image.open(out) as result:
        r, g, _b, _a = result.convert("RGBA").getpixel((6, 9))
        assert r > g

"""Command-line interface for managing and rendering overlay templates."""
from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import List

from .cache import COLOR_AUTO, COLOR_ORIGINAL, ZOOMED_IN, ZOOMED_OUT
from .compositor import TileCompositor
from .errors import OverlayError
from .registry import TemplateRegistry
from .settings import OverlaySettings
from .storage import JsonFileStore


logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    root_logger = logging.getLogger()
    if os.environ.get("OVERLAYTOOLS_DEBUG"):
        log_path = Path(os.environ.get("OVERLAYTOOLS_DEBUG_LOG", "overlay_tools_debug.log"))
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        root_logger.setLevel(logging.DEBUG)
    else:
        handler = logging.StreamHandler()
        root_logger.setLevel(logging.INFO if verbose else logging.WARNING)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root_logger.handlers = [h for h in root_logger.handlers if type(h) is not type(handler)]
    root_logger.addHandler(handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Tile-aligned template overlays")
    parser.add_argument(
        "--store",
        type=Path,
        default=Path("overlay_templates.json"),
        help="JSON file holding the persisted templates",
    )
    parser.add_argument("--user-id", type=int, default=0, help="Numeric author id for new templates")
    parser.add_argument("--tile-size", type=int, default=None, help="Canvas tile edge in pixels")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress messages")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Slice an image into a new template")
    create.add_argument("image", type=Path)
    create.add_argument("--name", default=None, help="Display name (defaults to the file stem)")
    create.add_argument(
        "--coords",
        required=True,
        help="Top-left anchor as 'tileX,tileY,pixelX,pixelY'",
    )
    create.add_argument("--auto-color", action="store_true", help="Prefer palette-mapped colours")

    sub.add_parser("list", help="List stored templates")

    for name, help_text in (
        ("enable", "Show a template"),
        ("disable", "Hide a template"),
        ("remove", "Delete a template"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("id_key", help="Template id, e.g. '0 !'")

    render = sub.add_parser("render", help="Draw templates onto a tile image")
    render.add_argument("tile_image", type=Path)
    render.add_argument("--tile", type=int, nargs=2, required=True, metavar=("X", "Y"))
    render.add_argument("--out", type=Path, required=True)
    render.add_argument("--zoomed-out", action="store_true", help="Solid, translucent preview")
    render.add_argument("--original", action="store_true", help="Use original instead of palette colours")

    pick = sub.add_parser("pick", help="Report the palette index under a pixel")
    pick.add_argument("--tile", type=int, nargs=2, required=True, metavar=("X", "Y"))
    pick.add_argument("--pixel", type=int, nargs=2, required=True, metavar=("X", "Y"))
    return parser


def _open_registry(args: argparse.Namespace) -> TemplateRegistry:
    overrides = {}
    if args.tile_size is not None:
        overrides["tile_size"] = args.tile_size
    settings = OverlaySettings.from_env(**overrides)
    registry = TemplateRegistry(
        settings,
        store=JsonFileStore(args.store),
        status=print,
        user_id=args.user_id,
    )
    registry.load()
    return registry


def _run(args: argparse.Namespace, registry: TemplateRegistry) -> int:
    if args.command == "create":
        data = args.image.read_bytes()
        template, record = registry.create_template(
            data,
            args.name or args.image.stem,
            args.coords,
            auto_color=args.auto_color,
        )
        print(f"[OK] {template.id_key} -> {len(record['tiles'])} tile chunk(s)")
        return 0

    if args.command == "list":
        summaries = registry.summaries()
        if not summaries:
            print("No templates stored.")
        for summary in summaries:
            state = "on " if summary.enabled else "off"
            print(f"[{state}] {summary.id_key!r} {summary.name}")
        return 0

    if args.command in {"enable", "disable"}:
        if not registry.set_enabled(args.id_key, args.command == "enable"):
            print(f"[FAIL] Unknown template {args.id_key!r}")
            return 1
        print(f"[OK] {args.id_key} {args.command}d")
        return 0

    if args.command == "remove":
        if not registry.remove(args.id_key):
            print(f"[FAIL] Unknown template {args.id_key!r}")
            return 1
        print(f"[OK] {args.id_key} removed")
        return 0

    compositor = TileCompositor(registry)
    if args.command == "render":
        base = args.tile_image.read_bytes()
        result = compositor.composite_tile(
            base,
            tuple(args.tile),
            zoom_mode=ZOOMED_OUT if args.zoomed_out else ZOOMED_IN,
            color_mode=COLOR_ORIGINAL if args.original else COLOR_AUTO,
        )
        args.out.parent.mkdir(parents=True, exist_ok=True)
        args.out.write_bytes(result)
        print(f"[OK] {args.tile_image.name} -> {args.out}")
        return 0

    index = compositor.pick_palette_index_at(tuple(args.tile), tuple(args.pixel))
    color = registry.palette.entries[index] if 0 < index < len(registry.palette) else None
    print(f"{index} {color.name if color else '-'}")
    return 0


def main(argv: List[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    try:
        registry = _open_registry(args)
    except ValueError as exc:
        parser.error(str(exc))

    try:
        return _run(args, registry)
    except (OverlayError, OSError) as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"[FAIL] {exc}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

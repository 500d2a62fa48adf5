"""Ordered template collection with persistence side effects."""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Tuple

from .cache import TileCache
from .errors import (
    CapacityExceeded,
    DecodeFailure,
    DuplicateTemplate,
    MalformedAnchor,
    PersistenceFailure,
)
from .palette_ops import DEFAULT_PALETTE, Palette
from .rendering import base64_to_png, decode_image
from .settings import OverlaySettings
from .slicing import parse_tile_key
from .storage import KeyValueStore
from .templates import (
    Anchor,
    Template,
    build_template,
    compose_id_key,
    number_to_encoded,
    restore_variants,
    split_id_key,
)


logger = logging.getLogger(__name__)

LEGACY_WHOAMI = "BlueMarble"

StatusSink = Callable[[str], None]


@dataclass(slots=True)
class TemplateSummary:
    id_key: str
    name: str
    enabled: bool


def _log_status(message: str) -> None:
    logger.info("%s", message)


class TemplateRegistry:
    """Owns the templates, the cache version and the composited-tile cache.

    Every change that alters what a tile looks like goes through
    :meth:`bump_version`, which also empties the cache. Writes to ``store``
    happen after the in-memory change and never roll it back.
    """

    def __init__(
        self,
        settings: OverlaySettings | None = None,
        *,
        palette: Palette | None = None,
        store: KeyValueStore | None = None,
        status: StatusSink | None = None,
        user_id: int = 0,
        auto_color_live: bool = True,
    ) -> None:
        self.settings = settings or OverlaySettings()
        self.palette = palette or DEFAULT_PALETTE
        self.store = store
        self.status = status or _log_status
        self.user_id = user_id
        self.auto_color_live = auto_color_live
        self.templates_should_be_drawn = True
        self.templates: List[Template] = []
        self.cache = TileCache(self.settings.cache_size)
        self.cache_version = 0
        self.lock = threading.RLock()
        self._document: Dict[str, Any] = self._new_document()

    def _new_document(self) -> Dict[str, Any]:
        return {
            "whoami": self.settings.whoami,
            "scriptVersion": self.settings.script_version,
            "schemaVersion": self.settings.schema_version,
            "templates": {},
        }

    def __len__(self) -> int:
        return len(self.templates)

    @property
    def max_templates(self) -> int:
        return self.settings.max_templates

    @property
    def author_id(self) -> str:
        return number_to_encoded(self.user_id)

    def bump_version(self) -> int:
        with self.lock:
            self.cache_version += 1
            self.cache.clear()
            return self.cache_version

    def get(self, id_key: str) -> Template | None:
        for template in self.templates:
            if template.id_key == id_key:
                return template
        return None

    def enabled_sorted(self) -> List[Template]:
        """Enabled templates, lowest ``sort_id`` (drawn first) to highest."""
        with self.lock:
            enabled = [template for template in self.templates if template.enabled]
        return sorted(enabled, key=lambda template: template.sort_id)

    def next_sort_id(self) -> int:
        used = {template.sort_id for template in self.templates}
        sort_id = 0
        while sort_id in used:
            sort_id += 1
        return sort_id

    def _check_capacity(self) -> None:
        if len(self.templates) >= self.max_templates:
            raise CapacityExceeded(self.max_templates)

    def add(self, template: Template, tiles: Dict[str, str] | None = None) -> Template:
        """Register ``template`` under the lowest free sort id.

        ``tiles`` are the base64 PNG buffers written to the persisted record.
        """

        with self.lock:
            self._check_capacity()
            template.sort_id = self.next_sort_id()
            template.author_id = template.author_id or self.author_id
            template.id_key = compose_id_key(template.sort_id, template.author_id)
            if self.get(template.id_key) is not None:
                raise DuplicateTemplate(f"Template {template.id_key!r} already exists")
            self.templates.append(template)
            self._document["templates"][template.id_key] = {
                "name": template.display_name,
                "coords": str(template.anchor) if template.anchor is not None else "",
                "enabled": template.enabled,
                "tiles": dict(tiles or {}),
            }
            self.bump_version()
        logger.info("Added template id=%s name=%s", template.id_key, template.display_name)
        self._store_templates()
        return template

    def create_template(
        self,
        image_bytes: bytes,
        name: str,
        anchor: Any,
        auto_color: bool = False,
        *,
        cancel: threading.Event | None = None,
    ) -> Tuple[Template, Dict[str, Any]]:
        """Decode, slice and register an uploaded image.

        Returns the template and its persisted record. Anchor and capacity are
        checked before any decoding or slicing work.
        """

        parsed = Anchor.parse(anchor)
        with self.lock:
            self._check_capacity()
        self.status(f"Creating template at {parsed}...")
        image = decode_image(image_bytes)
        template, tiles = build_template(
            image,
            name,
            parsed,
            self.palette,
            tile_size=self.settings.tile_size,
            render_factor=self.settings.render_factor,
            auto_color=auto_color or self.auto_color_live,
            workers=self.settings.workers,
            cancel=cancel,
        )
        self.add(template, tiles)
        self.status(f"Template created at {parsed}! Total pixels: {template.pixel_count:,}")
        with self.lock:
            record = json.loads(json.dumps(self._document["templates"][template.id_key]))
        return template, record

    def remove(self, id_key: str) -> bool:
        with self.lock:
            template = self.get(id_key)
            if template is None:
                return False
            self.templates.remove(template)
            self._document["templates"].pop(id_key, None)
            self.bump_version()
        logger.info("Removed template id=%s", id_key)
        self._store_templates()
        return True

    def set_enabled(self, id_key: str, enabled: bool) -> bool:
        """Show or hide a template; the version is bumped even if unchanged."""

        with self.lock:
            template = self.get(id_key)
            if template is None:
                return False
            template.enabled = bool(enabled)
            record = self._document["templates"].get(id_key)
            if record is not None:
                record["enabled"] = template.enabled
            self.bump_version()
        logger.debug("Template id=%s enabled=%s", id_key, template.enabled)
        self._store_templates()
        return True

    def set_auto_color_live(self, value: bool) -> None:
        with self.lock:
            self.auto_color_live = bool(value)
            for template in self.templates:
                template.select_active(self.auto_color_live)

    def set_templates_should_be_drawn(self, value: bool) -> None:
        self.templates_should_be_drawn = bool(value)

    def summaries(self) -> List[TemplateSummary]:
        return [
            TemplateSummary(id_key=template.id_key, name=template.display_name or "Template", enabled=template.enabled)
            for template in self.templates
        ]

    def to_json(self) -> Dict[str, Any]:
        with self.lock:
            return json.loads(json.dumps(self._document))

    def export_json(self) -> str:
        with self.lock:
            return json.dumps(self._document)

    def _store_templates(self) -> None:
        if self.store is None:
            return
        try:
            self.store.set(self.settings.storage_key, self.export_json())
        except (OSError, PersistenceFailure) as exc:
            logger.warning("Failed to persist templates key=%s error=%s", self.settings.storage_key, exc)
            self.status(f"Failed to save templates: {exc}")
            if self.settings.persistence_policy == "raise":
                raise PersistenceFailure(f"Failed to save templates: {exc}") from exc

    def load(self) -> int:
        """Import the collection persisted in ``store``; return templates added."""

        if self.store is None:
            return 0
        raw = self.store.get(self.settings.storage_key)
        if not raw:
            return 0
        return self.import_json(raw)

    def _accepts(self, payload: Any) -> bool:
        if not isinstance(payload, dict):
            return False
        whoami = payload.get("whoami")
        if whoami not in {LEGACY_WHOAMI, self.settings.whoami}:
            return False
        return isinstance(payload.get("templates"), dict)

    def _decode_record(self, id_key: str, record: Dict[str, Any]) -> Template:
        sort_id, author_id = split_id_key(id_key)
        tiles = record.get("tiles") or {}
        if not isinstance(tiles, dict):
            raise DecodeFailure("tiles must be an object")
        bitmaps = {}
        for key, encoded in tiles.items():
            try:
                parse_tile_key(key)
            except ValueError as exc:
                raise DecodeFailure(str(exc)) from exc
            if not isinstance(encoded, str):
                raise DecodeFailure(f"Tile {key!r} is not a base64 string")
            bitmaps[key] = decode_image(base64_to_png(encoded))
        anchor = None
        coords = record.get("coords")
        if coords:
            try:
                anchor = Anchor.parse(coords)
            except MalformedAnchor:
                logger.debug("Ignoring malformed coords id=%s coords=%r", id_key, coords)
        factor = self.settings.render_factor
        template = Template(
            display_name=str(record.get("name") or f"Template {sort_id if sort_id is not None else ''}".strip()),
            sort_id=sort_id if sort_id is not None else len(self.templates),
            author_id=author_id,
            id_key=id_key,
            anchor=anchor,
            tile_size=self.settings.tile_size,
            enabled=record.get("enabled") is not False,
        )
        template.chunks_original_masked = bitmaps
        template.chunked = bitmaps
        template.pixel_count = sum(
            round(bitmap.width / factor) * round(bitmap.height / factor) for bitmap in bitmaps.values()
        )
        restore_variants(template, self.palette, factor)
        template.select_active(self.auto_color_live)
        return template

    def import_json(self, payload: Any) -> int:
        """Add templates from a persisted collection; return how many were added.

        Payloads with an unexpected ``whoami`` or shape are ignored whole. A
        template whose tiles fail to decode is skipped, never half-registered.
        """

        if isinstance(payload, (str, bytes)):
            try:
                payload = json.loads(payload)
            except ValueError as exc:
                logger.warning("Ignoring template import: invalid JSON (%s)", exc)
                return 0
        if not self._accepts(payload):
            logger.warning("Ignoring template import with unknown shape")
            return 0

        imported = 0
        with self.lock:
            for id_key, record in payload["templates"].items():
                if not isinstance(record, dict):
                    continue
                if len(self.templates) >= self.max_templates:
                    logger.warning("Template limit %s reached; skipping remaining imports", self.max_templates)
                    break
                if self.get(id_key) is not None:
                    logger.debug("Skipping duplicate template id=%s", id_key)
                    continue
                try:
                    template = self._decode_record(str(id_key), record)
                except DecodeFailure as exc:
                    logger.warning("Skipping template id=%s: %s", id_key, exc)
                    continue
                self.templates.append(template)
                self._document["templates"][template.id_key] = dict(record)
                imported += 1
            if imported:
                self.bump_version()
        logger.info("Imported %s template(s)", imported)
        return imported

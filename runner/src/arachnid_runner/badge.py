from __future__ import annotations

"""Mission badge compositor.

A badge is three layers on a fixed canvas: the mission base color, the mission
background art, and the filled SVG template (username, timestamp, rank, palette,
progress dots, barcode, inlined profile art). Asset failures degrade to a
transparent placeholder; template failures are hard errors.
"""

import base64
import html
import io
import json
import logging
import random
import re
import zlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

import yaml
from jsonschema import Draft202012Validator
from PIL import Image

from .errors import BadgeRenderError, BadgeTemplateError
from .missions import BADGE_RANKS
from .paths import assets_dir
from .rules import mission_id_for_number


PLACEHOLDER_PATTERN = re.compile(r"\{\{([A-Z0-9_]+)\}\}")
COLOR_PATTERN = re.compile(r"^#[0-9a-fA-F]{6}$")
FILENAME_HANDLE_PATTERN = re.compile(r"[^a-z0-9._-]+", re.IGNORECASE)
DEFAULT_HANDLE = "agent"
FILENAME_PREFIX = "arachnid_mission-complete"
BARCODE_WIDTH = 600
BARCODE_HEIGHT = 96
MIME_TYPES = {".svg": "image/svg+xml", ".png": "image/png", ".jpg": "image/jpeg", ".jpeg": "image/jpeg"}

logger = logging.getLogger(__name__)


class VarKind(str, Enum):
    TEXT = "text"
    TRUSTED = "trusted"


@dataclass(frozen=True)
class TemplateVar:
    value: str
    kind: VarKind = VarKind.TEXT

    def render(self) -> str:
        if self.kind is VarKind.TEXT:
            return html.escape(self.value, quote=True)
        return self.value


def text_var(value: str) -> TemplateVar:
    return TemplateVar(value, VarKind.TEXT)


def number_var(value: int) -> TemplateVar:
    if isinstance(value, bool) or not isinstance(value, int):
        raise BadgeTemplateError(f"Expected an integer template value, got {value!r}")
    return TemplateVar(str(value), VarKind.TRUSTED)


def color_var(value: str) -> TemplateVar:
    if not COLOR_PATTERN.match(value):
        raise BadgeTemplateError(f"Invalid palette color: {value!r}")
    return TemplateVar(value, VarKind.TRUSTED)


def markup_var(value: str) -> TemplateVar:
    """Generated markup or data URIs; inserted verbatim."""

    return TemplateVar(value, VarKind.TRUSTED)


def fill_template(template: str, variables: dict[str, TemplateVar]) -> str:
    """Fill every `{{KEY}}` of the template in one pass.

    Substituted values are never rescanned, so user text that looks like a
    placeholder is rendered literally. A template key without a variable is an error.
    """

    missing = sorted({key for key in PLACEHOLDER_PATTERN.findall(template) if key not in variables})
    if missing:
        names = ", ".join(f"{{{{{key}}}}}" for key in missing)
        logger.warning("Badge template left unfilled placeholders: %s", names)
        raise BadgeTemplateError(f"Unfilled template placeholders: {names}")
    return PLACEHOLDER_PATTERN.sub(lambda match: variables[match.group(1)].render(), template)


@dataclass(frozen=True)
class MissionArt:
    number: int
    background: Path
    base_color: str
    palette: dict[str, str]


@dataclass(frozen=True)
class BadgeManifest:
    root: Path
    template_path: Path
    template_version: str
    width: int
    height: int
    default_profile: Path
    profiles: dict[str, Path]
    missions: dict[int, MissionArt]


def normalize_profile_key(value: str | None) -> str:
    """Lower-case, leading `@`s removed, all whitespace removed."""

    return re.sub(r"\s+", "", (value or "").strip().lstrip("@").lower())


def _schema_path() -> Path:
    return assets_dir() / "badge_assets.schema.json"


def _load_schema() -> dict[str, Any]:
    path = _schema_path()
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ValueError(f"Badge manifest schema is unreadable: {path}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Badge manifest schema must be a JSON object: {path}")
    return payload


def validate_manifest_payload(payload: Any) -> None:
    errors = sorted(Draft202012Validator(_load_schema()).iter_errors(payload), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        where = ".".join(str(part) for part in first.path) or "<root>"
        raise ValueError(f"Badge manifest validation failed at {where}: {first.message}")


def load_manifest(path: Path | None = None) -> BadgeManifest:
    """Load and schema-validate the badge asset manifest; asset paths resolve beside it."""

    manifest_path = path or assets_dir() / "badge_assets.yaml"
    try:
        payload = yaml.safe_load(manifest_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ValueError(f"Badge manifest is unreadable: {manifest_path}") from exc
    validate_manifest_payload(payload)

    root = manifest_path.parent
    missions: dict[int, MissionArt] = {}
    for entry in payload["missions"]:
        number = entry["number"]
        if number in missions:
            raise ValueError(f"Duplicate mission number in badge manifest: {number}")
        missions[number] = MissionArt(
            number=number,
            background=root / entry["background"],
            base_color=entry["base_color"],
            palette=dict(entry["palette"]),
        )
    return BadgeManifest(
        root=root,
        template_path=root / payload["template"]["path"],
        template_version=str(payload["template"]["version"]),
        width=payload["canvas"]["width"],
        height=payload["canvas"]["height"],
        default_profile=root / payload["default_profile"],
        profiles={normalize_profile_key(key): root / value for key, value in payload["profiles"].items()},
        missions=missions,
    )


class TemplateCache:
    """Holds the template text for one (path, version); reads the file at most once until invalidated."""

    def __init__(self, path: Path, version: str) -> None:
        self.path = path
        self.version = version
        self._text: str | None = None

    def get(self) -> str:
        if self._text is None:
            try:
                self._text = self.path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                raise BadgeTemplateError(f"Unable to load badge template {self.path.name}") from exc
        return self._text

    def invalidate(self) -> None:
        self._text = None


@dataclass(frozen=True)
class Asset:
    path: Path
    mime: str
    data: bytes

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime};base64,{base64.b64encode(self.data).decode('ascii')}"


def _check_asset(path: Path, mime: str, data: bytes) -> None:
    if mime == "image/svg+xml":
        if b"<svg" not in data[:4096]:
            raise ValueError(f"{path.name} is not an SVG document")
        return
    with Image.open(io.BytesIO(data)) as image:
        image.verify()


class AssetCache:
    """Verified asset bytes keyed by path. Failed loads are not cached."""

    def __init__(self) -> None:
        self._items: dict[Path, Asset] = {}

    def load(self, path: Path) -> Asset:
        cached = self._items.get(path)
        if cached is not None:
            return cached
        mime = MIME_TYPES.get(path.suffix.lower())
        if mime is None:
            raise ValueError(f"Unsupported asset type: {path.name}")
        data = path.read_bytes()
        try:
            _check_asset(path, mime, data)
        except (OSError, SyntaxError) as exc:
            raise ValueError(f"{path.name} is not a readable image") from exc
        asset = Asset(path=path, mime=mime, data=data)
        self._items[path] = asset
        return asset

    def invalidate(self) -> None:
        self._items.clear()


def transparent_placeholder(width: int = 1, height: int = 1) -> Image.Image:
    return Image.new("RGBA", (width, height), (0, 0, 0, 0))


def placeholder_data_uri() -> str:
    buffer = io.BytesIO()
    transparent_placeholder().save(buffer, format="PNG")
    return f"data:image/png;base64,{base64.b64encode(buffer.getvalue()).decode('ascii')}"


class Rasterizer(Protocol):
    def render(self, svg: str, width: int, height: int) -> Image.Image: ...


class CairoSvgRasterizer:
    """SVG → RGBA image through CairoSVG."""

    def render(self, svg: str, width: int, height: int) -> Image.Image:
        import cairosvg

        png = cairosvg.svg2png(bytestring=svg.encode("utf-8"), output_width=width, output_height=height)
        with Image.open(io.BytesIO(png)) as image:
            return image.convert("RGBA")


def coerce_timestamp(value: datetime | str | None) -> datetime:
    """Accept a datetime or ISO string; anything unparseable becomes now (UTC)."""

    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Ignoring unparseable badge timestamp %r", value)
    return datetime.now(tz=UTC)


def display_timestamp(value: datetime) -> str:
    """`M/D/YYYY, h:mm:ss AM` with no zero padding on month, day, or hour."""

    hour = value.hour % 12 or 12
    meridiem = "AM" if value.hour < 12 else "PM"
    return f"{value.month}/{value.day}/{value.year}, {hour}:{value.minute:02d}:{value.second:02d} {meridiem}"


def filename_timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%d_%H%M%S")


def clean_handle(handle: str | None) -> str:
    return (handle or "").strip().lstrip("@").strip()


def badge_filename(handle: str | None, when: datetime) -> str:
    safe = FILENAME_HANDLE_PATTERN.sub("-", clean_handle(handle) or DEFAULT_HANDLE).strip("-")
    return f"{FILENAME_PREFIX}_{safe or DEFAULT_HANDLE}_{filename_timestamp(when)}.png"


def barcode_label(mission_number: int, display_ts: str) -> str:
    return f"MISSION-{mission_number}|{display_ts}"


def barcode_markup(label: str, *, width: int = BARCODE_WIDTH, height: int = BARCODE_HEIGHT) -> str:
    """Deterministic bar pattern: CRC-32 of the label seeds the PRNG."""

    rng = random.Random(zlib.crc32(label.encode("utf-8")))
    bars: list[str] = []
    x = 0
    while True:
        bar_width = rng.randint(2, 9)
        if x + bar_width > width:
            break
        bars.append(f'<rect x="{x}" y="0" width="{bar_width}" height="{height}"/>')
        x += bar_width + rng.randint(2, 7)
    return "\n".join(bars)


@dataclass(frozen=True)
class BadgeRequest:
    token: str
    mission_number: int
    handle: str | None = None
    rank: str | None = None
    timestamp: datetime | str | None = None


@dataclass
class RenderedBadge:
    png: bytes
    filename: str
    svg: str
    fallbacks: list[str] = field(default_factory=list)
    template_version: str = ""


@dataclass
class ComposedBadge:
    svg: str
    mission: MissionArt
    when: datetime
    fallbacks: list[str]


class BadgeCompositor:
    def __init__(
        self,
        manifest: BadgeManifest,
        *,
        rasterizer: Rasterizer | None = None,
        template_cache: TemplateCache | None = None,
        asset_cache: AssetCache | None = None,
    ) -> None:
        self.manifest = manifest
        self.rasterizer = rasterizer or CairoSvgRasterizer()
        self.template_cache = template_cache or TemplateCache(manifest.template_path, manifest.template_version)
        self.asset_cache = asset_cache or AssetCache()

    @classmethod
    def from_manifest_path(cls, path: Path | None = None, **kwargs: Any) -> "BadgeCompositor":
        return cls(load_manifest(path), **kwargs)

    def invalidate(self) -> None:
        self.template_cache.invalidate()
        self.asset_cache.invalidate()

    def resolve_profile(self, token: str, handle: str | None = None) -> Path:
        for candidate in (token, handle):
            key = normalize_profile_key(candidate)
            if key and key in self.manifest.profiles:
                return self.manifest.profiles[key]
        logger.warning("No profile art for %r; using the default profile", normalize_profile_key(token))
        return self.manifest.default_profile

    def _profile_uri(self, path: Path, fallbacks: list[str]) -> str:
        try:
            return self.asset_cache.load(path).data_uri
        except (OSError, ValueError) as exc:
            logger.warning("Profile asset %s unavailable (%s); using a transparent placeholder", path.name, exc)
            fallbacks.append(f"profile:{path.name}")
            return placeholder_data_uri()

    def _mission_art(self, mission_number: int) -> MissionArt:
        mission_id_for_number(mission_number)
        art = self.manifest.missions.get(mission_number)
        if art is None:
            raise BadgeTemplateError(f"No art configured for mission {mission_number}")
        return art

    def compose(self, request: BadgeRequest) -> ComposedBadge:
        """Build the filled template SVG without rasterizing it."""

        art = self._mission_art(request.mission_number)
        when = coerce_timestamp(request.timestamp)
        display_ts = display_timestamp(when)
        rank = (request.rank or "").strip() or BADGE_RANKS[mission_id_for_number(request.mission_number)]
        handle = clean_handle(request.handle) or clean_handle(request.token) or DEFAULT_HANDLE
        fallbacks: list[str] = []
        profile_uri = self._profile_uri(self.resolve_profile(request.token, request.handle), fallbacks)

        palette = art.palette
        variables = {
            "USERNAME": text_var(f"@{handle}"),
            "TIMESTAMP": text_var(display_ts),
            "RANK": text_var(rank),
            "MISSION_NUMBER": number_var(request.mission_number),
            "ACCENT_COLOR": color_var(palette["accent"]),
            "TEXT_COLOR": color_var(palette["text"]),
            "MUTED_COLOR": color_var(palette["muted"]),
            "BARCODE": markup_var(barcode_markup(barcode_label(request.mission_number, display_ts))),
            "PROFILE_IMAGE": markup_var(profile_uri),
        }
        for index in range(1, 4):
            dot = palette["dot_on"] if index <= request.mission_number else palette["dot_off"]
            variables[f"DOT_{index}"] = color_var(dot)

        svg = fill_template(self.template_cache.get(), variables)
        return ComposedBadge(svg=svg, mission=art, when=when, fallbacks=fallbacks)

    def _background_layer(self, art: MissionArt, fallbacks: list[str]) -> Image.Image:
        size = (self.manifest.width, self.manifest.height)
        try:
            asset = self.asset_cache.load(art.background)
            if asset.mime == "image/svg+xml":
                layer = self.rasterizer.render(asset.data.decode("utf-8"), *size)
            else:
                with Image.open(io.BytesIO(asset.data)) as image:
                    layer = image.convert("RGBA")
        except Exception as exc:  # noqa: BLE001
            logger.warning("Background %s unavailable (%s); using a transparent layer", art.background.name, exc)
            fallbacks.append(f"background:{art.background.name}")
            return transparent_placeholder(*size)
        layer = layer.convert("RGBA")
        return layer if layer.size == size else layer.resize(size)

    def _template_layer(self, svg: str) -> Image.Image:
        size = (self.manifest.width, self.manifest.height)
        try:
            layer = self.rasterizer.render(svg, *size)
        except Exception as exc:  # noqa: BLE001
            raise BadgeRenderError("Unable to rasterize badge template") from exc
        return layer.convert("RGBA") if layer.size == size else layer.convert("RGBA").resize(size)

    def render(self, request: BadgeRequest) -> RenderedBadge:
        composed = self.compose(request)
        fallbacks = list(composed.fallbacks)

        canvas = Image.new("RGBA", (self.manifest.width, self.manifest.height), composed.mission.base_color)
        canvas = Image.alpha_composite(canvas, self._background_layer(composed.mission, fallbacks))
        canvas = Image.alpha_composite(canvas, self._template_layer(composed.svg))

        buffer = io.BytesIO()
        try:
            canvas.save(buffer, format="PNG", optimize=True)
        except OSError as exc:
            raise BadgeRenderError("Unable to export badge PNG") from exc
        return RenderedBadge(
            png=buffer.getvalue(),
            filename=badge_filename(request.handle or request.token, composed.when),
            svg=composed.svg,
            fallbacks=fallbacks,
            template_version=self.template_cache.version,
        )

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

logger = logging.getLogger(__name__)

RGB = tuple[int, int, int]

DEFAULT_NATIVE_WIDTH = 320
PALETTE_SUFFIXES = {".gpl", ".hex", ".txt"}

_HEX_RE = re.compile(r"^#?([0-9a-f]{3}|[0-9a-f]{6})$", re.IGNORECASE)


def parse_hex_color(value: str) -> RGB:
    """Parse ``#RRGGBB`` or shorthand ``#RGB`` into an RGB tuple."""
    match = _HEX_RE.match(value.strip())
    if match is None:
        raise ValueError(f"Not a hex color: {value!r}")
    digits = match.group(1)
    if len(digits) == 3:
        digits = "".join(ch * 2 for ch in digits)
    return (int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16))


@dataclass(frozen=True)
class Palette:
    key: str
    name: str
    colors: tuple[RGB, ...]
    description: str = ""
    native_width: int | None = None
    category: str = "Built-in"

    def __post_init__(self) -> None:
        if not self.colors:
            raise ValueError(f"Palette {self.key!r} has no colors")
        object.__setattr__(self, "colors", tuple(tuple(int(ch) for ch in c) for c in self.colors))
        for color in self.colors:
            if len(color) != 3 or any(ch < 0 or ch > 255 for ch in color):
                raise ValueError(f"Palette {self.key!r} has an invalid color {color!r}")

    def __len__(self) -> int:
        return len(self.colors)


def _hex_list(values: Iterable[str]) -> tuple[RGB, ...]:
    return tuple(parse_hex_color(v) for v in values)


C64_COLORS = _hex_list([
    "#000000", "#FFFFFF", "#880000", "#AAFFEE",
    "#CC44CC", "#00CC55", "#0000AA", "#EEEE77",
    "#DD8855", "#664400", "#FF7777", "#333333",
    "#777777", "#AAFF66", "#0088FF", "#BBBBBB",
])

EGA_COLORS = _hex_list([
    "#000000", "#0000AA", "#00AA00", "#00AAAA",
    "#AA0000", "#AA00AA", "#AA5500", "#AAAAAA",
    "#555555", "#5555FF", "#55FF55", "#55FFFF",
    "#FF5555", "#FF55FF", "#FFFF55", "#FFFFFF",
])

# Workbench 1.3-ish 32 color default set.
AMIGA_COLORS = _hex_list([
    "#AAA", "#000", "#FFF", "#68B", "#F00", "#0F0", "#00F", "#FF0",
    "#0FF", "#F0F", "#888", "#444", "#E80", "#E08", "#80E", "#08E",
    "#400", "#040", "#004", "#440", "#044", "#404", "#840", "#804",
    "#084", "#048", "#480", "#408", "#FB0", "#DB4", "#B84", "#962",
])


def _vga_colors() -> tuple[RGB, ...]:
    # EGA 16 followed by the 6x6x6 web cube.
    cube = tuple(
        (r * 51, g * 51, b * 51)
        for r in range(6)
        for g in range(6)
        for b in range(6)
    )
    return EGA_COLORS + cube


VGA_COLORS = _vga_colors()

ATARI_COLORS = _hex_list([
    "#000000", "#2D2D2D", "#585858", "#8C8C8C", "#BCBCBC", "#FFFFFF",
    "#3C3C00", "#6C6C00", "#989800", "#C0C000", "#E0E000",
    "#442800", "#744800", "#A06800", "#CC8400", "#F4A400",
    "#541400", "#882C00", "#B44800", "#E06800", "#FC8800",
    "#500000", "#800000", "#AC0000", "#D80000", "#FC0000",
    "#440038", "#70005C", "#980080", "#C000A8", "#E400D0",
    "#280048", "#4C0078", "#6C00A4", "#8C00D0", "#AC00FC",
    "#080050", "#1C0084", "#3400B0", "#4C00E0", "#6800FC",
    "#000050", "#000084", "#0000B0", "#0000E0", "#0000FC",
    "#001048", "#002478", "#003CB0", "#0054E0", "#006CFC",
    "#001C38", "#003864", "#005490", "#0070C0", "#008CFC",
    "#00281C", "#004C38", "#007054", "#009474", "#00B894",
    "#002800", "#004C00", "#006C00", "#008C00", "#00AC00",
    "#102800", "#284C00", "#406C00", "#5C8C00", "#78AC00",
    "#242400", "#484800", "#686800", "#888800", "#ACAC00",
])

BUILTIN_PALETTES: tuple[Palette, ...] = (
    Palette("c64", "Commodore 64", C64_COLORS, "16 colors, High contrast", 320),
    Palette("amiga", "Amiga OCS", AMIGA_COLORS, "32 vibrant colors", 320),
    Palette("ega", "IBM EGA", EGA_COLORS, "16 colors, Digital signal", 640),
    Palette("vga", "IBM VGA", VGA_COLORS, "256 colors Mode 13h", 320),
    Palette("atari", "Atari 2600", ATARI_COLORS, "128 color NTSC palette", 160),
)


@dataclass(frozen=True)
class PaletteCatalog(Mapping[str, Palette]):
    """Immutable, ordered registry of palettes keyed by ``Palette.key``."""

    _entries: Mapping[str, Palette] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_entries", MappingProxyType(dict(self._entries)))

    @classmethod
    def from_palettes(cls, palettes: Iterable[Palette]) -> "PaletteCatalog":
        entries: dict[str, Palette] = {}
        for palette in palettes:
            if palette.key in entries:
                raise ValueError(f"Duplicate palette key: {palette.key!r}")
            entries[palette.key] = palette
        return cls(entries)

    def __getitem__(self, key: str) -> Palette:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def with_palettes(self, palettes: Iterable[Palette]) -> "PaletteCatalog":
        """Return a new catalog with ``palettes`` appended."""
        return PaletteCatalog.from_palettes([*self._entries.values(), *palettes])

    def categories(self) -> list[str]:
        seen: list[str] = []
        for palette in self._entries.values():
            if palette.category not in seen:
                seen.append(palette.category)
        return seen

    def in_category(self, category: str) -> list[Palette]:
        return [p for p in self._entries.values() if p.category == category]


def default_catalog() -> PaletteCatalog:
    return PaletteCatalog.from_palettes(BUILTIN_PALETTES)


def _parse_gpl(text: str) -> list[RGB]:
    colors: list[RGB] = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or line.startswith("Name:") or line.startswith("Columns:"):
            continue
        parts = line.split()
        if len(parts) < 3 or not all(part.isdigit() for part in parts[:3]):
            continue
        r, g, b = (int(parts[0]), int(parts[1]), int(parts[2]))
        if max(r, g, b) <= 255:
            colors.append((r, g, b))
    return colors


def _parse_hex_text(text: str) -> list[RGB]:
    colors: list[RGB] = []
    for line in text.splitlines():
        raw = line.strip()
        if raw.lower().startswith("0x"):
            raw = raw[2:]
        if not raw or raw.startswith(";"):
            continue
        try:
            colors.append(parse_hex_color(raw[:7] if raw.startswith("#") else raw[:6]))
        except ValueError:
            continue
    return colors


def load_palette_file(path: Path, category: str = "Imported") -> Palette | None:
    """Load a ``.gpl`` or hex palette file. Returns None when nothing parses."""
    suffix = path.suffix.lower()
    if suffix not in PALETTE_SUFFIXES:
        return None
    text = path.read_text(encoding="utf-8", errors="ignore")
    colors = _parse_gpl(text) if suffix == ".gpl" else _parse_hex_text(text)
    if not colors:
        logger.warning("Skipping palette file with no colors: %s", path)
        return None
    key = f"{category.lower()}/{path.stem.lower()}"
    return Palette(key, path.stem, tuple(colors), f"{len(colors)} colors", None, category)


def load_palette_library(palette_dir: Path, base: PaletteCatalog | None = None) -> PaletteCatalog:
    """Built-in palettes followed by every palette file found in ``palette_dir``."""
    catalog = base if base is not None else default_catalog()
    if not palette_dir.is_dir():
        return catalog

    loaded: list[Palette] = []
    for entry in sorted(palette_dir.iterdir(), key=lambda p: p.name.lower()):
        files = sorted(entry.iterdir(), key=lambda p: p.name.lower()) if entry.is_dir() else [entry]
        category = entry.name if entry.is_dir() else "Imported"
        for file_path in files:
            if not file_path.is_file():
                continue
            try:
                palette = load_palette_file(file_path, category)
            except (OSError, ValueError) as exc:
                logger.warning("Could not read palette %s: %s", file_path, exc)
                continue
            if palette is not None and palette.key not in catalog:
                loaded.append(palette)
    unique: dict[str, Palette] = {}
    for palette in loaded:
        unique.setdefault(palette.key, palette)
    return catalog.with_palettes(unique.values())

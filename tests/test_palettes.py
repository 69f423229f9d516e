import pytest

from palettes import (
    BUILTIN_PALETTES,
    Palette,
    PaletteCatalog,
    default_catalog,
    load_palette_file,
    load_palette_library,
    parse_hex_color,
)


class TestParseHexColor:
    def test_full_form(self) -> None:
        assert parse_hex_color("#AAFFEE") == (0xAA, 0xFF, 0xEE)

    def test_without_hash(self) -> None:
        assert parse_hex_color("0088ff") == (0x00, 0x88, 0xFF)

    def test_shorthand_expands(self) -> None:
        assert parse_hex_color("#68B") == (0x66, 0x88, 0xBB)

    def test_rejects_garbage(self) -> None:
        with pytest.raises(ValueError):
            parse_hex_color("#12345")


class TestBuiltinCatalog:
    def setup_method(self) -> None:
        self.catalog = default_catalog()

    def test_order_and_keys(self) -> None:
        assert list(self.catalog) == ["c64", "amiga", "ega", "vga", "atari"]

    def test_sizes(self) -> None:
        assert len(self.catalog["c64"]) == 16
        assert len(self.catalog["amiga"]) == 32
        assert len(self.catalog["ega"]) == 16
        assert len(self.catalog["vga"]) == 16 + 216
        assert len(self.catalog["atari"]) == 76

    def test_native_widths(self) -> None:
        assert self.catalog["ega"].native_width == 640
        assert self.catalog["atari"].native_width == 160

    def test_vga_starts_with_ega(self) -> None:
        vga = self.catalog["vga"].colors
        assert vga[:16] == self.catalog["ega"].colors
        assert vga[16] == (0, 0, 0)
        assert vga[-1] == (255, 255, 255)

    def test_catalog_is_read_only(self) -> None:
        with pytest.raises(TypeError):
            self.catalog["mono"] = Palette("mono", "Mono", ((0, 0, 0),))  # type: ignore[index]

    def test_with_palettes_returns_new_catalog(self) -> None:
        mono = Palette("mono", "Mono", ((0, 0, 0), (255, 255, 255)))
        extended = self.catalog.with_palettes([mono])
        assert "mono" in extended
        assert "mono" not in self.catalog

    def test_duplicate_keys_rejected(self) -> None:
        with pytest.raises(ValueError):
            PaletteCatalog.from_palettes([BUILTIN_PALETTES[0], BUILTIN_PALETTES[0]])


class TestPaletteValue:
    def test_empty_palette_rejected(self) -> None:
        with pytest.raises(ValueError):
            Palette("empty", "Empty", ())

    def test_out_of_range_channel_rejected(self) -> None:
        with pytest.raises(ValueError):
            Palette("bad", "Bad", ((0, 0, 256),))

    def test_colors_are_tuples(self) -> None:
        palette = Palette("p", "P", [[1, 2, 3]])  # type: ignore[arg-type]
        assert palette.colors == ((1, 2, 3),)


class TestPaletteFiles:
    def test_gpl_file(self, tmp_path) -> None:
        path = tmp_path / "Sunset.gpl"
        path.write_text(
            "GIMP Palette\nName: Sunset\nColumns: 4\n#\n255 0 0 Red\n  0 128 255\tBlue\n",
            encoding="utf-8",
        )
        palette = load_palette_file(path)
        assert palette is not None
        assert palette.key == "imported/sunset"
        assert palette.colors == ((255, 0, 0), (0, 128, 255))
        assert palette.category == "Imported"

    def test_hex_file(self, tmp_path) -> None:
        path = tmp_path / "duo.hex"
        path.write_text("ff0000\n0x00ff00\n; comment\n#0000ff\n", encoding="utf-8")
        palette = load_palette_file(path)
        assert palette is not None
        assert palette.colors == ((255, 0, 0), (0, 255, 0), (0, 0, 255))

    def test_file_without_colors_is_skipped(self, tmp_path) -> None:
        path = tmp_path / "empty.gpl"
        path.write_text("GIMP Palette\n", encoding="utf-8")
        assert load_palette_file(path) is None

    def test_unknown_suffix_is_ignored(self, tmp_path) -> None:
        path = tmp_path / "notes.md"
        path.write_text("ff0000\n", encoding="utf-8")
        assert load_palette_file(path) is None

    def test_library_appends_after_builtins(self, tmp_path) -> None:
        (tmp_path / "Handhelds").mkdir()
        (tmp_path / "Handhelds" / "gameboy.hex").write_text(
            "0f380f\n306230\n8bac0f\n9bbc0f\n", encoding="utf-8"
        )
        (tmp_path / "mono.txt").write_text("000000\nffffff\n", encoding="utf-8")
        catalog = load_palette_library(tmp_path)
        keys = list(catalog)
        assert keys[:5] == ["c64", "amiga", "ega", "vga", "atari"]
        assert "handhelds/gameboy" in catalog
        assert "imported/mono" in catalog
        assert catalog["handhelds/gameboy"].category == "Handhelds"
        assert catalog.categories()[0] == "Built-in"

    def test_missing_library_dir(self, tmp_path) -> None:
        catalog = load_palette_library(tmp_path / "missing")
        assert list(catalog) == list(default_catalog())

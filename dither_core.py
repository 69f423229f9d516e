from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence

import numpy as np
from PIL import Image, ImageOps

from palettes import DEFAULT_NATIVE_WIDTH, RGB, Palette

logger = logging.getLogger(__name__)

DEFAULT_STRENGTH = 1.0
MAX_DITHER_STRENGTH = 1.2
MIN_RESOLUTION_SCALE = 0.5
MAX_RESOLUTION_SCALE = 3.0

# (dx, dy, weight) in sixteenths, relative to the pixel being committed.
FLOYD_STEINBERG_KERNEL: tuple[tuple[int, int, int], ...] = (
    (1, 0, 7),
    (-1, 1, 3),
    (0, 1, 5),
    (1, 1, 1),
)
KERNEL_DIVISOR = 16


class InvalidInputError(ValueError):
    """Caller passed parameters that can never be processed."""


class SinkUnavailableError(RuntimeError):
    """A display surface or frame sink could not be acquired."""


def _palette_colors(palette: Palette | Sequence[RGB]) -> Sequence[RGB]:
    colors = palette.colors if isinstance(palette, Palette) else palette
    if len(colors) == 0:
        raise InvalidInputError("Palette must contain at least one color")
    return colors


def color_distance_sq(a: Sequence[int], b: Sequence[int]) -> int:
    return (int(a[0]) - int(b[0])) ** 2 + (int(a[1]) - int(b[1])) ** 2 + (int(a[2]) - int(b[2])) ** 2


class PaletteQuantizer:
    """Nearest-color lookup against one palette.

    Distance is squared Euclidean in RGB. When several entries share the
    minimum distance the earliest one in palette order is returned.
    """

    def __init__(self, palette: Palette | Sequence[RGB]) -> None:
        colors = _palette_colors(palette)
        self.colors: tuple[RGB, ...] = tuple(tuple(int(ch) for ch in c) for c in colors)
        self._array = np.array(self.colors, dtype=np.int32).reshape(-1, 3)

    def __len__(self) -> int:
        return len(self.colors)

    def index_of(self, color: Sequence[int] | np.ndarray) -> int:
        diff = self._array - np.asarray(color, dtype=np.int32)
        # argmin returns the first minimum, which gives the tie-break.
        return int(np.einsum("ij,ij->i", diff, diff).argmin())

    def nearest(self, color: Sequence[int] | np.ndarray) -> RGB:
        return self.colors[self.index_of(color)]


def nearest_color(color: Sequence[int], palette: Palette | Sequence[RGB]) -> RGB:
    colors = _palette_colors(palette)
    best = colors[0]
    best_dist = color_distance_sq(color, best)
    for candidate in colors[1:]:
        dist = color_distance_sq(color, candidate)
        if dist < best_dist:
            best = candidate
            best_dist = dist
    return tuple(int(ch) for ch in best)


class PixelGrid:
    """Owned RGB grid for one dithering pass.

    Cells are visited only through ``raster()``. ``commit`` stores a final
    color; ``diffuse`` adds weighted error to a neighbor, dropping targets
    outside the grid and clamping each channel to [0, 255].
    """

    def __init__(self, pixels: np.ndarray) -> None:
        array = np.asarray(pixels)
        if array.ndim != 3 or array.shape[2] != 3:
            raise InvalidInputError(f"Expected an (H, W, 3) pixel buffer, got shape {array.shape}")
        height, width = array.shape[:2]
        if width <= 0 or height <= 0:
            raise InvalidInputError(f"Pixel buffer must be non-empty, got {width}x{height}")
        self._data = np.clip(np.rint(array.astype(np.float64)), 0, 255).astype(np.uint8)

    @property
    def width(self) -> int:
        return int(self._data.shape[1])

    @property
    def height(self) -> int:
        return int(self._data.shape[0])

    def in_bounds(self, x: int, y: int) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height

    def raster(self) -> Iterator[tuple[int, int]]:
        for y in range(self.height):
            for x in range(self.width):
                yield x, y

    def get(self, x: int, y: int) -> np.ndarray:
        return self._data[y, x].astype(np.int32)

    def commit(self, x: int, y: int, color: Sequence[int]) -> None:
        self._data[y, x] = color

    def diffuse(self, x: int, y: int, error: np.ndarray, weight: float) -> bool:
        if not self.in_bounds(x, y):
            return False
        value = self._data[y, x] + error * weight
        self._data[y, x] = np.clip(np.rint(value), 0, 255)
        return True

    def to_array(self) -> np.ndarray:
        result = self._data.copy()
        result.flags.writeable = False
        return result


def _validate_strength(strength: float) -> float:
    strength = float(strength)
    if not 0.0 <= strength <= MAX_DITHER_STRENGTH:
        raise InvalidInputError(f"Dithering strength must be within [0, {MAX_DITHER_STRENGTH}], got {strength}")
    return strength


def dither_image(
    pixels: np.ndarray,
    palette: Palette | Sequence[RGB],
    strength: float = DEFAULT_STRENGTH,
) -> np.ndarray:
    """Floyd-Steinberg quantize ``pixels`` to ``palette``.

    Returns a read-only ``uint8`` array of the same shape in which every
    pixel is a palette color. A strength of 0 disables error propagation.
    """
    quantizer = PaletteQuantizer(palette)
    strength = _validate_strength(strength)
    grid = PixelGrid(pixels)

    for x, y in grid.raster():
        current = grid.get(x, y)
        quantized = quantizer.nearest(current)
        grid.commit(x, y, quantized)
        if strength == 0.0:
            continue
        error = (current - np.asarray(quantized, dtype=np.int32)) * strength
        for dx, dy, weight in FLOYD_STEINBERG_KERNEL:
            grid.diffuse(x + dx, y + dy, error, weight / KERNEL_DIVISOR)

    logger.debug(
        "Dithered %dx%d image to %d colors (strength %.2f)",
        grid.width,
        grid.height,
        len(quantizer),
        strength,
    )
    return grid.to_array()


def quantize_image(pixels: np.ndarray, palette: Palette | Sequence[RGB]) -> np.ndarray:
    """Nearest-color mapping of every pixel with no error diffusion."""
    return dither_image(pixels, palette, strength=0.0)


def target_size(
    source_size: tuple[int, int],
    palette: Palette | None,
    resolution_scale: float = 1.0,
) -> tuple[int, int]:
    if not MIN_RESOLUTION_SCALE <= resolution_scale <= MAX_RESOLUTION_SCALE:
        raise InvalidInputError(
            f"Resolution scale must be within [{MIN_RESOLUTION_SCALE}, {MAX_RESOLUTION_SCALE}]"
        )
    src_w, src_h = source_size
    if src_w <= 0 or src_h <= 0:
        raise InvalidInputError(f"Source image must be non-empty, got {src_w}x{src_h}")
    native = palette.native_width if palette is not None and palette.native_width else DEFAULT_NATIVE_WIDTH
    width = max(1, int(native * resolution_scale))
    height = max(1, int(width * (src_h / src_w)))
    return width, height


def prepare_source(
    image: Image.Image,
    palette: Palette | None,
    resolution_scale: float = 1.0,
) -> np.ndarray:
    """Aspect-preserving resize to the palette's native width, as RGB array."""
    image = ImageOps.exif_transpose(image).convert("RGB")
    size = target_size(image.size, palette, resolution_scale)
    resized = image.resize(size, Image.Resampling.LANCZOS)
    return np.array(resized, dtype=np.uint8)


def to_image(pixels: np.ndarray) -> Image.Image:
    return Image.fromarray(np.ascontiguousarray(pixels, dtype=np.uint8))

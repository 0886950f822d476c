from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from errors import InvalidImage, UnsupportedFormat

LINEAR = "linear"
SRGB = "srgb"
COLOR_SPACES = (LINEAR, SRGB)

# dtype -> full-scale value used to normalize samples into 0..1
_SCALES = {
    np.dtype(np.uint8): 255.0,
    np.dtype(np.uint16): 65535.0,
    np.dtype(np.float16): 1.0,
    np.dtype(np.float32): 1.0,
    np.dtype(np.float64): 1.0,
}


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float
    height: float

    @property
    def max_x(self) -> float:
        return self.x + self.width

    @property
    def max_y(self) -> float:
        return self.y + self.height

    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def integral(self) -> "Rect":
        """Smallest integer-aligned rect containing this one."""
        x0, y0 = math.floor(self.x), math.floor(self.y)
        x1, y1 = math.ceil(self.max_x), math.ceil(self.max_y)
        return Rect(x0, y0, x1 - x0, y1 - y0)

    def union(self, other: "Rect") -> "Rect":
        if self.is_empty():
            return other
        if other.is_empty():
            return self
        x0, y0 = min(self.x, other.x), min(self.y, other.y)
        x1, y1 = max(self.max_x, other.max_x), max(self.max_y, other.max_y)
        return Rect(x0, y0, x1 - x0, y1 - y0)

    def intersection(self, other: "Rect") -> "Rect":
        x0, y0 = max(self.x, other.x), max(self.y, other.y)
        x1, y1 = min(self.max_x, other.max_x), min(self.max_y, other.max_y)
        return Rect(x0, y0, max(0, x1 - x0), max(0, y1 - y0))

    def shape(self) -> Tuple[int, int]:
        r = self.integral()
        return int(r.height), int(r.width)


# ---------- sRGB transfer ----------
def srgb_to_linear(a: np.ndarray) -> np.ndarray:
    a = np.clip(a, 0.0, 1.0)
    return np.where(a <= 0.04045, a / 12.92, np.power((a + 0.055) / 1.055, 2.4)).astype(np.float32)

def linear_to_srgb(a: np.ndarray) -> np.ndarray:
    a = np.clip(a, 0.0, 1.0)
    return np.where(a <= 0.0031308, a * 12.92, 1.055 * np.power(a, 1.0 / 2.4) - 0.055).astype(np.float32)


def _shares_writable_memory(arr: np.ndarray) -> bool:
    """True if arr, or any array or buffer it views, can still be written."""
    while isinstance(arr, np.ndarray):
        if arr.flags.writeable:
            return True
        arr = arr.base
    return isinstance(arr, memoryview) and not arr.readonly


class RasterImage:
    """
    Immutable RGBA raster.

    ``extent`` is the logical canvas; the pixel buffer covers
    ``buffer_rect`` (``origin`` plus the buffer size), which may be smaller
    than the extent after a transform grew the canvas. Reads outside the
    buffer clamp to the nearest edge pixel.
    """

    __slots__ = ("_pixels", "_extent", "_origin", "_color_space")

    def __init__(self, pixels: np.ndarray, extent: Optional[Rect] = None,
                 color_space: str = LINEAR, origin: Tuple[int, int] = (0, 0)):
        arr = np.asarray(pixels)
        if arr.ndim != 3:
            raise InvalidImage(f"expected a (height, width, channels) buffer, got shape {arr.shape}")
        h, w, c = arr.shape
        if h == 0 or w == 0:
            raise InvalidImage(f"empty pixel buffer {w}x{h}")
        if c != 4:
            raise UnsupportedFormat(f"expected 4 RGBA channels, got {c}")
        if arr.dtype not in _SCALES:
            raise UnsupportedFormat(f"unsupported sample type {arr.dtype}")
        if color_space not in COLOR_SPACES:
            raise UnsupportedFormat(f"unknown color space {color_space!r}")
        if _shares_writable_memory(arr):
            arr = arr.copy()
            arr.flags.writeable = False
        self._pixels = arr
        self._origin = (int(origin[0]), int(origin[1]))
        self._extent = extent if extent is not None else self.buffer_rect
        if self._extent.is_empty():
            raise InvalidImage(f"empty extent {self._extent}")
        self._color_space = color_space

    @classmethod
    def from_float(cls, pixels: np.ndarray, extent: Optional[Rect] = None,
                   color_space: str = LINEAR, origin: Tuple[int, int] = (0, 0)) -> "RasterImage":
        """
        Wrap a freshly computed float32 buffer without copying it.

        The raster takes ownership: ``pixels`` is made read-only. A view into
        someone else's writable array is copied instead.
        """
        arr = np.asarray(pixels, dtype=np.float32)
        arr.flags.writeable = False
        return cls(arr, extent, color_space, origin)

    # ----- geometry -----
    @property
    def extent(self) -> Rect:
        return self._extent

    @property
    def origin(self) -> Tuple[int, int]:
        return self._origin

    @property
    def buffer_rect(self) -> Rect:
        h, w = self._pixels.shape[:2]
        return Rect(self._origin[0], self._origin[1], w, h)

    @property
    def width(self) -> int:
        return int(self._extent.integral().width)

    @property
    def height(self) -> int:
        return int(self._extent.integral().height)

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    # ----- samples -----
    @property
    def pixels(self) -> np.ndarray:
        return self._pixels

    @property
    def dtype(self) -> np.dtype:
        return self._pixels.dtype

    @property
    def color_space(self) -> str:
        return self._color_space

    def as_float(self) -> np.ndarray:
        """Buffer samples as float32 in 0..1 (read-only when no conversion was needed)."""
        scale = _SCALES[self._pixels.dtype]
        if self._pixels.dtype == np.float32:
            return self._pixels
        return (self._pixels.astype(np.float32) / np.float32(scale))

    def to_float(self) -> "RasterImage":
        if self._pixels.dtype == np.float32:
            return self
        return RasterImage.from_float(self.as_float(), self._extent, self._color_space, self._origin)

    def to_dtype(self, dtype) -> "RasterImage":
        dtype = np.dtype(dtype)
        if dtype not in _SCALES:
            raise UnsupportedFormat(f"unsupported sample type {dtype}")
        if dtype == self._pixels.dtype:
            return self
        a = np.clip(self.as_float(), 0.0, 1.0)
        if dtype.kind == "u":
            a = np.round(a * _SCALES[dtype])
        return RasterImage(a.astype(dtype), self._extent, self._color_space, self._origin)

    def in_color_space(self, color_space: str) -> "RasterImage":
        if color_space == self._color_space:
            return self
        if color_space not in COLOR_SPACES:
            raise UnsupportedFormat(f"unknown color space {color_space!r}")
        a = self.as_float()
        convert = srgb_to_linear if color_space == LINEAR else linear_to_srgb
        out = np.empty_like(a, dtype=np.float32)
        out[..., :3] = convert(a[..., :3])
        out[..., 3] = a[..., 3]
        return RasterImage.from_float(out, self._extent, color_space, self._origin)

    def sample(self, rect: Rect) -> np.ndarray:
        """Float32 copy of ``rect`` (integral), clamping reads to the buffer edges."""
        r = rect.integral()
        if r.is_empty():
            raise InvalidImage(f"cannot sample empty region {rect}")
        h, w = self._pixels.shape[:2]
        ys = np.clip(np.arange(r.y, r.max_y, dtype=np.int64) - self._origin[1], 0, h - 1)
        xs = np.clip(np.arange(r.x, r.max_x, dtype=np.int64) - self._origin[0], 0, w - 1)
        return np.ascontiguousarray(self.as_float()[ys[:, None], xs[None, :]], dtype=np.float32)

    def cropped(self, rect: Rect) -> "RasterImage":
        r = rect.intersection(self._extent).integral()
        if r.is_empty():
            raise InvalidImage(f"crop {rect} does not overlap extent {self._extent}")
        return RasterImage.from_float(self.sample(r), r, self._color_space, (int(r.x), int(r.y)))

    def __repr__(self) -> str:
        return (f"RasterImage({self.width}x{self.height}, {self._pixels.dtype}, "
                f"{self._color_space}, buffer={self.buffer_rect})")


# ---------- color matrix ----------
@dataclass(frozen=True)
class ColorMatrix:
    """out_c = dot(row_c, (R, G, B, A)) + bias_c, clamped to 0..1."""
    r: Tuple[float, float, float, float] = (1, 0, 0, 0)
    g: Tuple[float, float, float, float] = (0, 1, 0, 0)
    b: Tuple[float, float, float, float] = (0, 0, 1, 0)
    a: Tuple[float, float, float, float] = (0, 0, 0, 1)
    bias: Tuple[float, float, float, float] = (0, 0, 0, 0)

    def matrix(self) -> np.ndarray:
        return np.array([self.r, self.g, self.b, self.a], dtype=np.float32)

    def apply_array(self, src: np.ndarray, out: Optional[np.ndarray] = None) -> np.ndarray:
        res = np.matmul(src, self.matrix().T)
        res += np.asarray(self.bias, dtype=np.float32)
        return np.clip(res, 0.0, 1.0, out=out)

    @staticmethod
    def blend(m0: "ColorMatrix", m1: "ColorMatrix", t: float) -> "ColorMatrix":
        """Linear interpolation between two matrices (t=0 -> m0, t=1 -> m1)."""
        def mix(u: Sequence[float], v: Sequence[float]):
            return tuple((1.0 - t) * a + t * b for a, b in zip(u, v))
        return ColorMatrix(mix(m0.r, m1.r), mix(m0.g, m1.g), mix(m0.b, m1.b),
                           mix(m0.a, m1.a), mix(m0.bias, m1.bias))


IDENTITY_MATRIX = ColorMatrix()


# ---------- affine transform ----------
@dataclass(frozen=True)
class AffineTransform2D:
    """x' = a*x + c*y + tx ; y' = b*x + d*y + ty"""
    a: float = 1.0
    b: float = 0.0
    c: float = 0.0
    d: float = 1.0
    tx: float = 0.0
    ty: float = 0.0

    @classmethod
    def scale(cls, sx: float, sy: float) -> "AffineTransform2D":
        return cls(a=sx, d=sy)

    @classmethod
    def translation(cls, tx: float, ty: float) -> "AffineTransform2D":
        return cls(tx=tx, ty=ty)

    @classmethod
    def rotation(cls, radians: float) -> "AffineTransform2D":
        cs, sn = math.cos(radians), math.sin(radians)
        return cls(a=cs, b=sn, c=-sn, d=cs)

    def concatenated(self, other: "AffineTransform2D") -> "AffineTransform2D":
        """Apply self first, then other."""
        return AffineTransform2D(
            a=self.a * other.a + self.b * other.c,
            b=self.a * other.b + self.b * other.d,
            c=self.c * other.a + self.d * other.c,
            d=self.c * other.b + self.d * other.d,
            tx=self.tx * other.a + self.ty * other.c + other.tx,
            ty=self.tx * other.b + self.ty * other.d + other.ty,
        )

    def determinant(self) -> float:
        return self.a * self.d - self.b * self.c

    def inverted(self) -> "AffineTransform2D":
        det = self.determinant()
        if abs(det) < 1e-12:
            raise ValueError(f"transform is not invertible: {self}")
        a, b, c, d = self.d / det, -self.b / det, -self.c / det, self.a / det
        return AffineTransform2D(a, b, c, d,
                                 tx=-(a * self.tx + c * self.ty),
                                 ty=-(b * self.tx + d * self.ty))

    def apply_point(self, x: float, y: float) -> Tuple[float, float]:
        return (self.a * x + self.c * y + self.tx, self.b * x + self.d * y + self.ty)

    def apply_rect(self, rect: Rect) -> Rect:
        """Bounding box of the transformed rect."""
        pts = [self.apply_point(x, y) for x in (rect.x, rect.max_x) for y in (rect.y, rect.max_y)]
        xs = [p[0] for p in pts]; ys = [p[1] for p in pts]
        return Rect(min(xs), min(ys), max(xs) - min(xs), max(ys) - min(ys))

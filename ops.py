"""
Per-pixel image operations shared by the film stages.

Everything here works on float32 RGBA with straight (unpremultiplied)
alpha, splits the work into horizontal bands on the render context, and
returns new immutable RasterImages.
"""
from __future__ import annotations
import enum
import math
from typing import Optional

import numpy as np

from raster import RasterImage, Rect, ColorMatrix, AffineTransform2D
from render_context import RenderContext

NEAREST = "nearest"
LINEAR_SAMPLING = "linear"
SAMPLING_MODES = (NEAREST, LINEAR_SAMPLING)


class CompositingOp(enum.Enum):
    SOURCE_OVER = "source_over"
    MULTIPLY = "multiply"


def _to_working(ctx: RenderContext, image: RasterImage) -> RasterImage:
    return image.to_float().in_color_space(ctx.working_color_space)


def color_matrix(ctx: RenderContext, image: RasterImage, m: ColorMatrix) -> RasterImage:
    src = _to_working(ctx, image)
    a = src.as_float()
    h, w = a.shape[:2]
    out = ctx.allocate(h, w)

    def band(y0, y1):
        m.apply_array(a[y0:y1], out=out[y0:y1])

    ctx.for_each_band(h, band)
    return RasterImage.from_float(out, src.extent, src.color_space, src.origin)


def minimum_component(ctx: RenderContext, image: RasterImage) -> RasterImage:
    """r = g = b = min(r, g, b); alpha untouched."""
    src = _to_working(ctx, image)
    a = src.as_float()
    h, w = a.shape[:2]
    out = ctx.allocate(h, w)

    def band(y0, y1):
        lo = np.min(a[y0:y1, :, :3], axis=2)
        out[y0:y1, :, :3] = lo[..., None]
        out[y0:y1, :, 3] = a[y0:y1, :, 3]

    ctx.for_each_band(h, band)
    return RasterImage.from_float(out, src.extent, src.color_space, src.origin)


def composite(ctx: RenderContext, op: CompositingOp, fg: RasterImage, bg: RasterImage,
              extent: Optional[Rect] = None) -> RasterImage:
    """
    Blend ``fg`` onto ``bg`` over ``extent`` (the background extent by default).

    Both operands are brought into the working color space and read with
    clamp-to-edge, so differing extents never produce undefined pixels.
    """
    region = (extent if extent is not None else bg.extent).integral()
    f = _to_working(ctx, fg).sample(region)
    b = _to_working(ctx, bg).sample(region)
    h, w = f.shape[:2]
    out = ctx.allocate(h, w)

    def band(y0, y1):
        fb, bb = f[y0:y1], b[y0:y1]
        fa = fb[..., 3:4]
        if op is CompositingOp.SOURCE_OVER:
            out[y0:y1, :, :3] = fb[..., :3] * fa + bb[..., :3] * (1.0 - fa)
        elif op is CompositingOp.MULTIPLY:
            out[y0:y1, :, :3] = fa * (fb[..., :3] * bb[..., :3]) + (1.0 - fa) * bb[..., :3]
        else:
            raise ValueError(f"unknown compositing op {op!r}")
        out[y0:y1, :, 3:4] = fa + bb[..., 3:4] * (1.0 - fa)

    ctx.for_each_band(h, band)
    np.clip(out, 0.0, 1.0, out=out)
    return RasterImage.from_float(out, region, ctx.working_color_space, (int(region.x), int(region.y)))


def affine_resample(ctx: RenderContext, image: RasterImage, transform: AffineTransform2D,
                    roi: Rect, sampling: str = LINEAR_SAMPLING) -> RasterImage:
    """
    Sample ``image`` through ``transform`` (source -> destination space).

    The result's nominal extent is the transformed extent of ``image``; only
    ``roi`` is materialized. Each destination pixel center is mapped back
    into the source and read bilinearly (or nearest) with clamp-to-edge.
    """
    if sampling not in SAMPLING_MODES:
        raise ValueError(f"unknown sampling mode {sampling!r}")
    src = _to_working(ctx, image)
    inv = transform.inverted()
    region = roi.integral()
    a = src.as_float()
    sh, sw = a.shape[:2]
    ox, oy = src.origin
    h, w = int(region.height), int(region.width)
    out = ctx.allocate(h, w)
    xs = np.arange(region.x, region.max_x, dtype=np.float64) + 0.5

    def band(y0, y1):
        ys = np.arange(region.y + y0, region.y + y1, dtype=np.float64)[:, None] + 0.5
        sx = inv.a * xs[None, :] + inv.c * ys + inv.tx - ox
        sy = inv.b * xs[None, :] + inv.d * ys + inv.ty - oy
        if sampling == NEAREST:
            ix = np.clip(np.floor(sx).astype(np.int64), 0, sw - 1)
            iy = np.clip(np.floor(sy).astype(np.int64), 0, sh - 1)
            out[y0:y1] = a[iy, ix]
            return
        u, v = sx - 0.5, sy - 0.5
        x0f, y0f = np.floor(u), np.floor(v)
        fx = (u - x0f).astype(np.float32)[..., None]
        fy = (v - y0f).astype(np.float32)[..., None]
        x0i = np.clip(x0f.astype(np.int64), 0, sw - 1); x1i = np.clip(x0f.astype(np.int64) + 1, 0, sw - 1)
        y0i = np.clip(y0f.astype(np.int64), 0, sh - 1); y1i = np.clip(y0f.astype(np.int64) + 1, 0, sh - 1)
        top = a[y0i, x0i] * (1.0 - fx) + a[y0i, x1i] * fx
        bot = a[y1i, x0i] * (1.0 - fx) + a[y1i, x1i] * fx
        out[y0:y1] = top * (1.0 - fy) + bot * fy

    ctx.for_each_band(h, band)
    nominal = transform.apply_rect(src.extent)
    return RasterImage.from_float(out, nominal.union(region), src.color_space, (int(region.x), int(region.y)))


def source_region(transform: AffineTransform2D, roi: Rect) -> Rect:
    """Source-space rect that ``affine_resample`` reads to fill ``roi`` (one pixel margin for filtering)."""
    r = transform.inverted().apply_rect(roi.integral())
    return Rect(math.floor(r.x) - 1, math.floor(r.y) - 1, math.ceil(r.width) + 2, math.ceil(r.height) + 2)

from __future__ import annotations
from io import BytesIO
from typing import Optional
from PIL import Image, ImageOps, ImageCms
import numpy as np
import os
import math
import logging

from errors import InvalidImage, UnsupportedFormat
from raster import RasterImage, SRGB

logger = logging.getLogger(__name__)

MAX_PREVIEW_DIM = 1024
IMAGE_EXTS = {".png", ".jpg", ".jpeg", ".bmp", ".tif", ".tiff", ".gif", ".webp"}

# Pillow modes that convert cleanly to RGBA
_CONVERTIBLE = {"1", "L", "LA", "P", "PA", "RGB", "RGBA", "RGBa", "RGBX", "CMYK", "YCbCr", "I;16", "I", "F", "La"}


def ensure_srgb(img: Image.Image) -> Image.Image:
    icc = img.info.get("icc_profile")
    if not icc:
        return img
    try:
        srgb = ImageCms.createProfile("sRGB")
        src = ImageCms.ImageCmsProfile(BytesIO(icc))
        out_mode = "RGBA" if img.mode == "RGBA" else "RGB"
        return ImageCms.profileToProfile(img, src, srgb, outputMode=out_mode)
    except (ImageCms.PyCMSError, OSError, ValueError) as e:
        # A broken embedded profile is not worth failing the frame over
        logger.warning("Ignoring unusable ICC profile: %s", e)
        return img


def load_image(path: str) -> Image.Image:
    img = Image.open(path)
    img = ImageOps.exif_transpose(img)
    # Pillow lazy loads; ensure it's loaded now
    img.load()
    return img


def pil_to_raster(img: Image.Image) -> RasterImage:
    """Normalize any supported Pillow image to an RGBA8 raster tagged sRGB."""
    if img.width == 0 or img.height == 0:
        raise InvalidImage(f"empty image {img.size}")
    if img.mode not in _CONVERTIBLE:
        raise UnsupportedFormat(f"cannot interpret Pillow mode {img.mode!r} as RGBA")
    if img.mode in ("I;16", "I", "F"):
        # high bit depth grayscale: scale down ourselves, Pillow clips on convert
        a = np.asarray(img, dtype=np.float32)
        peak = 65535.0 if img.mode != "F" else max(1.0, float(a.max()))
        g = np.clip(np.round(a / peak * 255.0), 0, 255).astype(np.uint8)
        img = Image.fromarray(g)
    if img.mode in ("RGB", "RGBA", "CMYK"):
        img = ensure_srgb(img)
    if img.mode in ("CMYK", "YCbCr"):
        img = img.convert("RGB")
    rgba = img.convert("RGBA")
    return RasterImage(np.asarray(rgba, dtype=np.uint8), color_space=SRGB)


def raster_to_pil(raster: RasterImage) -> Image.Image:
    out = raster.in_color_space(SRGB).to_dtype(np.uint8)
    return Image.fromarray(np.array(out.pixels, dtype=np.uint8))


def load_raster(path: str) -> RasterImage:
    try:
        img = load_image(path)
    except Image.UnidentifiedImageError as e:
        raise UnsupportedFormat(f"{path}: not a readable image") from e
    with img:
        return pil_to_raster(img)


def save_png(img: Image.Image, path: str, overwrite: bool = True) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    if os.path.exists(path) and not overwrite:
        raise FileExistsError(path)
    img.save(path, format="PNG")


def save_raster(raster: RasterImage, path: str, overwrite: bool = True) -> None:
    save_png(raster_to_pil(raster), path, overwrite=overwrite)


def make_output_path(out_dir: str, in_path: str, suffix: str = "oldfilm", ext: str = "png") -> str:
    base = os.path.splitext(os.path.basename(in_path))[0]
    filename = f"{base}_{suffix}.{ext}"
    return os.path.join(out_dir, filename)


def is_image_path(path: str) -> bool:
    return os.path.splitext(path.lower())[1] in IMAGE_EXTS


def downscale_for_preview(img: Image.Image, max_dim: Optional[int] = None) -> Image.Image:
    limit = max_dim or MAX_PREVIEW_DIM
    w, h = img.size
    scale = min(limit / max(w, h), 1.0)
    if scale < 1.0:
        nw = max(1, int(math.floor(w * scale)))
        nh = max(1, int(math.floor(h * scale)))
        return img.resize((nw, nh), Image.Resampling.LANCZOS)
    return img

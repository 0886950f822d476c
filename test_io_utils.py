import os

import numpy as np
import pytest
from PIL import Image

from errors import InvalidImage, UnsupportedFormat
from io_utils import (pil_to_raster, raster_to_pil, load_raster, save_raster, make_output_path,
                      is_image_path, downscale_for_preview)
from pipeline import OldFilmPipeline
from filters import NoiseGenerator
from raster import SRGB
from render_context import RenderContext


def test_rgb_image_becomes_srgb_rgba8():
    r = pil_to_raster(Image.new("RGB", (5, 3), (10, 20, 30)))
    assert r.pixels.shape == (3, 5, 4)
    assert r.color_space == SRGB
    assert tuple(r.pixels[0, 0]) == (10, 20, 30, 255)


@pytest.mark.parametrize("mode, color", [("L", 128), ("LA", (128, 64)), ("P", 3), ("1", 1)])
def test_other_modes_convert(mode, color):
    r = pil_to_raster(Image.new(mode, (2, 2), color))
    assert r.pixels.shape == (2, 2, 4)
    assert r.dtype == np.uint8


def test_sixteen_bit_gray_is_scaled():
    img = Image.fromarray(np.full((2, 2), 65535, dtype=np.uint16))
    r = pil_to_raster(img)
    assert r.pixels[0, 0, 0] == 255


def test_rejects_empty_and_unknown_modes():
    with pytest.raises(InvalidImage):
        pil_to_raster(Image.new("RGB", (0, 4)))
    with pytest.raises(UnsupportedFormat):
        pil_to_raster(Image.new("HSV", (2, 2)))


def test_png_round_trip(tmp_path):
    src = Image.new("RGBA", (6, 4), (200, 100, 50, 255))
    path = tmp_path / "in.png"
    src.save(path)
    raster = load_raster(str(path))
    out = tmp_path / "out" / "copy.png"
    save_raster(raster, str(out))
    with Image.open(out) as back:
        assert back.size == (6, 4)
        assert back.convert("RGBA").getpixel((0, 0)) == (200, 100, 50, 255)
    with pytest.raises(FileExistsError):
        save_raster(raster, str(out), overwrite=False)


def test_load_raster_rejects_non_images(tmp_path):
    path = tmp_path / "notes.png"
    path.write_text("not a picture")
    with pytest.raises(UnsupportedFormat):
        load_raster(str(path))


def test_filtered_still_saves_as_png(tmp_path):
    path = tmp_path / "frame.png"
    Image.new("RGB", (16, 9), (180, 180, 180)).save(path)
    with RenderContext(workers=1) as ctx:
        out = OldFilmPipeline(ctx, noise=NoiseGenerator(0)).process(load_raster(str(path)))
    dst = make_output_path(str(tmp_path), str(path))
    save_raster(out, dst)
    assert os.path.basename(dst) == "frame_oldfilm.png"
    with Image.open(dst) as img:
        assert img.size == (16, 9)
        r, g, b, _ = img.getpixel((8, 4))
        # sepia keeps red above blue
        assert r >= b


def test_path_helpers():
    assert is_image_path("a/B.JPG") and not is_image_path("a/b.mov")
    big = Image.new("RGB", (4000, 1000))
    assert downscale_for_preview(big, 400).size == (400, 100)
    small = Image.new("RGB", (10, 10))
    assert downscale_for_preview(small) is small


def test_raster_to_pil_encodes_srgb():
    r = pil_to_raster(Image.new("RGBA", (1, 1), (64, 128, 192, 255)))
    assert raster_to_pil(r).getpixel((0, 0)) == (64, 128, 192, 255)

from __future__ import annotations
from typing import Iterable, Optional
import imageio
import os
import logging
import numpy as np

from raster import RasterImage, SRGB

logger = logging.getLogger(__name__)


def raster_to_frame(img: RasterImage) -> np.ndarray:
    """RGBA raster -> contiguous RGB uint8 array for the encoder."""
    rgb = img.in_color_space(SRGB).to_dtype(np.uint8).pixels[:, :, :3]
    return np.ascontiguousarray(rgb)


def _pad_even(arr: np.ndarray) -> np.ndarray:
    # yuv420p needs even dimensions; repeat the last row/column
    h, w = arr.shape[:2]
    ph, pw = h % 2, w % 2
    if ph or pw:
        arr = np.pad(arr, ((0, ph), (0, pw), (0, 0)), mode="edge")
    return arr


def encode_frames_to_mp4(frames: Iterable[RasterImage], out_path: str, fps: float = 24, crf: int = 20,
                         codec: str = "libx264") -> int:
    """Stream frames into an H.264 MP4. Returns the number of frames written."""
    out_dir = os.path.dirname(os.path.abspath(out_path))
    os.makedirs(out_dir, exist_ok=True)

    written = 0
    size: Optional[tuple] = None
    with imageio.get_writer(
        out_path,
        format="ffmpeg",
        mode="I",
        fps=fps,
        codec=codec,
        quality=None,
        pixelformat="yuv420p",
        macro_block_size=1,
        ffmpeg_params=["-crf", str(int(crf))],
    ) as writer:
        for img in frames:
            arr = _pad_even(raster_to_frame(img))
            if size is None:
                size = arr.shape[:2]
            elif arr.shape[:2] != size:
                raise ValueError(f"frame {written} is {arr.shape[1]}x{arr.shape[0]}, expected {size[1]}x{size[0]}")
            writer.append_data(arr)
            written += 1
    if not written:
        raise ValueError("No frames to encode")
    logger.info("Encoded %d frames to %s (%.2f fps, crf %d)", written, out_path, fps, crf)
    return written

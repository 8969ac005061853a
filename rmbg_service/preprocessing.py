"""
Image decoding and preprocessing for RMBG.

Decoded images are stretched to the model's fixed square input with
nearest-neighbour sampling and normalized per channel into a flat,
channel-major float32 tensor.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from typing import Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import DecodeError, UnsupportedFormatError

SUPPORTED_FORMATS = frozenset({"PNG", "JPEG"})


@dataclass(frozen=True)
class PreprocessConfig:
    target_size: int = 1024
    mean: Tuple[float, float, float] = (0.5, 0.5, 0.5)
    std: Tuple[float, float, float] = (0.5, 0.5, 0.5)

    @property
    def tensor_length(self) -> int:
        return 3 * self.target_size * self.target_size


def decode_image(image_bytes: bytes) -> Image.Image:
    """
    Decode PNG/JPEG bytes into an RGB image.

    Raises:
        UnsupportedFormatError: for non-image data or any other raster format.
        DecodeError: when an accepted format is truncated or corrupt.
    """
    try:
        image = Image.open(BytesIO(image_bytes))
    except UnidentifiedImageError as exc:
        raise UnsupportedFormatError("Input is not a recognized image") from exc
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise DecodeError(f"Invalid image data: {exc}") from exc

    if image.format not in SUPPORTED_FORMATS:
        raise UnsupportedFormatError(f"Unsupported image format: {image.format}")

    try:
        image.load()
        return _to_rgb(image)
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise DecodeError(f"Failed to decode {image.format} image: {exc}") from exc


def _to_rgb(image: Image.Image) -> Image.Image:
    # Pillow clips 16-bit grayscale ("I;16*", "I") on convert; keep the high byte instead.
    if image.mode.startswith("I;16") or image.mode == "I":
        wide = np.asarray(image).astype(np.uint32)
        return Image.fromarray((wide >> 8).clip(0, 255).astype(np.uint8), "L").convert("RGB")
    return image.convert("RGB")


def nearest_indices(src_len: int, dst_len: int) -> np.ndarray:
    """Source index for each destination index: ``i * src_len // dst_len``."""
    return (np.arange(dst_len, dtype=np.int64) * src_len) // dst_len


def resize_nearest(array: np.ndarray, width: int, height: int) -> np.ndarray:
    """Nearest-neighbour resize of an (H, W) or (H, W, C) array; aspect ratio is not kept."""
    src_h, src_w = array.shape[:2]
    ys = nearest_indices(src_h, height)
    xs = nearest_indices(src_w, width)
    return array[ys[:, None], xs[None, :]]


class Preprocessor:
    """Turn a decoded image into the model's (3 x size x size) input tensor."""

    def __init__(self, config: PreprocessConfig = PreprocessConfig()):
        self.config = config
        self._mean = np.asarray(config.mean, dtype=np.float32)
        self._std = np.asarray(config.std, dtype=np.float32)

    def transform(self, image: Image.Image) -> np.ndarray:
        size = self.config.target_size
        rgb = np.asarray(image.convert("RGB"), dtype=np.uint8)
        resized = resize_nearest(rgb, size, size)

        scaled = resized.astype(np.float32) / np.float32(255.0)
        normalized = (scaled - self._mean) / self._std
        # HWC -> CHW, each plane row-major
        return np.ascontiguousarray(np.transpose(normalized, (2, 0, 1))).reshape(-1)

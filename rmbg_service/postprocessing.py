"""Post-processing for RMBG masks: normalize, resize and composite as alpha."""

from __future__ import annotations

from io import BytesIO
import logging
from pathlib import Path
from typing import Optional

import cv2
import numpy as np
from PIL import Image

from .errors import EncodeError
from .preprocessing import resize_nearest

logger = logging.getLogger(__name__)

MASK_SIZE = 1024
MIN_RANGE = 1e-6
UNIFORM_MASK_VALUE = 128


def normalize_mask(raw_output: np.ndarray, size: int = MASK_SIZE) -> np.ndarray:
    """
    Stretch the raw model output to 0..255.

    A uniform output has no usable contrast and maps to mid-gray.
    """
    raw = np.asarray(raw_output, dtype=np.float32)
    if raw.size != size * size:
        raise EncodeError(f"Mask has {raw.size} values, expected {size * size}")
    raw = raw.reshape(size, size)

    lo = float(raw.min())
    hi = float(raw.max())
    value_range = hi - lo
    if not np.isfinite(value_range) or value_range < MIN_RANGE:
        logger.debug("postprocess: uniform mask (min=%.6f max=%.6f)", lo, hi)
        return np.full((size, size), UNIFORM_MASK_VALUE, dtype=np.uint8)

    normalized = (raw - np.float32(lo)) / np.float32(value_range)
    return np.clip(normalized * 255.0, 0, 255).astype(np.uint8)


def compose_rgba(rgb_image: Image.Image, alpha: np.ndarray) -> np.ndarray:
    rgb_np = np.asarray(rgb_image.convert("RGB"), dtype=np.uint8)
    if rgb_np.shape[:2] != alpha.shape:
        raise EncodeError(f"Alpha shape {alpha.shape} does not match image {rgb_np.shape[:2]}")
    return np.dstack((rgb_np, alpha))


def encode_png(rgba: np.ndarray, compress_level: int = 9) -> bytes:
    try:
        out = Image.fromarray(rgba)
        buf = BytesIO()
        out.save(buf, format="PNG", compress_level=compress_level)
    except (OSError, ValueError, MemoryError) as exc:
        raise EncodeError(f"Failed to encode PNG: {exc}") from exc
    return buf.getvalue()


def _maybe_dump_debug(mask: np.ndarray, alpha: np.ndarray, debug_dir: Path) -> None:
    """Optionally write the raw and resized masks when DEBUG is enabled."""
    try:
        debug_dir.mkdir(parents=True, exist_ok=True)
        cv2.imwrite(str(debug_dir / "mask.png"), mask)
        cv2.imwrite(str(debug_dir / "alpha.png"), alpha)
        logger.debug("postprocess: wrote debug outputs to %s", debug_dir)
    except Exception as exc:  # noqa: BLE001
        logger.warning("postprocess: failed to write debug outputs: %s", exc)


class Postprocessor:
    """Composite the model mask onto the original image as a transparent PNG."""

    def __init__(self, compress_level: int = 9, debug_dir: Optional[Path] = None):
        self.compress_level = compress_level
        self.debug_dir = debug_dir

    def transform(
        self,
        raw_output: np.ndarray,
        original_image: Image.Image,
        width: int,
        height: int,
    ) -> bytes:
        mask = normalize_mask(raw_output)
        alpha = resize_nearest(mask, width, height)
        logger.debug(
            "postprocess: mask mean=%.1f resized %dx%d -> %dx%d",
            float(mask.mean()),
            MASK_SIZE,
            MASK_SIZE,
            width,
            height,
        )

        if self.debug_dir is not None:
            _maybe_dump_debug(mask, alpha, Path(self.debug_dir))

        rgba = compose_rgba(original_image, alpha)
        return encode_png(rgba, compress_level=self.compress_level)

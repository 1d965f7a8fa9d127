"""
Image loading and preprocessing for the background classifier.

The classifier was trained on images stretched to 224x224 and scaled to
[0, 1]; every step here has to match that exactly or accuracy silently drops.
"""

from __future__ import annotations

from io import BytesIO
from typing import Optional

import numpy as np
from PIL import Image
import torch

from .errors import ImageDecodeError
from .tensor_scope import TensorScope

INPUT_SIZE = 224
# Lanczos matches the training-side resize kernel.
RESAMPLE = Image.LANCZOS


def decode_image(image_bytes: bytes) -> Image.Image:
    """Decode raw bytes with Pillow, forcing a full decode of the pixel data."""
    if not image_bytes:
        raise ImageDecodeError("Empty image data")
    try:
        image = Image.open(BytesIO(image_bytes))
        image.load()
    except (Image.DecompressionBombError, OSError, EOFError, ValueError, SyntaxError) as exc:
        raise ImageDecodeError(f"Invalid image data: {exc}") from exc
    return image


def _to_8bit(image: Image.Image) -> Image.Image:
    """Rescale high bit depth greyscale (I;16, I, F) to 8-bit "L" instead of clipping at 255."""
    if image.mode.startswith("I;16") or image.mode == "I":
        # 16-bit samples; keep the high byte.
        values = np.clip(np.asarray(image).astype(np.int64), 0, 65535) >> 8
        return Image.fromarray(values.astype(np.uint8))
    if image.mode == "F":
        # Float samples in [0, 1].
        values = np.rint(np.clip(np.asarray(image, dtype=np.float32), 0.0, 1.0) * 255.0)
        return Image.fromarray(values.astype(np.uint8))
    return image


def _resizable(image: Image.Image) -> Image.Image:
    """Bring palette/greyscale/CMYK modes into RGB(A) so resampling is defined."""
    image = _to_8bit(image)
    if image.mode in ("RGB", "RGBA"):
        return image
    has_alpha = "A" in image.getbands() or "transparency" in image.info
    return image.convert("RGBA" if has_alpha else "RGB")


def fill_resize(image: Image.Image, size: int = INPUT_SIZE) -> Image.Image:
    """Stretch to exactly `size` x `size`, ignoring aspect ratio (no crop, no pad)."""
    image = _resizable(image)
    if image.size == (size, size):
        return image
    return image.resize((size, size), RESAMPLE)


def preprocess(image_bytes: bytes, device: Optional[torch.device] = None) -> torch.Tensor:
    """
    Decode, fill-resize to 224x224, drop alpha, add a batch dimension, cast to
    float32 and divide by 255.

    Returns a (1, 224, 224, 3) float32 tensor with values in [0, 1]. No mean
    subtraction and no channel reordering is applied.

    Raises:
        ImageDecodeError: when the bytes are not a decodable image.
    """
    image = decode_image(image_bytes)
    try:
        resized = fill_resize(image).convert("RGB")
    except (OSError, ValueError) as exc:
        raise ImageDecodeError(f"Could not convert image: {exc}") from exc

    pixels = np.asarray(resized, dtype=np.uint8)
    with TensorScope() as scope:
        decoded = scope.track(torch.from_numpy(pixels.copy()))
        if device is not None:
            decoded = scope.track(decoded.to(device))
        batched = scope.track(decoded.unsqueeze(0))
        as_float = scope.track(batched.to(torch.float32))
        normalized = as_float.div(255.0)
        del decoded, batched, as_float
    return normalized

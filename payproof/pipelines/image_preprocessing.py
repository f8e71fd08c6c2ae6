# payproof/pipelines/image_preprocessing.py
"""
Image loading and enhancement filters for the QR search.
Handles low contrast, inverted prints, tiny crops and soft focus.
"""

import io
from typing import Tuple

import cv2
import numpy as np
from PIL import Image, ImageEnhance, ImageOps

SHARPEN_KERNEL = np.array(
    [
        [0, -1, 0],
        [-1, 5, -1],
        [0, -1, 0],
    ],
    dtype=np.float32,
)


def load_image(image_bytes: bytes) -> Image.Image:
    """
    Decode bytes into an upright RGB image.

    Raises on undecodable input; callers decide how to degrade.
    """
    img = Image.open(io.BytesIO(image_bytes))
    img.load()
    # Phone photos often carry orientation only in EXIF
    img = ImageOps.exif_transpose(img)
    if img.mode in ("P", "LA", "PA"):
        img = img.convert("RGBA")
    if img.mode != "RGB":
        img = img.convert("RGB")
    return img


def cap_size(img: Image.Image, max_side: int) -> Image.Image:
    """Downscale so the longest side is at most max_side (aspect kept)."""
    w, h = img.size
    longest = max(w, h)
    if longest <= max_side:
        return img
    ratio = max_side / float(longest)
    new_size = (max(1, int(round(w * ratio))), max(1, int(round(h * ratio))))
    return img.resize(new_size, Image.Resampling.LANCZOS)


def crop_fraction(img: Image.Image, box: Tuple[float, float, float, float]) -> Image.Image:
    """Crop by fractional (left, top, right, bottom) box."""
    w, h = img.size
    left, top, right, bottom = box
    return img.crop((int(w * left), int(h * top), int(w * right), int(h * bottom)))


def rotate(img: Image.Image, angle: int) -> Image.Image:
    if angle % 360 == 0:
        return img
    return img.rotate(angle, expand=True)


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

def identity(img: Image.Image) -> Image.Image:
    return img


def grey_normalize(img: Image.Image) -> Image.Image:
    """Greyscale + stretch histogram to full range."""
    return ImageOps.autocontrast(img.convert("L"))


def grey_contrast(img: Image.Image, factor: float = 2.0) -> Image.Image:
    """Greyscale + contrast boost (faded thermal prints, washed-out screenshots)."""
    return ImageEnhance.Contrast(img.convert("L")).enhance(factor)


def grey_contrast_invert(img: Image.Image) -> Image.Image:
    """Light-on-dark codes (dark-mode banking apps)."""
    return ImageOps.invert(grey_contrast(img))


def upscale_2x(img: Image.Image) -> Image.Image:
    w, h = img.size
    return img.resize((w * 2, h * 2), Image.Resampling.LANCZOS)


def sharpen(img: Image.Image) -> Image.Image:
    """Edge-sharpening 3x3 convolution on the greyscale plane."""
    arr = np.array(img.convert("L"))
    out = cv2.filter2D(arr, -1, SHARPEN_KERNEL)
    return Image.fromarray(out)


def to_cv_array(img: Image.Image) -> np.ndarray:
    """PIL -> OpenCV array (greyscale stays 2-D, colour becomes BGR)."""
    if img.mode == "L":
        return np.array(img)
    return cv2.cvtColor(np.array(img.convert("RGB")), cv2.COLOR_RGB2BGR)

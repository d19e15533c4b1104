# verification/services/image_io.py
from __future__ import annotations

import base64
import binascii
import io
import re

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import ProbeInvalid

_DATA_URI = re.compile(r"^data:image/[\w.+-]+;base64,", re.IGNORECASE)
_WS = re.compile(r"\s+")


def clean_base64(value: str) -> str:
    """
    Нормализация base64: срезаем data-URI префикс, пробелы,
    base64url -> стандартный алфавит, дописываем паддинг.
    """
    if not isinstance(value, str):
        raise ValueError("base64 payload must be a string")
    s = _DATA_URI.sub("", value.strip())
    if s.startswith("data:") and "," in s:
        s = s.split(",", 1)[1]
    s = _WS.sub("", s)
    s = s.replace("-", "+").replace("_", "/")
    pad = (4 - len(s) % 4) % 4
    return s + "=" * pad


def decode_base64(value: str) -> bytes:
    try:
        return base64.b64decode(clean_base64(value), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"invalid base64 payload: {e}") from e


def decode_image(value: str) -> np.ndarray:
    """base64 -> BGR с учётом EXIF-ориентации. Пустое/битое изображение -> ProbeInvalid."""
    try:
        raw = decode_base64(value)
    except ValueError as e:
        raise ProbeInvalid(str(e)) from e
    if not raw:
        raise ProbeInvalid("empty image")
    try:
        im = Image.open(io.BytesIO(raw))
        im = ImageOps.exif_transpose(im).convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise ProbeInvalid(f"unreadable image: {e}") from e
    arr = np.array(im)
    if arr.size == 0:
        raise ProbeInvalid("empty image")
    return cv2.cvtColor(arr, cv2.COLOR_RGB2BGR)


def image_quality_metrics(img) -> dict:
    """Лёгкая диагностика: форма, средняя яркость, контраст."""
    if img is None:
        return {"shape": None, "mean": None, "std": None}
    return {"shape": list(img.shape), "mean": float(np.mean(img)), "std": float(np.std(img))}

from __future__ import annotations

import io
from pathlib import Path
from typing import Optional, Union

from PIL import Image, UnidentifiedImageError

from .types import PreprocessResult

SUPPORTED_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".webp", ".bmp", ".gif"})
MIN_FILE_SIZE = 100
MIN_DIMENSION = 16
DEFAULT_MAX_DIMENSION = 2048
JPEG_QUALITY = 90

ImageSource = Union[str, Path, bytes, bytearray]


def is_supported_image(path: Union[str, Path]) -> bool:
    return Path(path).suffix.lower() in SUPPORTED_EXTENSIONS


def _read_source(source: ImageSource) -> tuple[Optional[bytes], Optional[str], Optional[str]]:
    """Return ``(data, extension, error)`` for a path or raw bytes."""
    if isinstance(source, (bytes, bytearray)):
        data = bytes(source)
        if len(data) < MIN_FILE_SIZE:
            return None, None, f"Image data too small ({len(data)} bytes)"
        return data, None, None

    if not str(source).strip():
        return None, None, "Image path cannot be empty"
    path = Path(source)
    if not path.is_file():
        return None, None, f"Image file not found: {path}"
    extension = path.suffix.lower()
    if extension not in SUPPORTED_EXTENSIONS:
        return None, None, (
            f"Unsupported image format '{extension or path.name}'. "
            f"Supported: {', '.join(sorted(SUPPORTED_EXTENSIONS))}"
        )
    try:
        data = path.read_bytes()
    except OSError as exc:
        return None, None, f"Failed to read image {path}: {exc}"
    if len(data) < MIN_FILE_SIZE:
        return None, None, f"Image file too small ({len(data)} bytes): {path}"
    return data, extension, None


def _encode(image: Image.Image, as_png: bool) -> bytes:
    buffer = io.BytesIO()
    if as_png:
        if image.mode not in ("1", "L", "LA", "P", "RGB", "RGBA", "I", "I;16"):
            image = image.convert("RGBA")
        image.save(buffer, format="PNG")
    else:
        if image.mode not in ("L", "RGB"):
            image = image.convert("RGB")
        image.save(buffer, format="JPEG", quality=JPEG_QUALITY)
    return buffer.getvalue()


def preprocess_image(
    source: ImageSource, max_dimension: int = DEFAULT_MAX_DIMENSION
) -> PreprocessResult:
    """Validate, decode, downscale and re-encode an image for the model.

    PNG sources stay PNG, everything else becomes JPEG. Images larger than
    ``max_dimension`` on either side are scaled down preserving aspect ratio.
    Bad input never raises; it yields a failed result with a message.
    """
    data, extension, error = _read_source(source)
    if error is not None:
        return PreprocessResult.failed(error)

    try:
        with Image.open(io.BytesIO(data)) as opened:
            opened.load()
            width, height = opened.size
            if width < MIN_DIMENSION or height < MIN_DIMENSION:
                return PreprocessResult.failed(
                    f"Image too small ({width}x{height}); minimum is "
                    f"{MIN_DIMENSION}x{MIN_DIMENSION}"
                )
            as_png = extension == ".png" or (extension is None and opened.format == "PNG")

            frame = opened
            was_resized = False
            longest = max(width, height)
            if longest > max_dimension:
                scale = max_dimension / float(longest)
                size = (max(1, round(width * scale)), max(1, round(height * scale)))
                frame = opened.resize(size, Image.Resampling.LANCZOS)
                width, height = frame.size
                was_resized = True

            encoded = _encode(frame, as_png)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        return PreprocessResult.failed(f"Failed to decode image: {exc}")

    return PreprocessResult.succeeded(encoded, width, height, was_resized)

from __future__ import annotations

import io
from typing import Final

import torch
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import AppError, ErrorCode, app_error
from .inference.manifest import INPUT_SIZE
from .inference.types import PreprocessOutput

_SCALE: Final[float] = 255.0
_PREPROCESS_SIGNATURE: Final[str] = "v1/exif+flatten_white+rgb+nearest32+div255"


def decode_image(raw: bytes) -> Image.Image:
    if not raw:
        raise app_error(ErrorCode.file_read_failed, "Uploaded file is empty")
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
    except UnidentifiedImageError:
        raise app_error(ErrorCode.invalid_image, "Failed to decode image") from None
    except Image.DecompressionBombError:
        raise app_error(ErrorCode.too_large, "Decompression bomb triggered") from None
    except OSError as exc:
        # Truncated or corrupt payloads surface as OSError from load()
        raise app_error(ErrorCode.invalid_image, f"Failed to decode image: {exc}") from None
    return img


def run_preprocess(img: Image.Image) -> PreprocessOutput:
    """Nearest-neighbor resize to 32x32 RGB and scale pixel values into [0, 1]."""
    try:
        rgb = _to_rgb(img)
        resized = rgb.resize((INPUT_SIZE, INPUT_SIZE), resample=Image.Resampling.NEAREST)
        buf: bytes = resized.tobytes()
        # HWC bytes -> CHW floats
        t = torch.frombuffer(bytearray(buf), dtype=torch.uint8).to(torch.float32)
        t = t.reshape(INPUT_SIZE, INPUT_SIZE, 3).permute(2, 0, 1).contiguous() / _SCALE
        return PreprocessOutput(tensor=t.unsqueeze(0), width=rgb.size[0], height=rgb.size[1])
    except AppError:
        raise
    except (ValueError, OSError, RuntimeError, TypeError) as exc:
        raise app_error(ErrorCode.preprocessing_failed, str(exc)) from None


def preprocess_signature() -> str:
    return _PREPROCESS_SIGNATURE


def _to_rgb(img: Image.Image) -> Image.Image:
    tmp = ImageOps.exif_transpose(img)
    if tmp is None:
        raise app_error(ErrorCode.invalid_image, "EXIF transpose failed")
    out: Image.Image = tmp
    if out.mode == "P":
        out = out.convert("RGBA")
    if out.mode in ("RGBA", "LA"):
        bg = Image.new("RGBA", out.size, (255, 255, 255, 255))
        out = Image.alpha_composite(bg, out.convert("RGBA"))
    if out.mode != "RGB":
        out = out.convert("RGB")
    return out

from __future__ import annotations

import io

import pytest
import torch
from _fakes import png_bytes
from PIL import Image

from cifar_ai.errors import AppError, ErrorCode
from cifar_ai.preprocess import decode_image, preprocess_signature, run_preprocess


def test_preprocess_shape_dtype_and_range() -> None:
    img = Image.new("RGB", (97, 61))
    for x in range(97):
        for y in range(61):
            img.putpixel((x, y), ((x * 7) % 256, (y * 11) % 256, 255 if x > y else 0))
    out = run_preprocess(img)
    assert list(out.tensor.shape) == [1, 3, 32, 32]
    assert out.tensor.dtype == torch.float32
    assert float(out.tensor.min()) >= 0.0 and float(out.tensor.max()) <= 1.0
    assert (out.width, out.height) == (97, 61)


def test_preprocess_solid_color_channels() -> None:
    out = run_preprocess(Image.new("RGB", (10, 10), (255, 0, 51)))
    t = out.tensor[0]
    assert torch.allclose(t[0], torch.ones(32, 32))
    assert torch.allclose(t[1], torch.zeros(32, 32))
    assert torch.allclose(t[2], torch.full((32, 32), 0.2))


def test_preprocess_nearest_neighbor_keeps_original_values() -> None:
    img = Image.new("RGB", (64, 64), (0, 0, 0))
    for x in range(32, 64):
        for y in range(64):
            img.putpixel((x, y), (255, 255, 255))
    t = run_preprocess(img).tensor
    # No interpolated grays at the edge
    assert set(torch.unique(t).tolist()) == {0.0, 1.0}


def test_transparent_pixels_flatten_to_white() -> None:
    img = Image.new("RGBA", (8, 8), (10, 20, 30, 0))
    t = run_preprocess(img).tensor
    assert torch.allclose(t, torch.ones_like(t))


def test_grayscale_and_palette_inputs_become_rgb() -> None:
    assert run_preprocess(Image.new("L", (5, 5), 128)).tensor.shape[1] == 3
    assert run_preprocess(Image.new("P", (5, 5), 3)).tensor.shape[1] == 3


def test_decode_image_roundtrip_png() -> None:
    img = decode_image(png_bytes((20, 10)))
    assert img.size == (20, 10)


def test_decode_invalid_bytes_raises_invalid_image() -> None:
    with pytest.raises(AppError) as ei:
        decode_image(b"definitely not an image")
    assert ei.value.code is ErrorCode.invalid_image
    assert ei.value.http_status == 400


def test_decode_truncated_png_raises_invalid_image() -> None:
    raw = png_bytes((64, 64))
    with pytest.raises(AppError) as ei:
        decode_image(raw[: len(raw) // 2])
    assert ei.value.code is ErrorCode.invalid_image


def test_decode_empty_raises_file_read_failed() -> None:
    with pytest.raises(AppError) as ei:
        decode_image(b"")
    assert ei.value.code is ErrorCode.file_read_failed


def test_preprocess_signature_constant() -> None:
    assert preprocess_signature().startswith("v1/")
    assert "nearest32" in preprocess_signature()


def test_jpeg_input_decodes() -> None:
    buf = io.BytesIO()
    Image.new("RGB", (40, 40), (1, 2, 3)).save(buf, format="JPEG")
    out = run_preprocess(decode_image(buf.getvalue()))
    assert list(out.tensor.shape) == [1, 3, 32, 32]


def test_decompression_bomb_raises_too_large(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
    with pytest.raises(AppError) as ei:
        decode_image(png_bytes((48, 40)))
    assert ei.value.code is ErrorCode.too_large
    assert ei.value.http_status == 413

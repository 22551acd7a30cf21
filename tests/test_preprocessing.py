"""Tests for image decoding and preprocessing."""

from __future__ import annotations

import io
from unittest.mock import patch

import numpy as np
import pytest
from PIL import Image

from classifyx.ml.preprocessing import ImageDecodeError, decode_image, preprocess, to_data_url

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _encode(image: Image.Image, fmt: str = "PNG", **save_kwargs: object) -> bytes:
    buf = io.BytesIO()
    image.save(buf, fmt, **save_kwargs)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# decode_image
# ---------------------------------------------------------------------------


class TestDecodeImage:
    def test_decodes_png(self) -> None:
        data = _encode(Image.new("RGB", (64, 32), (10, 20, 30)))
        image = decode_image(data)
        assert image.size == (64, 32)
        assert image.getpixel((0, 0)) == (10, 20, 30)

    def test_garbage_raises(self) -> None:
        with pytest.raises(ImageDecodeError, match="Cannot decode image"):
            decode_image(b"definitely not an image")

    def test_empty_raises(self) -> None:
        with pytest.raises(ImageDecodeError, match="Empty"):
            decode_image(b"")

    def test_decode_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            decode_image(b"\x00\x01\x02")

    @pytest.mark.parametrize("error", [SyntaxError("broken PNG chunk"), ValueError("tile cannot extend outside image")])
    def test_plugin_errors_become_decode_errors(self, error: Exception) -> None:
        with (
            patch("classifyx.ml.preprocessing.Image.open", side_effect=error),
            pytest.raises(ImageDecodeError, match="Cannot decode image"),
        ):
            decode_image(b"\x89PNG\r\n\x1a\n corrupt body")

    def test_exif_orientation_applied(self) -> None:
        exif = Image.Exif()
        exif[0x0112] = 6  # rotate 90 degrees clockwise on display
        data = _encode(Image.new("RGB", (40, 20), (200, 0, 0)), "JPEG", exif=exif)

        image = decode_image(data)

        assert image.size == (20, 40)


class TestToDataUrl:
    def test_data_url_format(self) -> None:
        assert to_data_url(b"abc", "image/png") == "data:image/png;base64,YWJj"


# ---------------------------------------------------------------------------
# preprocess
# ---------------------------------------------------------------------------


class TestPreprocess:
    def test_grayscale_shape_and_range(self) -> None:
        rng = np.random.default_rng(0)
        pixels = rng.integers(0, 256, size=(60, 100, 3), dtype=np.uint8)
        tensor = preprocess(Image.fromarray(pixels), 28, 28, 1)

        assert tensor.shape == (1, 28, 28, 1)
        assert tensor.dtype == np.float32
        assert tensor.min() >= 0.0
        assert tensor.max() <= 1.0

    def test_rgb_shape_from_grayscale_source(self) -> None:
        tensor = preprocess(Image.new("L", (300, 200), 128), 150, 150, 3)

        assert tensor.shape == (1, 150, 150, 3)
        np.testing.assert_allclose(tensor, 128 / 255.0, rtol=1e-6)

    def test_non_square_target(self) -> None:
        tensor = preprocess(Image.new("RGB", (10, 10)), 32, 16, 3)
        assert tensor.shape == (1, 16, 32, 3)

    def test_alpha_channel_dropped(self) -> None:
        tensor = preprocess(Image.new("RGBA", (8, 8), (255, 0, 0, 0)), 4, 4, 3)

        assert tensor.shape == (1, 4, 4, 3)
        np.testing.assert_array_equal(tensor[0, 0, 0], np.array([1.0, 0.0, 0.0], dtype=np.float32))

    def test_white_and_black_extremes(self) -> None:
        assert preprocess(Image.new("RGB", (5, 5), (255, 255, 255)), 3, 3, 3).min() == 1.0
        assert preprocess(Image.new("RGB", (5, 5), (0, 0, 0)), 3, 3, 1).max() == 0.0

    def test_nearest_neighbor_does_not_interpolate(self) -> None:
        checker = np.array([[0, 255], [255, 0]], dtype=np.uint8)
        tensor = preprocess(checker, 4, 4, 1)[0, :, :, 0]

        assert set(np.unique(tensor).tolist()) == {0.0, 1.0}
        np.testing.assert_array_equal(tensor[:2, :2], 0.0)
        np.testing.assert_array_equal(tensor[:2, 2:], 1.0)
        np.testing.assert_array_equal(tensor[2:, :2], 1.0)
        np.testing.assert_array_equal(tensor[2:, 2:], 0.0)

    def test_accepts_numpy_rgb(self) -> None:
        pixels = np.full((20, 30, 3), 51, dtype=np.uint8)
        tensor = preprocess(pixels, 10, 10, 3)

        assert tensor.shape == (1, 10, 10, 3)
        np.testing.assert_allclose(tensor, 0.2, rtol=1e-6)

    def test_unsupported_channel_count(self) -> None:
        with pytest.raises(ValueError, match="Unsupported channel count"):
            preprocess(Image.new("RGB", (4, 4)), 2, 2, 2)

    def test_sixteen_bit_grayscale_is_rescaled(self) -> None:
        gradient = np.linspace(0, 61425, 64 * 64).reshape(64, 64).astype(np.uint16)
        image = decode_image(_encode(Image.fromarray(gradient)))

        gray = preprocess(image, 28, 28, 1)
        rgb = preprocess(image, 150, 150, 3)

        for tensor in (gray, rgb):
            assert tensor.min() < 0.05
            assert 0.9 < tensor.max() < 1.0
            assert len(np.unique(tensor)) > 50
            assert np.mean(tensor == 1.0) == 0.0

    def test_sixteen_bit_array_full_range(self) -> None:
        pixels = np.array([[0, 32896], [65535, 0]], dtype=np.uint16)
        tensor = preprocess(pixels, 2, 2, 1)[0, :, :, 0]

        np.testing.assert_allclose(tensor, [[0.0, 128 / 255.0], [1.0, 0.0]], rtol=1e-6)

    def test_float_image_in_unit_range(self) -> None:
        pixels = np.full((4, 4), 0.5, dtype=np.float32)
        tensor = preprocess(Image.fromarray(pixels), 2, 2, 3)

        np.testing.assert_allclose(tensor, 128 / 255.0, rtol=1e-6)

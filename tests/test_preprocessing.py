"""Tests for image decoding and model input preparation."""

from __future__ import annotations

import io
from unittest.mock import MagicMock, patch

import numpy as np
import pytest
from PIL import Image

from petclassifier.ml.model_manager import IMAGENET_MEAN, IMAGENET_STD
from petclassifier.ml.preprocessing import PilImagePreprocessor


def _encode(image: Image.Image, fmt: str = "PNG", **save_kwargs: object) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=fmt, **save_kwargs)
    return buffer.getvalue()


def _png_with_broken_chunk() -> bytes:
    """Encode a multi-IDAT PNG and mangle the type of its second IDAT chunk."""
    rng = np.random.default_rng(7)
    data = bytearray(_encode(Image.fromarray(rng.integers(0, 256, (512, 512, 3), dtype=np.uint8))))
    offset = 8
    seen_idat = 0
    while offset < len(data):
        length = int.from_bytes(data[offset : offset + 4], "big")
        if data[offset + 4 : offset + 8] == b"IDAT":
            seen_idat += 1
            if seen_idat == 2:
                data[offset + 4 : offset + 8] = b"\x1e8w5"
                return bytes(data)
        offset += 12 + length
    raise AssertionError("encoder produced a single IDAT chunk")


@pytest.fixture()
def preprocessor() -> PilImagePreprocessor:
    return PilImagePreprocessor()


class TestDecodeImage:
    def test_decodes_png_bytes(self, preprocessor: PilImagePreprocessor) -> None:
        data = _encode(Image.new("RGB", (40, 20), color=(10, 20, 30)))

        pixels = preprocessor.decode_image(data)

        assert pixels.shape == (20, 40, 3)
        assert pixels.dtype == np.uint8
        assert tuple(pixels[0, 0]) == (10, 20, 30)

    def test_applies_exif_orientation(self, preprocessor: PilImagePreprocessor) -> None:
        image = Image.new("RGB", (40, 20))
        exif = image.getexif()
        exif[0x0112] = 6  # rotated 90 degrees clockwise
        data = _encode(image, "JPEG", exif=exif)

        pixels = preprocessor.decode_image(data)

        assert pixels.shape == (40, 20, 3)

    def test_rgba_image_converted_to_rgb(self, preprocessor: PilImagePreprocessor) -> None:
        pixels = preprocessor.decode_image(Image.new("RGBA", (8, 8)))
        assert pixels.shape == (8, 8, 3)

    def test_grayscale_array_expanded(self, preprocessor: PilImagePreprocessor) -> None:
        pixels = preprocessor.decode_image(np.zeros((5, 7), dtype=np.uint8))
        assert pixels.shape == (5, 7, 3)

    def test_garbage_bytes_rejected(self, preprocessor: PilImagePreprocessor) -> None:
        with pytest.raises(ValueError, match="could not be decoded"):
            preprocessor.decode_image(b"definitely not an image")

    def test_truncated_bytes_rejected(self, preprocessor: PilImagePreprocessor) -> None:
        data = _encode(Image.new("RGB", (64, 64), color=(200, 0, 0)), "JPEG")
        with pytest.raises(ValueError, match="could not be decoded"):
            preprocessor.decode_image(data[: len(data) // 2])

    def test_broken_png_chunk_rejected(self, preprocessor: PilImagePreprocessor) -> None:
        with pytest.raises(ValueError, match="could not be decoded"):
            preprocessor.decode_image(_png_with_broken_chunk())

    def test_decoder_syntax_error_rejected(self, preprocessor: PilImagePreprocessor) -> None:
        opened = MagicMock()
        opened.load.side_effect = SyntaxError("broken PNG file")
        with patch("petclassifier.ml.preprocessing.Image.open", return_value=opened):
            with pytest.raises(ValueError, match="broken PNG file"):
                preprocessor.decode_image(b"\x89PNG not really")

    def test_empty_bytes_rejected(self, preprocessor: PilImagePreprocessor) -> None:
        with pytest.raises(ValueError, match="empty"):
            preprocessor.decode_image(b"")

    def test_float_array_rejected(self, preprocessor: PilImagePreprocessor) -> None:
        with pytest.raises(ValueError, match="uint8"):
            preprocessor.decode_image(np.zeros((4, 4, 3), dtype=np.float32))

    def test_bad_array_shape_rejected(self, preprocessor: PilImagePreprocessor) -> None:
        with pytest.raises(ValueError, match="shape"):
            preprocessor.decode_image(np.zeros((4, 4, 2), dtype=np.uint8))

    def test_empty_array_rejected(self, preprocessor: PilImagePreprocessor) -> None:
        with pytest.raises(ValueError):
            preprocessor.decode_image(np.zeros((0, 0, 3), dtype=np.uint8))

    def test_unsupported_type_rejected(self, preprocessor: PilImagePreprocessor) -> None:
        with pytest.raises(ValueError, match="Unsupported image type"):
            preprocessor.decode_image("cat.jpg")  # type: ignore[arg-type]


class TestPreprocessForClassification:
    def test_output_shape_and_dtype(self, preprocessor: PilImagePreprocessor) -> None:
        image = np.random.randint(0, 255, (100, 150, 3), dtype=np.uint8)

        tensor = preprocessor.preprocess_for_classification(image, 224, IMAGENET_MEAN, IMAGENET_STD)

        assert tensor.shape == (1, 3, 224, 224)
        assert tensor.dtype == np.float32

    def test_black_image_normalized_below_zero(self, preprocessor: PilImagePreprocessor) -> None:
        image = np.zeros((32, 32, 3), dtype=np.uint8)

        tensor = preprocessor.preprocess_for_classification(image, 16, IMAGENET_MEAN, IMAGENET_STD)

        # R channel: (0 - 0.485) / 0.229
        assert tensor[0, 0].max() == pytest.approx(-0.485 / 0.229, rel=1e-5)

    def test_center_crop_keeps_middle(self, preprocessor: PilImagePreprocessor) -> None:
        # White centre flanked by black bars that a plain resize would keep.
        image = np.zeros((100, 300, 3), dtype=np.uint8)
        image[:, 50:250] = 255

        tensor = preprocessor.preprocess_for_classification(image, 10, (0.0, 0.0, 0.0), (1.0, 1.0, 1.0))

        assert tensor.min() == pytest.approx(1.0)

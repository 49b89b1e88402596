"""Image preprocessing pipeline.

Decodes whatever the caller hands over (encoded bytes, a PIL image, or a numpy
array) into an RGB uint8 array, applying EXIF orientation along the way, and
turns that array into the normalized NCHW tensor a classification model expects.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING, Protocol

import numpy as np
from PIL import Image, ImageOps

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

ImageInput = bytes | bytearray | Image.Image | np.ndarray


class ImagePreprocessor(Protocol):
    """Protocol for image preprocessing."""

    def decode_image(self, image: ImageInput) -> NDArray[np.uint8]:
        """Decode an image input into an RGB uint8 numpy array.

        Args:
            image: Encoded file bytes, a PIL image, or an HxW / HxWxC uint8 array.

        Returns:
            HxWx3 RGB uint8 numpy array.

        Raises:
            ValueError: If the image cannot be decoded.
        """
        ...

    def preprocess_for_classification(
        self,
        image: NDArray[np.uint8],
        input_size: int,
        mean: Sequence[float],
        std: Sequence[float],
    ) -> NDArray[np.float32]:
        """Center-crop, scale and normalize an image for a classification model.

        Args:
            image: HxWx3 RGB uint8 array.
            input_size: Square edge length the model expects.
            mean: Per-channel mean applied after scaling to [0, 1].
            std: Per-channel standard deviation.

        Returns:
            1x3xSxS float32 tensor.
        """
        ...


class PilImagePreprocessor:
    """Pillow-backed implementation of :class:`ImagePreprocessor`."""

    def decode_image(self, image: ImageInput) -> NDArray[np.uint8]:
        if isinstance(image, (bytes, bytearray)):
            pil_image = self._open_bytes(bytes(image))
        elif isinstance(image, Image.Image):
            pil_image = image
        elif isinstance(image, np.ndarray):
            pil_image = self._from_array(image)
        else:
            raise ValueError(f"Unsupported image type: {type(image).__name__}")

        try:
            rgb = pil_image.convert("RGB")
        except Exception as exc:  # noqa: BLE001
            raise ValueError(f"Image could not be decoded: {exc}") from exc

        if rgb.width == 0 or rgb.height == 0:
            raise ValueError("Image has no pixels")
        return np.asarray(rgb, dtype=np.uint8)

    def preprocess_for_classification(
        self,
        image: NDArray[np.uint8],
        input_size: int,
        mean: Sequence[float],
        std: Sequence[float],
    ) -> NDArray[np.float32]:
        fitted = ImageOps.fit(
            Image.fromarray(image),
            (input_size, input_size),
            method=Image.Resampling.BILINEAR,
            centering=(0.5, 0.5),
        )
        pixels = np.asarray(fitted, dtype=np.float32) / 255.0
        pixels = (pixels - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
        # HWC -> NCHW
        return np.ascontiguousarray(pixels.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)

    @staticmethod
    def _open_bytes(data: bytes) -> Image.Image:
        if not data:
            raise ValueError("Image data is empty")
        # Plugin decoders raise SyntaxError, struct.error, EOFError and others besides OSError.
        try:
            pil_image = Image.open(io.BytesIO(data))
            pil_image.load()
            return ImageOps.exif_transpose(pil_image)
        except Exception as exc:  # noqa: BLE001
            raise ValueError(f"Image could not be decoded: {exc}") from exc

    @staticmethod
    def _from_array(array: np.ndarray) -> Image.Image:
        if array.dtype != np.uint8:
            raise ValueError(f"Expected a uint8 array, got {array.dtype}")
        if array.ndim == 2 or (array.ndim == 3 and array.shape[2] in (3, 4)):
            return Image.fromarray(array)
        raise ValueError(f"Unsupported array shape: {array.shape}")
